# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Cinder volume lifecycle, attachment, encryption and mounting.
"""
