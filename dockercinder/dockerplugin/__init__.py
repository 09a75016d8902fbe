# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Docker volume plugin for Cinder volumes.
"""
