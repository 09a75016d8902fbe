# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Infrastructure for publishing a JSON HTTP API.
"""

from ._infrastructure import structured, EndpointResponse

from ._error import BadRequest, make_bad_request


__all__ = [
    "structured", "EndpointResponse", "BadRequest", "make_bad_request",
]
