# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
This module defines the Eliot log events emitted by the API implementation.
"""

from eliot import Field, ActionType

__all__ = [
    "REQUEST", "JSON_REQUEST",
    ]

LOG_SYSTEM = "api"

METHOD = Field("method", lambda method: method,
               "The HTTP method of the request.")
REQUEST_PATH = Field(
    "request_path", lambda path: path,
    "The absolute path of the resource to which the request was issued.")
JSON = Field.for_types(
    "json", [str, bytes, dict, list, None, bool, float, int],
    "The JSON request body.")
RESPONSE_CODE = Field.for_types(
    "code", [int],
    "The response code for the request.")


REQUEST = ActionType(
    LOG_SYSTEM + ":request",
    [REQUEST_PATH, METHOD],
    [],
    "A request was received on the plugin's HTTP interface.")

JSON_REQUEST = ActionType(
    LOG_SYSTEM + ":json_request",
    [JSON],
    [RESPONSE_CODE, JSON],
    "A request containing JSON request body.")
