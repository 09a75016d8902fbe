# Copyright ClusterHQ Inc.  See LICENSE file for details.
"""
This module defines the presentation of error conditions that can be
encountered by the implementation of the API.
"""

from inspect import cleandoc

from eliot import register_exception_extractor

from twisted.web.http import BAD_REQUEST

__all__ = [
    "BadRequest", "InvalidRequestJSON", "make_bad_request",

    "DECODING_ERROR_DESCRIPTION",

    "DECODING_ERROR",
    ]


class BadRequest(Exception):
    """
    An endpoint can raise a ``BadRequest`` (or subclass) instance to return an
    error response to the client without triggering incident logging.

    Use this for input validation failures, for example.
    """
    def __init__(self, code, result):
        """
        :param int code: The HTTP response code to set in the response.

        :param result: The value to put into the field of the response
            body as JSON.
        """
        Exception.__init__(self, code, result)
        self.code = code
        self.result = result


# Add response_code field to logged BadRequest:
register_exception_extractor(BadRequest, lambda e: {"code": e.code})


def make_bad_request(code=BAD_REQUEST, **result):
    """
    Create a new ``BadRequest`` instance with the given result.
    """
    return BadRequest(code, result)


DECODING_ERROR_DESCRIPTION = cleandoc("""
    The request body could not be decoded as a JSON object.
    """)

DECODING_ERROR = make_bad_request(description=DECODING_ERROR_DESCRIPTION)


class InvalidRequestJSON(BadRequest):
    description = cleandoc("""
    The provided JSON doesn't match the required schema.
    """)

    __doc__ = description

    def __init__(self, errors, schema):
        # Schema is currently ignored because references need to be
        # resolved before it would be useful to a user.
        BadRequest.__init__(
            self,
            BAD_REQUEST,
            {"description": self.description, "errors": errors})
