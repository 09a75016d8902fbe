# Copyright ClusterHQ Inc.  See LICENSE file for details.
"""
This module implements tools for exposing Python methods as API endpoints.
"""

__all__ = [
    "EndpointResponse", "structured",
    ]

from functools import wraps

from json import loads, dumps

from twisted.internet.defer import maybeDeferred
from twisted.web.http import OK, INTERNAL_SERVER_ERROR

from eliot import writeFailure
from eliot.twisted import DeferredContext

from ._error import DECODING_ERROR, BadRequest, InvalidRequestJSON
from ._logging import REQUEST, JSON_REQUEST
from ._schema import getValidator


class EndpointResponse(object):
    """
    An endpoint can return an ``EndpointResponse`` instance to return a custom
    response code to the client along with a successful response body.
    """
    def __init__(self, code, result):
        """
        :param int code: The HTTP response code to set in the response.

        :param result: The (structured) value to put into the response
            body.  This must be JSON encodeable.
        """
        self.code = code
        self.result = result


def _encode(request, code, result):
    """
    Set the response code and content type and JSON encode ``result``.

    :return: The response body as ``bytes``.
    """
    request.setResponseCode(code)
    request.responseHeaders.setRawHeaders(
        b"content-type", [b"application/json"])
    return dumps(result).encode("utf-8")


def _logging(original):
    """
    Decorate a method which implements an API endpoint to add Eliot-based
    logging.

    Calls to the decorated function will be in a ``REQUEST`` action.  If the
    decorated function raises an exception then the exception will be logged
    and a token which identifies that log event sent in the response.
    """
    @wraps(original)
    def logger(self, request, **routeArguments):
        action = REQUEST(request_path=request.path.decode("utf-8"),
                         method=request.method.decode("ascii"))

        # Generate a serialized action context that uniquely identifies
        # position within the logs, though there won't actually be any log
        # message with that particular task level:
        incident_identifier = action.serialize_task_id().decode("ascii")

        with action.context():
            d = DeferredContext(original(self, request, **routeArguments))

        def failure(reason):
            if reason.check(BadRequest):
                code = reason.value.code
                result = reason.value.result
            else:
                writeFailure(reason)
                code = INTERNAL_SERVER_ERROR
                result = incident_identifier
            return _encode(request, code, result)
        d.addErrback(failure)
        d.addActionFinish()
        return d.result

    return logger


def _serialize(outputValidator):
    """
    Decorate a function so that its return value is automatically JSON encoded
    into a structure indicating a successful result.

    :param outputValidator: A ``jsonschema`` validator for the returned JSON.

    :return: A decorator that decorates a function with the signature
        of a Klein route endpoint that may return a Deferred.
    """
    def deco(original):
        def success(result, request):
            code = OK
            if isinstance(result, EndpointResponse):
                code = result.code
                result = result.result
            outputValidator.validate(result)
            return _encode(request, code, result)

        def doit(self, request, **routeArguments):
            result = maybeDeferred(original, self, request, **routeArguments)
            result.addCallback(success, request)
            return result

        return doit
    return deco


def _decode_body(request):
    """
    Read the JSON object in the body of ``request``.

    Docker doesn't reliably send a content type, and sometimes sends an empty
    body or ``null``, so both of those mean no arguments.

    :raise BadRequest: If the body is not JSON or not a JSON object.
    :return: A ``dict``.
    """
    body = request.content.read()
    if not body.strip():
        return {}
    try:
        objects = loads(body)
    except ValueError:
        raise DECODING_ERROR
    if objects is None:
        return {}
    if not isinstance(objects, dict):
        raise DECODING_ERROR
    return objects


def structured(inputSchema, outputSchema, schema_store=None,
               ignore_body=False):
    """
    Decorate a Klein-style endpoint method so that the request body is
    automatically decoded and the response body is automatically encoded.

    Items in the object encoded in the request body will be passed to
    ``original`` as keyword arguments.  For example::

        {"foo": "bar"}

    If this request body is received it will be as if the decorated function
    were called like::

        original(foo="bar")

    The encoded form of the object returned by ``original`` will define the
    response body.

    :param inputSchema: JSON Schema describing the request body.
    :param outputSchema: JSON Schema describing the response body.
    :param schema_store: A mapping between schema paths
        (e.g. ``/endpoints.json``) and the JSON schema structure, allowing
        input/output schemas to just be references.
    :param ignore_body: If true, ignore the contents of the body for all
        HTTP methods, including ``POST``. By default the body is only
        ignored for ``GET``, ``HEAD`` and ``DELETE``.
    """
    if schema_store is None:
        schema_store = {}
    inputValidator = getValidator(inputSchema, schema_store)
    outputValidator = getValidator(outputSchema, schema_store)

    def deco(original):
        @wraps(original)
        @_logging
        @_serialize(outputValidator)
        def loadAndDispatch(self, request, **routeArguments):
            if ignore_body or request.method in (b"GET", b"HEAD", b"DELETE"):
                objects = {}
            else:
                objects = _decode_body(request)

                errors = []
                for error in inputValidator.iter_errors(objects):
                    errors.append(error.message)
                if errors:
                    raise InvalidRequestJSON(errors=errors, schema=inputSchema)

            eliot_action = JSON_REQUEST(json=objects.copy())
            with eliot_action.context():
                # Just assume there are no conflicts between these collections
                # of arguments right now.
                objects.update(routeArguments)

                d = DeferredContext(maybeDeferred(original, self, **objects))

                def got_result(result):
                    code = OK
                    json = result
                    if isinstance(result, EndpointResponse):
                        code = result.code
                        json = result.result
                    eliot_action.add_success_fields(code=code, json=json)
                    return result
                d.addCallback(got_result)
                d.addActionFinish()
                return d.result

        loadAndDispatch.inputSchema = inputSchema
        loadAndDispatch.outputSchema = outputSchema
        return loadAndDispatch
    return deco
