# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Public utilities for testing code that uses the JSON HTTP API.
"""

__all__ = ["build_schema_test", "APIAssertionsMixin"]

from json import dumps, loads

from jsonschema.exceptions import ValidationError

from treq.testing import StubTreq

from twisted.trial.unittest import SynchronousTestCase

from ._schema import getValidator


def build_schema_test(name, schema, schema_store,
                      failing_instances, passing_instances):
    """
    Create test case verifying that various instances pass and fail
    verification with a given JSON Schema.

    :param str name: Name of test case to create.
    :param dict schema: Schema to test.
    :param dict schema_store: The schema definitions.
    :param list failing_instances: Instances which should fail validation.
    :param list passing_instances: Instances which should pass validation.

    :returns: The test case; a ``SynchronousTestCase`` subclass.
    """
    body = {
        'schema': schema,
        'schema_store': schema_store,
        'validator': getValidator(schema, schema_store),
        'passing_instances': passing_instances,
        'failing_instances': failing_instances,
        }
    for i, inst in enumerate(failing_instances):
        def test(self, inst=inst):
            self.assertRaises(ValidationError,
                              self.validator.validate, inst)
        test.__name__ = 'test_fails_validation_%d' % (i,)
        body[test.__name__] = test

    for i, inst in enumerate(passing_instances):
        def test(self, inst=inst):
            self.validator.validate(inst)
        test.__name__ = 'test_passes_validation_%d' % (i,)
        body[test.__name__] = test

    return type(name, (SynchronousTestCase, object), body)


class APIAssertionsMixin(object):
    """
    Helpers for issuing in-memory requests to a Klein application.

    Test cases using this must set ``self.app`` to the ``Klein`` instance (or
    an object with an ``app`` attribute) under test.

    :ivar StubTreq client: The client of the most recent request.
    """
    def _client(self):
        app = getattr(self.app, "app", self.app)
        self.client = StubTreq(app.resource())
        return self.client

    def flush(self):
        """
        Deliver responses whose results arrived after the last request.
        """
        self.client.flush()

    def request(self, method, path, body):
        """
        Issue a request with a JSON-encoded body.

        :param bytes method: HTTP method.
        :param bytes path: Absolute path of the resource.
        :param body: The JSON-encodable body, or ``bytes`` to send verbatim.

        :return: ``Deferred`` firing with a ``(code, decoded body)`` tuple.
        """
        if not isinstance(body, bytes):
            body = dumps(body).encode("utf-8")
        if isinstance(method, bytes):
            method = method.decode("ascii")
        client = self._client()
        d = client.request(
            method, b"http://127.0.0.1" + path, data=body,
            headers={b"content-type": [b"application/json"]})

        def got_response(response):
            reading = client.content(response)
            reading.addCallback(
                lambda content: (response.code, loads(content)))
            return reading
        d.addCallback(got_response)
        client.flush()
        return d

    def assertResult(self, method, path, request_body,
                     expected_code, expected_result):
        """
        Assert a particular JSON response for the given API request.

        :param bytes method: HTTP method to request.
        :param bytes path: Absolute path of the resource.
        :param request_body: Body of the HTTP request.
        :param int expected_code: The code expected in the response.
        :param expected_result: The expected decoded JSON body.

        :return: The decoded JSON body, once the assertion has passed.
        """
        code, result = self.successResultOf(
            self.request(method, path, request_body))
        self.assertEqual(
            (expected_code, expected_result), (code, result))
        return result
