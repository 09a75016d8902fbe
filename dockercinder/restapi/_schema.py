# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Helpers for validating API input and output against JSON Schema.

See https://python-jsonschema.readthedocs.io/.
"""

from jsonschema import Draft4Validator
from referencing import Registry
from referencing.jsonschema import DRAFT4

__all__ = [
    "SchemaNotProvided",
    "getValidator",
]


class SchemaNotProvided(Exception):
    """
    Tried to reference a schema that wasn't predefined.
    """


def _refuse_remote(uri):
    """
    Don't try to retrieve schemas that aren't in the store.
    """
    raise SchemaNotProvided(uri)


def getValidator(schema, schema_store):
    """
    Get a ``jsonschema`` validator for ``schema``.

    :param dict schema: The JSON Schema to validate against.

    :param dict schema_store: A mapping between schema paths
        (e.g. ``/endpoints.json``) and the JSON schema structure.
    """
    registry = Registry(retrieve=_refuse_remote).with_resources(
        (path, DRAFT4.create_resource(contents))
        for path, contents in schema_store.items()
    )
    return Draft4Validator(
        schema, registry=registry,
        format_checker=Draft4Validator.FORMAT_CHECKER)
