# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Tests for Docker plugin API schemas.
"""

from ...restapi.testtools import build_schema_test
from .._api import SCHEMAS


def build_simple_test(command_name):
    """
    Build a test for simple API commands that respond only with ``Err`` field.

    :param str command_name: The command in the schema to validate.

    :return: ``TestCase``.
    """
    return build_schema_test(
        name=command_name + "Tests",
        schema={"$ref": "/endpoints.json#/definitions/" + command_name},
        schema_store=SCHEMAS,
        failing_instances=[
            # Extra field:
            {"Err": "", "Extra": ""},
            # Wrong fields:
            {"Result": "hello"},
            # Missing field:
            {},
            # Wrong types:
            [], "", None,
            # Wrong Err types:
            {"Err": 1}, {"Err": {}}, {"Err": None},
        ],
        passing_instances=[
            {"Err": ""},
            {"Err": "Something went wrong!"},
        ])


RemoveTests = build_simple_test("Remove")
UnmountTests = build_simple_test("Unmount")
CreateTests = build_simple_test("Create")


PluginActivateTests = build_schema_test(
    name="PluginActivateTests",
    schema={"$ref": "/endpoints.json#/definitions/PluginActivate"},
    schema_store=SCHEMAS,
    failing_instances=[
        # Extra field:
        {"Implements": ["VolumeDriver"], "X": "Y"},
        # Wrong fields:
        {"Result": "hello"},
        # Missing field:
        {},
        # Wrong types:
        [], "", None, {"Implements": "VolumeDriver"},
    ],
    passing_instances=[
        {"Implements": ["VolumeDriver"]},
    ])


CapabilitiesTests = build_schema_test(
    name="CapabilitiesTests",
    schema={"$ref": "/endpoints.json#/definitions/Capabilities"},
    schema_store=SCHEMAS,
    failing_instances=[
        # Unknown scope:
        {"Capabilities": {"Scope": "universal"}},
        # Extra field:
        {"Capabilities": {"Scope": "global"}, "Err": ""},
        # Missing field:
        {}, {"Capabilities": {}},
    ],
    passing_instances=[
        {"Capabilities": {"Scope": "global"}},
        {"Capabilities": {"Scope": "local"}},
    ])


def build_path_result_tests(name):
    """
    Build a test for API commands that respond with ``Err`` and
    ``Mountpoint`` fields.

    :param str name: The command in the schema to validate.

    :return: ``TestCase``.
    """
    return build_schema_test(
        name=name + "Tests",
        schema={"$ref": "/endpoints.json#/definitions/" + name},
        schema_store=SCHEMAS,
        failing_instances=[
            # Extra field:
            {"Err": "", "Mountpoint": "/x", "extra": "y"},
            # Wrong fields:
            {"Result": "hello"},
            # Missing field:
            {}, {"Mountpoint": "/x"},
            # Wrong types:
            [], "", None, {"Err": "", "Mountpoint": 1},
        ],
        passing_instances=[
            {"Err": "Something went wrong."},
            {"Err": "", "Mountpoint": "/x/"},
        ])


MountTests = build_path_result_tests("Mount")
PathTests = build_path_result_tests("Path")


GetTests = build_schema_test(
    name="GetTests",
    schema={"$ref": "/endpoints.json#/definitions/Get"},
    schema_store=SCHEMAS,
    failing_instances=[
        # Extra field:
        {"Err": "", "Volume": {"Name": "x",
                               "Mountpoint": "/y"}, "extra": "y"},
        # Extra field:
        {"Err": "", "Volume": {"Name": "/x",
                               "Mountpoint": "y",
                               "extra": "r"}},
        # Wrong fields:
        {"Result": "hello"},
        # Missing field:
        {}, {"Volume": "/x"},
        # Missing field:
        {"Err": "", "Volume": {"Mountpoint": "/y"}},
        {"Err": "", "Volume": {"Name": "/x"}},
        # Wrong types:
        [], "", None,
        {"Err": "", "Volume": {"Name": "x", "Mountpoint": "/y",
                               "CreatedAt": 3}},
    ],
    passing_instances=[
        {"Err": "Something went wrong."},
        {"Err": "", "Volume": {
            "Name": "x",
            "Mountpoint": "/x/"}},
        {"Err": "", "Volume": {
            "Name": "x",
            "Mountpoint": "/x/",
            "CreatedAt": "2016-08-01T10:20:30Z"}},
    ])


ListTests = build_schema_test(
    name="ListTests",
    schema={"$ref": "/endpoints.json#/definitions/List"},
    schema_store=SCHEMAS,
    failing_instances=[
        # Extra field:
        {"Err": "", "Volumes": [], "extra": "y"},
        # Extra field:
        {"Err": "", "Volumes": [{"Name": "/x",
                                 "Mountpoint": "y",
                                 "extra": "r"}]},
        # Wrong fields:
        {"Result": "hello"},
        # Missing field:
        {}, {"Volumes": []},
        # Missing field:
        {"Err": "", "Volumes": [{"Mountpoint": "/y"}]},
        {"Err": "", "Volumes": [{"Name": "/x"}]},
        # Wrong types:
        [], "", None,
    ],
    passing_instances=[
        {"Err": "Something went wrong."},
        {"Err": "", "Volumes": [
            {"Name": "x",
             "Mountpoint": "/x/"}]},
        {"Err": "", "Volumes": [
            {"Name": "y",
             "Mountpoint": "/y/",
             "CreatedAt": ""},
            {"Name": "x",
             "Mountpoint": "/x/"}]},
    ])
