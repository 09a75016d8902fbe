# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Helpers for loading and validating YAML configuration files.
"""

import yaml


class ConfigurationError(Exception):
    """
    The configuration file could not be read or is not understood.
    """


class MissingConfigError(ConfigurationError):
    """
    A required configuration key was not given.
    """


class Optional(object):
    """
    Marks a configuration value as optional.

    :ivar default: The value used when the key is absent.
    :ivar unicode description: What the value is for.
    """
    def __init__(self, default, description):
        self.default = default
        self.description = description

    def __repr__(self):
        return "{} (optional default={!r})".format(
            self.description, self.default)


def _is_optional(shape):
    """
    :return: ``True`` if every leaf of ``shape`` is ``Optional``, in which
        case the whole section may be omitted.
    """
    if isinstance(shape, Optional):
        return True
    if isinstance(shape, dict):
        return all(_is_optional(value) for value in shape.values())
    return False


def extract_substructure(base, substructure):
    """
    Walk ``substructure`` (a possibly nested ``dict`` whose leaves describe
    configuration values) and build a ``dict`` of the same shape whose leaves
    are taken from ``base``.

    Keys in ``base`` that ``substructure`` does not mention are dropped.

    :param base: The parsed configuration.
    :param substructure: The expected shape.  A leaf which is an ``Optional``
        is filled with its default when missing; any other leaf is required.

    :raise MissingConfigError: If a required key is missing or ``base`` has
        a different shape than ``substructure``.
    """
    if not isinstance(substructure, dict) and not isinstance(base, dict):
        return base
    if not isinstance(base, dict):
        raise MissingConfigError(
            "Found non-dict value {!r} when expecting a sub-configuration "
            "{!r}.".format(base, substructure))
    if not isinstance(substructure, dict):
        raise MissingConfigError(
            "Found dict value {!r} when expecting a simple configuration "
            "value {!r}.".format(base, substructure))
    result = {}
    for key, shape in substructure.items():
        if isinstance(shape, Optional):
            value = base.get(key, shape.default)
        elif _is_optional(shape):
            value = base.get(key) or {}
        else:
            try:
                value = base[key]
            except KeyError:
                raise MissingConfigError(
                    "Missing key {} in configuration".format(key))
        result[key] = extract_substructure(value, shape)
    return result


def load_yaml_file(path):
    """
    Parse a YAML (or JSON) configuration file.

    :param FilePath path: The file to read.

    :raise ConfigurationError: If the file cannot be read, is not valid YAML
        or does not contain a mapping.
    :return: The parsed ``dict``.
    """
    try:
        content = path.getContent()
    except IOError as e:
        raise ConfigurationError(
            "Unable to read configuration file {}: {}".format(path.path, e))
    try:
        parsed = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigurationError(
            "Configuration file {} is not valid YAML: {}".format(
                path.path, e))
    if not isinstance(parsed, dict):
        raise ConfigurationError(
            "Configuration file {} must contain a mapping.".format(path.path))
    return parsed
