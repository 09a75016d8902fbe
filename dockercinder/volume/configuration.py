# -*- test-case-name: dockercinder.volume.test.test_configuration -*-
# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Loading of the plugin configuration file.

The file is YAML with four sections::

    version: 1
    openstack:
      auth_url: https://keystone.example.com/v3
      username: docker
      password: secret
      project_name: containers
      user_domain_name: Default
      project_domain_name: Default
      region: RegionOne
    node:
      machine_id: 5d4e0a86-7a4c-4ab7-b6c4-2c5a16e6b1f2
    mount:
      mount_dir: /var/lib/docker-cinder
      key_file: /etc/docker-cinder/luks.key
    timing:
      device_wait_timeout: 30

Only ``openstack`` and ``mount.mount_dir`` are required.  The ``openstack``
section is passed to the keystone authentication plugin selected by its
``auth_plugin`` key, so it accepts whatever options that plugin does.
"""

from pyrsistent import PClass, field, InvariantException

from twisted.python.filepath import FilePath

from ..common.configuration import (
    ConfigurationError, MissingConfigError, Optional, extract_substructure,
    load_yaml_file,
)

CONFIGURATION_VERSION = 1
DEFAULT_CONFIGURATION_PATH = FilePath("/etc/docker-cinder/cinder.yml")

_CONFIGURATION_SHAPE = {
    "version": Optional(CONFIGURATION_VERSION, "The configuration version."),
    "node": {
        "machine_id": Optional(
            None, "The Nova ID of this compute instance."),
    },
    "mount": {
        "mount_dir": "The directory volumes are mounted beneath.",
        "filesystem": Optional("ext4", "The filesystem for new volumes."),
        "default_size": Optional(10, "The size of new volumes in GiB."),
        "default_type": Optional("classic", "The type of new volumes."),
        "key_file": Optional(None, "The key of encrypted volumes."),
        "volume_subdirectory": Optional(
            "data", "The directory created in new volumes."),
    },
    "timing": {
        "volume_state_timeout": Optional(
            5.0, "Seconds to wait for a volume status change."),
        "volume_state_delay": Optional(
            0.5, "Seconds between volume status checks."),
        "device_wait_timeout": Optional(
            10, "Seconds to wait for the device of an attached volume."),
        "device_wait_delay": Optional(
            1.0, "Seconds to wait after the device appears."),
    },
}


def _optional(kind):
    return (kind, type(None))


def _positive(value):
    return (value > 0, "Must be greater than zero.")


def _not_negative(value):
    return (value >= 0, "Must not be negative.")


class MountConfiguration(PClass):
    """
    How volumes are created, attached and mounted on this host.

    :ivar FilePath mount_dir: Volumes are mounted at ``mount_dir/<name>``.
    :ivar str filesystem: The filesystem new volumes are formatted with.
    :ivar int default_size: The size, in GiB, of volumes created without
        one.
    :ivar str default_type: The Cinder volume type of volumes created without
        one.
    :ivar key_file: The ``FilePath`` of the LUKS key, or ``None`` if
        encryption is not available.
    :ivar volume_subdirectory: The name of a directory created in every newly
        formatted volume, which is what Docker gets to see; or ``None`` to
        expose the root of the filesystem.
    :ivar machine_id: The Nova ID of this compute instance.
    :ivar float volume_state_timeout: Seconds to wait for a volume to reach
        a status.
    :ivar float volume_state_delay: Seconds between volume status checks.
    :ivar float device_wait_timeout: Seconds to wait for the block device of
        an attached volume to appear.
    :ivar float device_wait_delay: Seconds to wait after the device appears,
        before using it.
    """
    mount_dir = field(type=FilePath, mandatory=True)
    filesystem = field(type=str, mandatory=True, initial="ext4")
    default_size = field(
        type=int, mandatory=True, initial=10, invariant=_positive)
    default_type = field(type=str, mandatory=True, initial="classic")
    key_file = field(type=_optional(FilePath), initial=None)
    volume_subdirectory = field(type=_optional(str), initial="data")
    machine_id = field(type=_optional(str), initial=None)
    volume_state_timeout = field(
        type=(int, float), mandatory=True, initial=5.0,
        invariant=_not_negative)
    volume_state_delay = field(
        type=(int, float), mandatory=True, initial=0.5, invariant=_positive)
    device_wait_timeout = field(
        type=(int, float), mandatory=True, initial=10,
        invariant=_not_negative)
    device_wait_delay = field(
        type=(int, float), mandatory=True, initial=1.0,
        invariant=_not_negative)

    def volume_directory(self, name):
        """
        :return: The ``FilePath`` the volume called ``name`` is mounted at.
        """
        return self.mount_dir.child(name)

    def mountpoint(self, name):
        """
        :return: The ``FilePath`` Docker is given for the volume called
            ``name``.
        """
        directory = self.volume_directory(name)
        if self.volume_subdirectory:
            return directory.child(self.volume_subdirectory)
        return directory


class PluginConfiguration(PClass):
    """
    Everything read from the configuration file.

    :ivar dict openstack: Keystone authentication options and the optional
        ``region``, ``verify_peer`` and ``verify_ca_path``.
    :ivar MountConfiguration mount: Local volume handling.
    """
    openstack = field(type=dict, mandatory=True)
    mount = field(type=MountConfiguration, mandatory=True)


def _override(section, overrides):
    """
    Replace values in ``section`` with the non-``None`` values of
    ``overrides``.
    """
    result = dict(section)
    for key, value in overrides.items():
        if value is not None:
            result[key] = value
    return result


def configuration_from_dict(config, overrides=None):
    """
    Build a ``PluginConfiguration`` from a parsed configuration file.

    :param dict config: The parsed file.
    :param dict overrides: Values for keys of the ``mount`` section which
        replace those in ``config``, typically from the command line.  ``None``
        values are ignored.

    :raise MissingConfigError: If a required value is missing.
    :raise ConfigurationError: If a value is invalid.
    :return: The ``PluginConfiguration``.
    """
    if overrides is None:
        overrides = {}
    if not isinstance(config.get("openstack"), dict):
        raise MissingConfigError(
            "Missing key openstack in configuration")
    if "mount_dir" in overrides and overrides["mount_dir"] is not None:
        config = dict(config)
        config["mount"] = dict(config.get("mount") or {})
        config["mount"]["mount_dir"] = overrides["mount_dir"]
    extracted = extract_substructure(config, _CONFIGURATION_SHAPE)
    if extracted["version"] != CONFIGURATION_VERSION:
        raise ConfigurationError(
            "Configuration has unsupported version {!r}, only version {} "
            "is supported.".format(
                extracted["version"], CONFIGURATION_VERSION))

    mount = _override(extracted["mount"], overrides)
    try:
        default_size = int(mount["default_size"])
    except (TypeError, ValueError):
        raise ConfigurationError(
            "default_size must be a whole number of GiB, not {!r}".format(
                mount["default_size"]))
    if not (isinstance(mount["mount_dir"], str) and
            mount["mount_dir"].startswith("/")):
        raise ConfigurationError(
            "mount_dir must be an absolute path, not {!r}".format(
                mount["mount_dir"]))
    key_file = mount["key_file"]
    if key_file is not None:
        key_file = FilePath(key_file)
    machine_id = extracted["node"]["machine_id"]
    if machine_id is not None:
        machine_id = str(machine_id)

    try:
        mount_configuration = MountConfiguration(
            mount_dir=FilePath(mount["mount_dir"]),
            filesystem=mount["filesystem"],
            default_size=default_size,
            default_type=mount["default_type"],
            key_file=key_file,
            volume_subdirectory=mount["volume_subdirectory"] or None,
            machine_id=machine_id,
            **extracted["timing"]
        )
    except (TypeError, ValueError, InvariantException) as e:
        raise ConfigurationError("Invalid configuration: {}".format(e))
    return PluginConfiguration(
        openstack=dict(config["openstack"]),
        mount=mount_configuration,
    )


def load_configuration(path, overrides=None):
    """
    Read and validate the configuration file at ``path``.

    :param FilePath path: The configuration file.
    :param dict overrides: See ``configuration_from_dict``.

    :raise ConfigurationError: If the file is missing, unparseable or
        invalid.
    :return: The ``PluginConfiguration``.
    """
    return configuration_from_dict(load_yaml_file(path), overrides)
