# -*- test-case-name: dockercinder.volume.test.test_luks -*-
# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
LUKS encryption of block devices using ``cryptsetup``.

An encrypted volume is opened under a mapping named after the Docker volume
and the mapping device is what gets formatted and mounted.  Nothing about
open mappings is remembered; when a volume is unmounted the mapping and the
physical device behind it are recovered from the kernel's mount table.
"""

import re
from subprocess import CalledProcessError

from zope.interface import Interface, implementer

from pyrsistent import PClass, field

from twisted.python.filepath import FilePath

from ..common.process import run_process

MAPPER_DIRECTORY = FilePath("/dev/mapper")
MAPPING_SUFFIX = "_luks"

# ``cryptsetup isLuks`` exits with this status for a device which is readable
# but not a LUKS container.
_NOT_LUKS_STATUS = 1

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


class EncryptionError(Exception):
    """
    A ``cryptsetup`` operation failed.

    :ivar list command: The command line that was run, or ``None`` if the
        failure happened before running anything.
    :ivar str source_message: The output of the command, or a description of
        what went wrong.
    """
    def __init__(self, command, source_message):
        self.command = command
        self.source_message = source_message

    def __str__(self):
        if self.command is None:
            return self.source_message
        return "Command {!r} failed: {}".format(
            " ".join(self.command), self.source_message)


class EncryptionKeyMissing(Exception):
    """
    A volume is encrypted but no key file is configured to open it.
    """
    def __init__(self, volume_name):
        self.volume_name = volume_name

    def __str__(self):
        return (
            "Volume {!r} is encrypted but no key file is configured".format(
                self.volume_name)
        )


class MountNotFound(Exception):
    """
    Nothing is mounted at the given path according to the mount table.
    """
    def __init__(self, mountpoint, mount_table):
        self.mountpoint = mountpoint
        self.mount_table = mount_table

    def __str__(self):
        return "Mount {} not found in {}".format(
            self.mountpoint.path, self.mount_table.path)


class EncryptionState(PClass):
    """
    The encryption layer of a mounted volume.

    :ivar FilePath mapping_device: The device that is mounted.
    :ivar str mapping_name: The name of the ``cryptsetup`` mapping.
    :ivar FilePath physical_device: The device of the attached volume.
    """
    mapping_device = field(type=FilePath, mandatory=True)
    mapping_name = field(type=str, mandatory=True)
    physical_device = field(type=FilePath, mandatory=True)


def mapping_name_for(volume_name):
    """
    :return: The name under which the encrypted volume ``volume_name`` is
        opened.
    """
    return volume_name + MAPPING_SUFFIX


def mapping_device_for(mapping_name):
    """
    :return: The ``FilePath`` of the device of an open mapping.
    """
    return MAPPER_DIRECTORY.child(mapping_name)


def _unescape(mount_table_field):
    """
    Decode the octal escapes the kernel uses for whitespace and backslashes
    in ``/proc/mounts``.
    """
    return _OCTAL_ESCAPE.sub(
        lambda match: chr(int(match.group(1), 8)), mount_table_field)


class IEncryptionLayer(Interface):
    """
    Encryption of block devices.
    """
    def is_encrypted(device):
        """
        :param FilePath device: The device to examine.

        :raise EncryptionError: If it could not be determined.
        :return: ``True`` if ``device`` is an encrypted container.
        """

    def open(device, key_file, volume_name):
        """
        Open the encrypted container on ``device``.

        :param FilePath device: The physical device.
        :param FilePath key_file: The file holding the key.
        :param str volume_name: The Docker volume name, from which the mapping
            name is derived.

        :raise EncryptionError: If the container could not be opened.
        :return: The mapping name.  The decrypted device is
            ``mapping_device_for(name)``.
        """

    def initialize(device, key_file):
        """
        Create a new encrypted container on ``device``, destroying whatever
        it held before.

        :raise EncryptionError: If formatting failed.
        """

    def close(mapping_name):
        """
        Close an open mapping.

        :raise EncryptionError: If it could not be closed.
        """

    def recover_from_mount(mountpoint):
        """
        Work out the encryption layer of whatever is mounted at
        ``mountpoint``.

        :param FilePath mountpoint: A mount point.

        :raise MountNotFound: If nothing is mounted there.
        :raise EncryptionError: If the mount table cannot be read or the
            mapping cannot be queried.
        :return: An ``EncryptionState`` or ``None`` if the mounted device is
            not an encryption mapping.
        """


@implementer(IEncryptionLayer)
class LuksEncryption(PClass):
    """
    ``IEncryptionLayer`` implemented with ``cryptsetup``.

    :ivar FilePath mount_table: The file listing the active mounts.
    """
    mount_table = field(
        type=FilePath, mandatory=True, initial=FilePath("/proc/mounts"))

    def _cryptsetup(self, arguments):
        command = ["cryptsetup"] + arguments
        try:
            return run_process(command)
        except CalledProcessError as e:
            raise EncryptionError(command=command, source_message=e.output)

    def is_encrypted(self, device):
        try:
            run_process(["cryptsetup", "isLuks", device.path])
        except CalledProcessError as e:
            if e.returncode == _NOT_LUKS_STATUS:
                return False
            raise EncryptionError(command=e.cmd, source_message=e.output)
        return True

    def open(self, device, key_file, volume_name):
        mapping_name = mapping_name_for(volume_name)
        self._cryptsetup(
            ["luksOpen", "-d", key_file.path, device.path, mapping_name])
        return mapping_name

    def initialize(self, device, key_file):
        self._cryptsetup(
            ["luksFormat", "-q", "-d", key_file.path, device.path])

    def close(self, mapping_name):
        self._cryptsetup(["luksClose", mapping_name])

    def _mounted_device(self, mountpoint):
        """
        :return: The device mounted at ``mountpoint`` according to the mount
            table.  If it appears more than once the last entry is the one
            currently visible.
        """
        try:
            # Mount paths are arbitrary bytes.
            content = self.mount_table.getContent().decode(
                "utf-8", "surrogateescape")
        except IOError as e:
            raise EncryptionError(
                command=None,
                source_message="Unable to read {}: {}".format(
                    self.mount_table.path, e))
        device = None
        for line in content.splitlines():
            fields = line.split()
            if len(fields) < 2:
                continue
            if _unescape(fields[1]) == mountpoint.path:
                device = _unescape(fields[0])
        if device is None:
            raise MountNotFound(mountpoint, self.mount_table)
        return device

    def recover_from_mount(self, mountpoint):
        device = self._mounted_device(mountpoint)
        prefix = MAPPER_DIRECTORY.path + "/"
        if not device.startswith(prefix):
            return None
        mapping_name = device[len(prefix):]

        result = self._cryptsetup(["status", mapping_name])
        for line in result.output.splitlines():
            fields = line.split()
            if len(fields) >= 2 and fields[0] == "device:":
                return EncryptionState(
                    mapping_device=FilePath(device),
                    mapping_name=mapping_name,
                    physical_device=FilePath(fields[1]),
                )
        return None
