# -*- test-case-name: dockercinder.volume.test.test_orchestrator -*-
# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
The Docker volume operations, composed from Cinder volume management,
attachment, encryption and local device handling.

A volume named ``name`` is mounted at ``<mount_dir>/<name>`` and Docker is
given ``<mount_dir>/<name>/<volume_subdirectory>``.
"""

from os import chmod, chown, makedirs, mkdir
import time

from zope.interface import Interface, implementer

from pyrsistent import PClass, field

from twisted.python.filepath import FilePath

from ..common import (
    KeyedLock, poll_until, exponential_steps, LoopExceeded,
)
from .device import UnmountError
from .luks import (
    EncryptionKeyMissing, MountNotFound, mapping_device_for,
)
from ._logging import (
    CREATE_VOLUME, MOUNT_VOLUME, UNMOUNT_VOLUME, REMOVE_VOLUME,
    ENCRYPTION_UNAVAILABLE, FORMATTING, MOUNT_DIRECTORY_RETRY,
    UNMOUNT_FAILED, MOUNTPOINT_STAT_FAILED, LUKS_CLOSE_FAILED,
    ENCRYPTION_RECOVERY_FAILED, VOLUME_LOOKUP_FAILED, DETACH_FAILED,
)

# Attempts at creating the mount directory, the first one included.
MOUNT_DIRECTORY_ATTEMPTS = 3
MOUNT_DIRECTORY_MODE = 0o700
SUBDIRECTORY_MODE = 0o777


class MountDirectoryError(Exception):
    """
    The mount directory of a volume could not be created.

    :ivar FilePath path: The directory.
    :ivar str source_message: The error from the last attempt.
    """
    def __init__(self, path, source_message):
        self.path = path
        self.source_message = source_message

    def __str__(self):
        return "Unable to create mount directory {}: {}".format(
            self.path.path, self.source_message)


class VolumeInfo(PClass):
    """
    A Docker volume as reported by ``Get`` and ``List``.

    :ivar str name: The volume name.
    :ivar FilePath mountpoint: Where the volume is, or would be, mounted.
    :ivar str created_at: RFC 3339 creation time, possibly empty.
    """
    name = field(type=str, mandatory=True)
    mountpoint = field(type=FilePath, mandatory=True)
    created_at = field(type=str, mandatory=True, initial="")


def encryption_requested(options):
    """
    :param dict options: The ``Opts`` of a ``Create`` request.
    :return: ``False`` only if the ``encryption`` option is ``false``, in any
        case.
    """
    value = options.get("encryption")
    return not (isinstance(value, str) and value.lower() == "false")


class IVolumeOrchestrator(Interface):
    """
    The operations of the Docker volume plugin protocol.
    """
    def create(name, options):
        """
        Create a volume.

        :param str name: The volume name.
        :param dict options: ``size`` in GiB, ``type`` and ``encryption``.
        """

    def remove(name):
        """
        Delete a volume, detaching it first if necessary.
        """

    def mount(name):
        """
        Attach and mount a volume.

        :return: The ``FilePath`` Docker should use.
        """

    def unmount(name):
        """
        Unmount and detach a volume.  Never fails.
        """

    def path(name):
        """
        :return: The ``FilePath`` of the volume, whether or not it is
            mounted.
        """

    def get(name):
        """
        :raise UnknownVolume: If there is no such volume.
        :return: A ``VolumeInfo``.
        """

    def list():
        """
        :return: A ``list`` of ``VolumeInfo`` for every named volume.
        """


@implementer(IVolumeOrchestrator)
class MountOrchestrator(object):
    """
    ``IVolumeOrchestrator`` for Cinder volumes.

    ``create``, ``mount`` and ``unmount`` of the same volume name are
    serialized; everything else may run concurrently from any thread.
    """
    def __init__(self, volumes, attachments, encryption, device_probe,
                 configuration, sleep=time.sleep):
        """
        :param VolumeLifecycleManager volumes: Cinder volume management.
        :param AttachmentController attachments: Attachment to this compute
            instance.
        :param IEncryptionLayer encryption: The encryption layer.
        :param IDeviceProbe device_probe: Local device operations.
        :param MountConfiguration configuration: The mount configuration.
        :param sleep: Used to wait between mount directory attempts.
        """
        self._volumes = volumes
        self._attachments = attachments
        self._encryption = encryption
        self._device_probe = device_probe
        self._configuration = configuration
        self._sleep = sleep
        self._locks = KeyedLock()

    def create(self, name, options):
        with CREATE_VOLUME(volume_name=name):
            with self._locks.lock(name):
                key_file = self._configuration.key_file
                encrypt = encryption_requested(options)
                if encrypt and key_file is None:
                    ENCRYPTION_UNAVAILABLE(volume_name=name).write()
                    encrypt = False

                volume = self._volumes.create(
                    name, options.get("size"), options.get("type"))
                if encrypt:
                    device = self._attachments.attach(volume)
                    self._encryption.initialize(device, key_file)
                    self._attachments.detach(
                        self._volumes.get(volume.volume_id))

    def remove(self, name):
        with REMOVE_VOLUME(volume_name=name):
            self._volumes.remove(self._volumes.find_by_name(name))

    def mount(self, name):
        with MOUNT_VOLUME(volume_name=name) as action:
            with self._locks.lock(name):
                mountpoint = self._mount(name)
            action.add_success_fields(mountpoint=mountpoint.path)
            return mountpoint

    def _mount(self, name):
        volume = self._volumes.find_by_name(name)
        device = self._attachments.attach(volume)

        if self._encryption.is_encrypted(device):
            key_file = self._configuration.key_file
            if key_file is None:
                raise EncryptionKeyMissing(name)
            device = mapping_device_for(
                self._encryption.open(device, key_file, name))

        new_filesystem = False
        if self._device_probe.filesystem_type(device) is None:
            FORMATTING(volume_name=name, device=device.path).write()
            self._device_probe.make_filesystem(
                device, name, self._configuration.filesystem)
            new_filesystem = True

        directory = self._configuration.volume_directory(name)
        self._create_mount_directory(directory)
        self._device_probe.mount(device, directory)

        mountpoint = self._configuration.mountpoint(name)
        if new_filesystem and mountpoint != directory:
            mkdir(mountpoint.path, SUBDIRECTORY_MODE)
            # mkdir is subject to the umask.
            chmod(mountpoint.path, SUBDIRECTORY_MODE)
            chown(mountpoint.path, 0, 0)
        return mountpoint

    def _create_mount_directory(self, directory):
        """
        Create ``directory``, unmounting it between attempts in case a
        broken mount is in the way.

        :raise MountDirectoryError: If every attempt failed.
        """
        errors = []

        def create():
            try:
                makedirs(directory.path, MOUNT_DIRECTORY_MODE, exist_ok=True)
            except OSError as e:
                MOUNT_DIRECTORY_RETRY(
                    mountpoint=directory.path, error=str(e)).write()
                errors.append(e)
                return False
            return True

        def sleep_then_unmount(seconds):
            self._sleep(seconds)
            try:
                self._device_probe.unmount(directory)
            except UnmountError:
                # Usually there is nothing mounted.
                pass

        try:
            poll_until(
                create,
                exponential_steps(1.0, limit=MOUNT_DIRECTORY_ATTEMPTS - 1),
                sleep_then_unmount,
            )
        except LoopExceeded:
            raise MountDirectoryError(directory, str(errors[-1]))

    def unmount(self, name):
        with UNMOUNT_VOLUME(volume_name=name):
            with self._locks.lock(name):
                self._unmount(name)

    def _unmount(self, name):
        directory = self._configuration.volume_directory(name)

        # Afterwards the mount table no longer knows the mapping.
        encryption_state = None
        try:
            encryption_state = self._encryption.recover_from_mount(directory)
        except MountNotFound:
            pass
        except Exception as e:
            ENCRYPTION_RECOVERY_FAILED(
                volume_name=name, mountpoint=directory.path,
                error=str(e)).write()

        try:
            mounted = self._device_probe.directory_exists(directory)
        except OSError as e:
            MOUNTPOINT_STAT_FAILED(
                volume_name=name, mountpoint=directory.path,
                error=str(e)).write()
            mounted = True

        if mounted:
            try:
                self._device_probe.unmount(directory)
            except UnmountError as e:
                UNMOUNT_FAILED(
                    volume_name=name, mountpoint=directory.path,
                    error=str(e)).write()

        if encryption_state is not None:
            try:
                if self._encryption.is_encrypted(
                        encryption_state.physical_device):
                    self._encryption.close(encryption_state.mapping_name)
            except Exception as e:
                LUKS_CLOSE_FAILED(volume_name=name, error=str(e)).write()

        try:
            volume = self._volumes.find_by_name(name)
        except Exception as e:
            VOLUME_LOOKUP_FAILED(volume_name=name, error=str(e)).write()
            return
        try:
            self._attachments.detach(volume)
        except Exception as e:
            DETACH_FAILED(volume_name=name, error=str(e)).write()

    def path(self, name):
        return self._configuration.mountpoint(name)

    def get(self, name):
        volume = self._volumes.find_by_name(name)
        return VolumeInfo(
            name=name,
            mountpoint=self._configuration.mountpoint(name),
            created_at=volume.created_at,
        )

    def list(self):
        return [
            VolumeInfo(
                name=volume.name,
                mountpoint=self._configuration.mountpoint(volume.name),
                created_at=volume.created_at,
            )
            for volume in self._volumes.list()
            if volume.name
        ]
