# -*- test-case-name: dockercinder.volume.test.test_device -*-
# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Interactions with the OS pertaining to block devices: finding the device for
a newly attached volume, formatting and mounting it.
"""

import os
import time
from errno import ENOENT
from stat import S_ISDIR
from subprocess import CalledProcessError

from zope.interface import Interface, implementer

from twisted.python.filepath import FilePath

from ..common.process import run_process
from ..common import poll_until, interval_steps, LoopExceeded

# mkfs.ext4 refuses labels longer than 16 bytes and some other filesystems
# allow even less.
MAXIMUM_LABEL_LENGTH = 12

# Where udev publishes stable names for block devices.  The virtio serial
# number of an attached Cinder volume is its ID truncated to 20 characters.
DEVICE_DIRECTORY = FilePath("/dev/disk/by-id")
DEVICE_ID_LENGTH = 20


class FilesystemDetectionError(Exception):
    """
    ``blkid`` failed with an error message rather than just not finding a
    filesystem.

    :ivar FilePath device: The device being probed.
    :ivar str source_message: The output of ``blkid``.
    """
    def __init__(self, device, source_message):
        self.device = device
        self.source_message = source_message

    def __str__(self):
        return "Unable to detect filesystem on {}: {}".format(
            self.device.path, self.source_message)


class MakeFilesystemError(Exception):
    """
    Raised from errors while making a filesystem on a block device.

    :ivar FilePath device: The device that was being formatted.
    :ivar list command: The command line that was run.
    :ivar str source_message: The output of ``mkfs``.
    """
    def __init__(self, device, command, source_message):
        self.device = device
        self.command = command
        self.source_message = source_message

    def __str__(self):
        return "Command {!r} failed: {}".format(
            " ".join(self.command), self.source_message)


class MountError(Exception):
    """
    Raised from errors while mounting a block device.

    :ivar FilePath device: The device that was being mounted.
    :ivar FilePath mountpoint: Where it was being mounted.
    :ivar str source_message: The output of ``mount``.
    """
    def __init__(self, device, mountpoint, source_message):
        self.device = device
        self.mountpoint = mountpoint
        self.source_message = source_message

    def __str__(self):
        return "Unable to mount {} at {}: {}".format(
            self.device.path, self.mountpoint.path, self.source_message)


class UnmountError(Exception):
    """
    Raised from errors while unmounting.

    :ivar FilePath mountpoint: The path being unmounted.
    :ivar str source_message: The output of ``umount``.
    """
    def __init__(self, mountpoint, source_message):
        self.mountpoint = mountpoint
        self.source_message = source_message

    def __str__(self):
        return "Unable to unmount {}: {}".format(
            self.mountpoint.path, self.source_message)


class DeviceTimeout(Exception):
    """
    No device appeared for an attached volume in time.

    :ivar FilePath directory: The directory that was watched.
    :ivar str identifier: The string the device name had to contain.
    :ivar timeout: The number of seconds waited.
    """
    def __init__(self, directory, identifier, timeout):
        self.directory = directory
        self.identifier = identifier
        self.timeout = timeout

    def __str__(self):
        return (
            "Timed out after {}s waiting for a device matching {!r} "
            "in {}".format(self.timeout, self.identifier, self.directory.path)
        )


def device_identifier(volume_id):
    """
    :param str volume_id: A Cinder volume ID.
    :return: The part of ``volume_id`` which appears in the names of the
        device nodes of the attached volume.
    """
    return volume_id[:DEVICE_ID_LENGTH]


class IDeviceProbe(Interface):
    """
    Local block device operations.
    """
    def filesystem_type(device):
        """
        :param FilePath device: The block device to probe.

        :raise FilesystemDetectionError: If the probe fails with a message.
        :return: The name of the filesystem on ``device`` or ``None`` if it
            has none.
        """

    def make_filesystem(device, label, filesystem):
        """
        Format ``device``.

        :param FilePath device: The block device to format.
        :param str label: The filesystem label.  Only the first
            ``MAXIMUM_LABEL_LENGTH`` characters are used.
        :param str filesystem: The filesystem type, e.g. ``ext4``.

        :raise MakeFilesystemError: If formatting fails.
        """

    def wait_for_device(directory, identifier, timeout):
        """
        Wait for an entry whose name contains ``identifier`` to appear in
        ``directory``.

        :param FilePath directory: The directory to watch.
        :param str identifier: A string the entry's name must contain.
        :param int timeout: How many seconds to wait for.

        :raise DeviceTimeout: If nothing appears in time.
        :return: The ``FilePath`` of the first matching entry.
        """

    def directory_exists(path):
        """
        :param FilePath path: The path to check.

        :raise OSError: If ``path`` cannot be examined for any reason other
            than not existing.  A broken mount point typically gives ``EIO``
            or ``ENOTCONN``.
        :return: ``True`` if ``path`` is an existing directory.
        """

    def mount(device, mountpoint):
        """
        Mount ``device`` at ``mountpoint``.

        :raise MountError: If ``mount`` fails.
        """

    def unmount(mountpoint):
        """
        Unmount whatever is mounted at ``mountpoint``.

        :raise UnmountError: If ``umount`` fails.
        """


@implementer(IDeviceProbe)
class DeviceProbe(object):
    """
    Real implementation of ``IDeviceProbe``.

    :ivar _sleep: Called with a number of seconds to wait between checks for
        a new device.
    """
    def __init__(self, sleep=time.sleep):
        self._sleep = sleep

    def filesystem_type(self, device):
        try:
            result = run_process(
                ["blkid", "-s", "TYPE", "-o", "value", device.path])
        except CalledProcessError as e:
            # blkid exits with 2 and no output when there is nothing to
            # identify.
            if not e.output.strip():
                return None
            raise FilesystemDetectionError(
                device=device, source_message=e.output)
        return result.output.strip() or None

    def make_filesystem(self, device, label, filesystem):
        command = [
            "mkfs." + filesystem,
            "-L", label[:MAXIMUM_LABEL_LENGTH],
            device.path,
        ]
        try:
            run_process(command)
        except CalledProcessError as e:
            raise MakeFilesystemError(
                device=device, command=command, source_message=e.output)

    def wait_for_device(self, directory, identifier, timeout):
        def find_device():
            for name in sorted(os.listdir(directory.path)):
                if identifier in name:
                    return directory.child(name)
            return None
        try:
            return poll_until(
                find_device, interval_steps(1.0, timeout), self._sleep)
        except LoopExceeded:
            raise DeviceTimeout(directory, identifier, timeout)

    def directory_exists(self, path):
        try:
            mode = os.stat(path.path).st_mode
        except OSError as e:
            if e.errno == ENOENT:
                return False
            raise
        return S_ISDIR(mode)

    def mount(self, device, mountpoint):
        try:
            run_process(["mount", device.path, mountpoint.path])
        except CalledProcessError as e:
            raise MountError(
                device=device, mountpoint=mountpoint,
                source_message=e.output)

    def unmount(self, mountpoint):
        try:
            run_process(["umount", mountpoint.path])
        except CalledProcessError as e:
            raise UnmountError(
                mountpoint=mountpoint, source_message=e.output)
