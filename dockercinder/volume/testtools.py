# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
In-memory implementations of the OpenStack managers, the device probe and the
encryption layer, for testing.
"""

from errno import EIO
from itertools import count

from zope.interface import implementer

from pyrsistent import PClass, field

from twisted.python.filepath import FilePath

from cinderclient import exceptions as cinder_exceptions
from novaclient import exceptions as nova_exceptions

from ..common.process import _CalledProcessError, _ProcessResult
from .cinder import (
    ICinderVolumeManager, INovaVolumeManager, INovaServerManager,
    AttachmentController, VolumeLifecycleManager,
)
from .configuration import MountConfiguration
from .device import IDeviceProbe, MAXIMUM_LABEL_LENGTH, UnmountError
from .luks import (
    IEncryptionLayer, EncryptionError, EncryptionState, MountNotFound,
    MAPPER_DIRECTORY, mapping_name_for, mapping_device_for,
)
from .orchestrator import MountOrchestrator

# Nova identifies this compute instance by this ID in the tests.
SERVER_ID = "5d4e0a86-7a4c-4ab7-b6c4-2c5a16e6b1f2"
CREATED_AT = "2016-08-01T10:20:30.000000"

_volume_ids = count(1)


def _new_volume_id():
    return "7a9e7f2c-1b0d-4c6e-9f00-{:012d}".format(next(_volume_ids))


class FakeCinderVolume(object):
    """
    The attributes of a ``cinderclient.v3.volumes.Volume`` which are used.

    :ivar list pending: Statuses the volume takes on, one per ``get``.
    """
    def __init__(self, id, name, size, volume_type, status="available",
                 created_at=CREATED_AT):
        self.id = id
        self.name = name
        self.size = size
        self.volume_type = volume_type
        self.status = status
        self.created_at = created_at
        self.attachments = []
        self.pending = []


@implementer(ICinderVolumeManager)
class FakeCinderVolumeManager(object):
    """
    Volumes kept in memory.  New volumes are ``creating`` for as many ``get``
    calls as ``creation_delay`` says.

    :ivar dict volumes: Volume ID to ``FakeCinderVolume``.
    """
    def __init__(self, creation_delay=0):
        self.volumes = {}
        self.creation_delay = creation_delay

    def add(self, name, status="available", size=1, volume_type=None,
            created_at=CREATED_AT):
        """
        Add a volume directly.

        :return: The ``FakeCinderVolume``.
        """
        volume = FakeCinderVolume(
            id=_new_volume_id(), name=name, size=size,
            volume_type=volume_type, status=status, created_at=created_at)
        self.volumes[volume.id] = volume
        return volume

    def create(self, size, name=None, volume_type=None):
        if self.creation_delay:
            volume = self.add(
                name, status="creating", size=size, volume_type=volume_type)
            volume.pending = (
                ["creating"] * (self.creation_delay - 1) + ["available"])
        else:
            volume = self.add(name, size=size, volume_type=volume_type)
        return volume

    def list(self, search_opts=None):
        name = (search_opts or {}).get("name")
        # Like some Cinder releases the name filter is a substring match.
        return [
            volume for volume in self.volumes.values()
            if name is None or name in (volume.name or "")
        ]

    def get(self, volume_id):
        try:
            volume = self.volumes[volume_id]
        except KeyError:
            raise cinder_exceptions.NotFound(
                404, "Volume {} could not be found.".format(volume_id))
        if volume.pending:
            volume.status = volume.pending.pop(0)
        return volume

    def delete(self, volume):
        existing = self.get(volume)
        if existing.attachments:
            raise cinder_exceptions.BadRequest(
                400, "Volume {} is attached.".format(volume))
        del self.volumes[volume]


@implementer(INovaVolumeManager)
class FakeNovaVolumeManager(object):
    """
    Attach the volumes of a ``FakeCinderVolumeManager``.

    A detached volume is ``detaching`` until the next ``get``.

    :ivar list calls: ``(method name, server_id, volume_id)`` of every call.
    :ivar set failing_servers: Detaching from these servers fails.
    """
    def __init__(self, cinder_volumes):
        self._cinder_volumes = cinder_volumes
        self.calls = []
        self.failing_servers = set()

    def create_server_volume(self, server_id, volume_id):
        self.calls.append(("create_server_volume", server_id, volume_id))
        volume = self._cinder_volumes.volumes[volume_id]
        if volume.status != "available":
            raise nova_exceptions.BadRequest(
                400, "Volume {} is {}.".format(volume_id, volume.status))
        volume.attachments.append({
            "attachment_id": "attachment-{}".format(len(self.calls)),
            "server_id": server_id,
            "volume_id": volume_id,
        })
        volume.status = "in-use"

    def delete_server_volume(self, server_id, volume_id):
        self.calls.append(("delete_server_volume", server_id, volume_id))
        if server_id in self.failing_servers:
            raise nova_exceptions.Conflict(
                409, "Cannot detach from server {}.".format(server_id))
        volume = self._cinder_volumes.volumes[volume_id]
        remaining = [
            attachment for attachment in volume.attachments
            if attachment["server_id"] != server_id
        ]
        if len(remaining) == len(volume.attachments):
            raise nova_exceptions.NotFound(
                404, "Volume {} is not attached to {}.".format(
                    volume_id, server_id))
        volume.attachments = remaining
        if not remaining:
            volume.status = "detaching"
            volume.pending = ["available"]


class FakeServer(PClass):
    id = field(type=str, mandatory=True)
    name = field(type=str, mandatory=True)


@implementer(INovaServerManager)
class FakeNovaServerManager(object):
    def __init__(self, servers=()):
        self.servers = list(servers)

    def list(self):
        return list(self.servers)


@implementer(IDeviceProbe)
class FakeDeviceProbe(object):
    """
    Devices, filesystems and mounts kept in memory.  Mount directories are
    real directories.

    :ivar dict filesystems: Device path to filesystem type.
    :ivar dict labels: Device path to filesystem label.
    :ivar dict mounts: Mount point path to device path.
    :ivar set broken: Mount point paths which cannot be examined.
    :ivar list waited_for: ``(directory, identifier, timeout)`` of every
        device wait.
    """
    def __init__(self):
        self.filesystems = {}
        self.labels = {}
        self.mounts = {}
        self.broken = set()
        self.waited_for = []

    def filesystem_type(self, device):
        return self.filesystems.get(device.path)

    def make_filesystem(self, device, label, filesystem):
        self.filesystems[device.path] = filesystem
        self.labels[device.path] = label[:MAXIMUM_LABEL_LENGTH]

    def wait_for_device(self, directory, identifier, timeout):
        self.waited_for.append((directory, identifier, timeout))
        return directory.child("virtio-" + identifier)

    def directory_exists(self, path):
        if path.path in self.broken:
            raise OSError(EIO, "Input/output error", path.path)
        return path.isdir()

    def mount(self, device, mountpoint):
        self.mounts[mountpoint.path] = device.path

    def unmount(self, mountpoint):
        if self.mounts.pop(mountpoint.path, None) is None:
            self.broken.discard(mountpoint.path)
            raise UnmountError(
                mountpoint=mountpoint,
                source_message="umount: {}: not mounted".format(
                    mountpoint.path))
        self.broken.discard(mountpoint.path)


@implementer(IEncryptionLayer)
class FakeEncryption(object):
    """
    Encryption which keeps its containers and mappings in memory and reads
    the mounts of a ``FakeDeviceProbe``.

    :ivar set encrypted: Paths of devices with a container.
    :ivar dict mappings: Open mapping name to physical device path.
    """
    def __init__(self, device_probe):
        self._device_probe = device_probe
        self.encrypted = set()
        self.mappings = {}

    def is_encrypted(self, device):
        return device.path in self.encrypted

    def open(self, device, key_file, volume_name):
        if device.path not in self.encrypted:
            raise EncryptionError(
                ["cryptsetup", "luksOpen", "-d", key_file.path, device.path,
                 mapping_name_for(volume_name)],
                "Device {} is not a valid LUKS device.".format(device.path))
        mapping_name = mapping_name_for(volume_name)
        self.mappings[mapping_name] = device.path
        return mapping_name

    def initialize(self, device, key_file):
        self.encrypted.add(device.path)
        self._device_probe.filesystems.pop(device.path, None)

    def close(self, mapping_name):
        if mapping_name not in self.mappings:
            raise EncryptionError(
                ["cryptsetup", "luksClose", mapping_name],
                "Device {} is not active.".format(mapping_name))
        del self.mappings[mapping_name]

    def recover_from_mount(self, mountpoint):
        device = self._device_probe.mounts.get(mountpoint.path)
        if device is None:
            raise MountNotFound(mountpoint, FilePath("/proc/mounts"))
        prefix = MAPPER_DIRECTORY.path + "/"
        if not device.startswith(prefix):
            return None
        mapping_name = device[len(prefix):]
        physical = self.mappings.get(mapping_name)
        if physical is None:
            return None
        return EncryptionState(
            mapping_device=mapping_device_for(mapping_name),
            mapping_name=mapping_name,
            physical_device=FilePath(physical),
        )


class FakeRunProcess(object):
    """
    A replacement for ``run_process`` which records commands and returns
    canned results.

    :ivar list commands: Every command run.
    """
    def __init__(self):
        self.commands = []
        self._responses = {}

    def respond(self, command, output="", status=0):
        """
        Make ``command`` produce ``output`` and exit with ``status``.  Other
        commands succeed without output.
        """
        self._responses[tuple(command)] = (output, status)

    def __call__(self, command):
        self.commands.append(command)
        output, status = self._responses.get(tuple(command), ("", 0))
        if status:
            raise _CalledProcessError(
                returncode=status, cmd=command, output=output)
        return _ProcessResult(command=command, output=output, status=status)


def fast_configuration(mount_dir, **kwargs):
    """
    :param FilePath mount_dir: The mount directory.
    :param kwargs: Other ``MountConfiguration`` fields.
    :return: A ``MountConfiguration`` for this compute instance whose waits
        are short.
    """
    values = dict(
        mount_dir=mount_dir,
        machine_id=SERVER_ID,
        volume_state_timeout=5.0,
        volume_state_delay=0.5,
        device_wait_timeout=10,
        device_wait_delay=1.0,
    )
    values.update(kwargs)
    return MountConfiguration(**values)


class RecordingSleep(object):
    """
    A replacement for ``time.sleep`` which returns immediately.

    :ivar list calls: The durations slept for.
    """
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


class FakeStack(PClass):
    """
    A ``MountOrchestrator`` wired up to fakes, and the fakes.
    """
    cinder_volumes = field(mandatory=True)
    nova_volumes = field(mandatory=True)
    device_probe = field(mandatory=True)
    encryption = field(mandatory=True)
    sleep = field(mandatory=True)
    configuration = field(mandatory=True)
    volumes = field(mandatory=True)
    attachments = field(mandatory=True)
    orchestrator = field(mandatory=True)


def fake_stack(configuration, creation_delay=0):
    """
    :param MountConfiguration configuration: The configuration to use.
    :param int creation_delay: See ``FakeCinderVolumeManager``.
    :return: A ``FakeStack``.
    """
    cinder_volumes = FakeCinderVolumeManager(creation_delay=creation_delay)
    nova_volumes = FakeNovaVolumeManager(cinder_volumes)
    device_probe = FakeDeviceProbe()
    encryption = FakeEncryption(device_probe)
    sleep = RecordingSleep()
    attachments = AttachmentController(
        cinder_volumes, nova_volumes, device_probe, configuration,
        sleep=sleep)
    volumes = VolumeLifecycleManager(
        cinder_volumes, attachments, configuration)
    orchestrator = MountOrchestrator(
        volumes, attachments, encryption, device_probe, configuration,
        sleep=sleep)
    return FakeStack(
        cinder_volumes=cinder_volumes,
        nova_volumes=nova_volumes,
        device_probe=device_probe,
        encryption=encryption,
        sleep=sleep,
        configuration=configuration,
        volumes=volumes,
        attachments=attachments,
        orchestrator=orchestrator,
    )
