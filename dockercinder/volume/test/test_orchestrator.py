# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Tests for ``dockercinder.volume.orchestrator``.
"""

from errno import EIO, ENOENT
from threading import Event, Thread

from eliot.testing import capture_logging, assertHasMessage, assertHasAction

from twisted.python.filepath import FilePath

from zope.interface.verify import verifyObject

from ...testtools import TestCase
from .. import orchestrator
from ..cinder import UnknownVolume, InvalidSize
from ..device import MountError
from ..luks import EncryptionKeyMissing, LuksEncryption
from .._logging import (
    ENCRYPTION_UNAVAILABLE, FORMATTING, MOUNT_VOLUME, MOUNT_DIRECTORY_RETRY,
    MOUNTPOINT_STAT_FAILED, VOLUME_LOOKUP_FAILED, DETACH_FAILED,
    ENCRYPTION_RECOVERY_FAILED, LUKS_CLOSE_FAILED,
)
from ..orchestrator import (
    IVolumeOrchestrator, MountDirectoryError, MountOrchestrator, VolumeInfo,
    encryption_requested,
)
from ..testtools import SERVER_ID, fake_stack, fast_configuration

KEY_FILE = FilePath("/etc/docker-cinder/luks.key")


class OrchestratorTestsMixin(object):
    """
    A ``MountOrchestrator`` using fakes and a temporary mount directory.
    """
    configuration_options = {}

    def setUp(self):
        super(OrchestratorTestsMixin, self).setUp()
        self.mount_dir = self.make_temporary_directory()
        self.chowned = []
        self.patch(
            orchestrator, "chown",
            lambda path, uid, gid: self.chowned.append((path, uid, gid)))
        self.stack = fake_stack(
            fast_configuration(self.mount_dir, **self.configuration_options))
        self.orchestrator = self.stack.orchestrator
        self.cinder = self.stack.cinder_volumes
        self.probe = self.stack.device_probe
        self.encryption = self.stack.encryption

    def cinder_volume(self, name):
        [volume] = [
            volume for volume in self.cinder.volumes.values()
            if volume.name == name
        ]
        return volume

    def device(self, name):
        """
        :return: The path of the device the fake probe reports for the
            volume called ``name``.
        """
        volume_id = self.cinder_volume(name).id
        return "/dev/disk/by-id/virtio-" + volume_id[:20]


class InterfaceTests(OrchestratorTestsMixin, TestCase):
    def test_interface(self):
        self.assertTrue(verifyObject(IVolumeOrchestrator, self.orchestrator))


class EncryptionRequestedTests(TestCase):
    """
    Tests for ``encryption_requested``.
    """
    def test_absent(self):
        self.assertTrue(encryption_requested({}))

    def test_false(self):
        """
        ``false`` in any case disables encryption.
        """
        self.assertEqual(
            [False, False, False],
            [encryption_requested({"encryption": value})
             for value in ("false", "False", "FALSE")],
        )

    def test_anything_else(self):
        """
        Any other value enables encryption.
        """
        self.assertEqual(
            [True, True, True],
            [encryption_requested({"encryption": value})
             for value in ("true", "no", "")],
        )


class CreateTests(OrchestratorTestsMixin, TestCase):
    """
    Tests for ``MountOrchestrator.create``.
    """
    @capture_logging(assertHasMessage, ENCRYPTION_UNAVAILABLE)
    def test_no_key_file(self, logger):
        """
        Without a key file the volume is created unencrypted even though
        encryption was requested.
        """
        self.orchestrator.create("vol1", {"size": "5", "type": "fast"})
        volume = self.cinder_volume("vol1")
        self.assertEqual(
            (5, "fast", [], set()),
            (volume.size, volume.volume_type, self.stack.nova_volumes.calls,
             self.encryption.encrypted),
        )

    def test_defaults(self):
        """
        The configured size and type are used when not given.
        """
        self.orchestrator.create("vol1", {})
        volume = self.cinder_volume("vol1")
        self.assertEqual((10, "classic"), (volume.size, volume.volume_type))

    def test_invalid_size(self):
        """
        ``InvalidSize`` is raised and nothing is created for a bad size.
        """
        self.assertRaises(
            InvalidSize, self.orchestrator.create, "vol1", {"size": "big"})
        self.assertEqual({}, self.cinder.volumes)

    def test_get_after_create(self):
        """
        A created volume can be looked up with its creation time.
        """
        self.orchestrator.create("vol1", {"size": "5", "type": "fast"})
        self.assertEqual(
            VolumeInfo(
                name="vol1",
                mountpoint=self.mount_dir.descendant(["vol1", "data"]),
                created_at="2016-08-01T10:20:30Z",
            ),
            self.orchestrator.get("vol1"),
        )


class EncryptedCreateTests(OrchestratorTestsMixin, TestCase):
    """
    Tests for ``MountOrchestrator.create`` with a key file.
    """
    configuration_options = {"key_file": KEY_FILE}

    def test_encrypted(self):
        """
        The new volume is attached, its device initialized for encryption and
        the volume detached again.
        """
        self.orchestrator.create("vol1", {})
        volume = self.cinder_volume("vol1")
        self.assertEqual(
            ({self.device("vol1")},
             [("create_server_volume", SERVER_ID, volume.id),
              ("delete_server_volume", SERVER_ID, volume.id)],
             []),
            (self.encryption.encrypted, self.stack.nova_volumes.calls,
             volume.attachments),
        )

    def test_waits_for_creation(self):
        """
        A volume which is still being created is waited for before it is
        attached.
        """
        stack = fake_stack(
            fast_configuration(self.mount_dir, key_file=KEY_FILE),
            creation_delay=2)
        stack.orchestrator.create("vol1", {})
        self.assertEqual(
            (2, [0.5, 1.0]),
            (len(stack.nova_volumes.calls), stack.sleep.calls),
        )

    def test_encryption_disabled(self):
        """
        ``encryption: false`` creates an unencrypted volume.
        """
        self.orchestrator.create("vol1", {"encryption": "False"})
        self.assertEqual(
            (set(), []),
            (self.encryption.encrypted, self.stack.nova_volumes.calls),
        )


class MountTests(OrchestratorTestsMixin, TestCase):
    """
    Tests for ``MountOrchestrator.mount``.
    """
    @capture_logging(assertHasMessage, FORMATTING, {"volume_name": "vol1"})
    def test_new_volume(self, logger):
        """
        A volume without a filesystem is formatted, mounted and given a
        sub-directory owned by root which everybody can write to.
        """
        self.orchestrator.create("vol1", {"encryption": "false"})
        mountpoint = self.orchestrator.mount("vol1")
        directory = self.mount_dir.child("vol1")
        device = self.device("vol1")
        self.assertEqual(
            (directory.child("data"),
             {device: "ext4"},
             {device: "vol1"},
             {directory.path: device},
             "rwxrwxrwx",
             [(directory.child("data").path, 0, 0)]),
            (mountpoint,
             self.probe.filesystems,
             self.probe.labels,
             self.probe.mounts,
             mountpoint.getPermissions().shorthand(),
             self.chowned),
        )

    @capture_logging(
        assertHasAction, MOUNT_VOLUME, True, {"volume_name": "vol1"})
    def test_logged(self, logger):
        """
        Mounting runs in a ``MOUNT_VOLUME`` action.
        """
        self.orchestrator.create("vol1", {"encryption": "false"})
        self.orchestrator.mount("vol1")

    def test_existing_filesystem(self):
        """
        A volume with a filesystem is mounted as it is.
        """
        self.orchestrator.create("vol1", {"encryption": "false"})
        self.probe.filesystems[self.device("vol1")] = "xfs"
        self.orchestrator.mount("vol1")
        self.assertEqual(
            ({}, [], False),
            (self.probe.labels, self.chowned,
             self.mount_dir.descendant(["vol1", "data"]).exists()),
        )

    def test_long_name_label(self):
        """
        The filesystem label is the volume name truncated to 12 characters.
        """
        name = "my-very-long-volume-name"
        self.orchestrator.create(name, {"encryption": "false"})
        self.orchestrator.mount(name)
        self.assertEqual(
            {self.device(name): "my-very-long"}, self.probe.labels)

    def test_unknown(self):
        """
        ``UnknownVolume`` is raised for a volume which doesn't exist.
        """
        self.assertRaises(UnknownVolume, self.orchestrator.mount, "vol1")

    def test_attached_elsewhere(self):
        """
        A volume attached to another server is taken over.
        """
        self.orchestrator.create("vol1", {"encryption": "false"})
        volume = self.cinder_volume("vol1")
        self.stack.nova_volumes.create_server_volume("other", volume.id)
        self.orchestrator.mount("vol1")
        self.assertEqual(
            [SERVER_ID],
            [attachment["server_id"] for attachment in volume.attachments],
        )

    def test_encrypted_without_key(self):
        """
        ``EncryptionKeyMissing`` is raised for an encrypted volume if no key
        file is configured.
        """
        self.orchestrator.create("vol1", {"encryption": "false"})
        self.encryption.encrypted.add(self.device("vol1"))
        self.assertRaises(
            EncryptionKeyMissing, self.orchestrator.mount, "vol1")

    def test_mount_error(self):
        """
        A failure to mount is raised and the volume stays attached.
        """
        self.orchestrator.create("vol1", {"encryption": "false"})

        def mount(device, mountpoint):
            raise MountError(device, mountpoint, "mount: wrong fs type")
        self.probe.mount = mount
        e = self.assertRaises(MountError, self.orchestrator.mount, "vol1")
        self.assertEqual(
            ("mount: wrong fs type", "in-use"),
            (e.source_message, self.cinder_volume("vol1").status),
        )

    def test_no_subdirectory(self):
        """
        Without a configured sub-directory Docker is given the root of the
        volume's filesystem.
        """
        stack = fake_stack(
            fast_configuration(self.mount_dir, volume_subdirectory=None))
        stack.orchestrator.create("vol1", {"encryption": "false"})
        self.assertEqual(
            (self.mount_dir.child("vol1"), []),
            (stack.orchestrator.mount("vol1"), self.chowned),
        )


class EncryptedMountTests(OrchestratorTestsMixin, TestCase):
    """
    Tests for ``MountOrchestrator.mount`` and ``unmount`` of encrypted
    volumes.
    """
    configuration_options = {"key_file": KEY_FILE}

    def test_mount(self):
        """
        The mapping device of an encrypted volume is formatted and mounted.
        """
        self.orchestrator.create("vol1", {})
        self.orchestrator.mount("vol1")
        self.assertEqual(
            ({"vol1_luks": self.device("vol1")},
             {"/dev/mapper/vol1_luks": "ext4"},
             {self.mount_dir.child("vol1").path: "/dev/mapper/vol1_luks"}),
            (self.encryption.mappings, self.probe.filesystems,
             self.probe.mounts),
        )

    def test_unmount(self):
        """
        Unmounting closes the mapping and detaches the volume.
        """
        self.orchestrator.create("vol1", {})
        self.orchestrator.mount("vol1")
        self.orchestrator.unmount("vol1")
        self.assertEqual(
            ({}, {}, [], "available"),
            (self.encryption.mappings, self.probe.mounts,
             self.cinder_volume("vol1").attachments,
             self.cinder_volume("vol1").status),
        )

    def test_remount(self):
        """
        An encrypted volume can be mounted again after being unmounted, and
        keeps its filesystem.
        """
        self.orchestrator.create("vol1", {})
        self.orchestrator.mount("vol1")
        self.orchestrator.unmount("vol1")
        self.chowned[:] = []
        self.orchestrator.mount("vol1")
        self.assertEqual(
            ({"vol1_luks": self.device("vol1")}, []),
            (self.encryption.mappings, self.chowned),
        )

    @capture_logging(
        assertHasMessage, ENCRYPTION_RECOVERY_FAILED, {"volume_name": "vol1"})
    def test_unmount_recovery_error(self, logger):
        """
        A failure to recover the encryption state is logged and the volume is
        still unmounted and detached.
        """
        self.orchestrator.create("vol1", {})
        self.orchestrator.mount("vol1")

        def recover_from_mount(mountpoint):
            raise UnicodeDecodeError("utf-8", b"\xe9", 0, 1, "invalid")
        self.patch(self.encryption, "recover_from_mount", recover_from_mount)
        self.orchestrator.unmount("vol1")
        self.assertEqual(
            ({}, "available"),
            (self.probe.mounts, self.cinder_volume("vol1").status),
        )

    @capture_logging(
        assertHasMessage, LUKS_CLOSE_FAILED, {"volume_name": "vol1"})
    def test_unmount_close_error(self, logger):
        """
        A failure to run ``cryptsetup`` when closing the mapping is logged
        and the volume is still detached.
        """
        self.orchestrator.create("vol1", {})
        self.orchestrator.mount("vol1")

        def close(mapping_name):
            raise OSError(ENOENT, "No such file or directory", "cryptsetup")
        self.patch(self.encryption, "close", close)
        self.orchestrator.unmount("vol1")
        self.assertEqual(
            ({}, "available"),
            (self.probe.mounts, self.cinder_volume("vol1").status),
        )


class MountDirectoryTests(OrchestratorTestsMixin, TestCase):
    """
    Tests for the creation of the mount directory.
    """
    def fail_makedirs(self, failures):
        """
        Make the first ``failures`` attempts to create a directory fail.
        """
        real_makedirs = orchestrator.makedirs
        attempts = []

        def makedirs(path, mode, exist_ok=False):
            attempts.append(path)
            if len(attempts) <= failures:
                raise OSError(EIO, "Input/output error", path)
            return real_makedirs(path, mode, exist_ok=exist_ok)
        self.patch(orchestrator, "makedirs", makedirs)
        return attempts

    @capture_logging(assertHasMessage, MOUNT_DIRECTORY_RETRY)
    def test_retry(self, logger):
        """
        After a failure the directory is unmounted and creation retried after
        a delay which doubles each time.
        """
        self.orchestrator.create("vol1", {"encryption": "false"})
        attempts = self.fail_makedirs(2)
        unmounted = []
        real_unmount = self.probe.unmount

        def unmount(mountpoint):
            unmounted.append(mountpoint)
            real_unmount(mountpoint)
        self.probe.unmount = unmount

        self.orchestrator.mount("vol1")
        directory = self.mount_dir.child("vol1")
        self.assertEqual(
            (3, [1.0, 1.0, 2.0], [directory, directory]),
            (len(attempts), self.stack.sleep.calls, unmounted),
        )

    def test_exhausted(self):
        """
        ``MountDirectoryError`` is raised after three failed attempts.
        """
        self.orchestrator.create("vol1", {"encryption": "false"})
        attempts = self.fail_makedirs(3)
        e = self.assertRaises(
            MountDirectoryError, self.orchestrator.mount, "vol1")
        self.assertEqual(
            (3, self.mount_dir.child("vol1"), {}),
            (len(attempts), e.path, self.probe.mounts),
        )
        self.assertIn("Input/output error", str(e))


class UnmountTests(OrchestratorTestsMixin, TestCase):
    """
    Tests for ``MountOrchestrator.unmount``.
    """
    def test_unmount(self):
        """
        The volume is unmounted and detached.
        """
        self.orchestrator.create("vol1", {"encryption": "false"})
        self.orchestrator.mount("vol1")
        self.orchestrator.unmount("vol1")
        self.assertEqual(
            ({}, [], "available"),
            (self.probe.mounts, self.cinder_volume("vol1").attachments,
             self.cinder_volume("vol1").status),
        )

    def test_undecodable_mount_table(self):
        """
        Mount points elsewhere on the host which aren't valid UTF-8 don't
        stop an unencrypted volume from being unmounted and detached.
        """
        self.orchestrator.create("vol1", {"encryption": "false"})
        self.orchestrator.mount("vol1")
        mount_table = self.make_temporary_path()
        mount_table.setContent(
            b"/dev/vdc /mnt/caf\xe9 ext4 rw 0 0\n" +
            "/dev/vdb {} ext4 rw 0 0\n".format(
                self.mount_dir.child("vol1").path).encode("utf-8"))
        stack = self.stack
        unmounting = MountOrchestrator(
            stack.volumes, stack.attachments,
            LuksEncryption(mount_table=mount_table), stack.device_probe,
            stack.configuration, sleep=stack.sleep)
        unmounting.unmount("vol1")
        self.assertEqual(
            ({}, "available"),
            (self.probe.mounts, self.cinder_volume("vol1").status),
        )

    def test_twice(self):
        """
        Unmounting an unmounted, detached volume does nothing.
        """
        self.orchestrator.create("vol1", {"encryption": "false"})
        self.orchestrator.mount("vol1")
        self.orchestrator.unmount("vol1")
        self.orchestrator.unmount("vol1")
        self.assertEqual("available", self.cinder_volume("vol1").status)

    @capture_logging(
        assertHasMessage, VOLUME_LOOKUP_FAILED, {"volume_name": "vol1"})
    def test_unknown(self, logger):
        """
        Unmounting a volume which doesn't exist logs the failure but doesn't
        raise it.
        """
        self.orchestrator.unmount("vol1")

    @capture_logging(
        assertHasMessage, MOUNTPOINT_STAT_FAILED, {"volume_name": "vol1"})
    def test_broken_mount(self, logger):
        """
        A mount point which can't be examined is unmounted anyway.
        """
        self.orchestrator.create("vol1", {"encryption": "false"})
        self.orchestrator.mount("vol1")
        self.probe.broken.add(self.mount_dir.child("vol1").path)
        self.orchestrator.unmount("vol1")
        self.assertEqual({}, self.probe.mounts)

    @capture_logging(
        assertHasMessage, DETACH_FAILED, {"volume_name": "vol1"})
    def test_detach_failure(self, logger):
        """
        A failure to detach is logged but not raised.
        """
        self.orchestrator.create("vol1", {"encryption": "false"})
        self.orchestrator.mount("vol1")
        self.stack.nova_volumes.failing_servers.add(SERVER_ID)
        self.orchestrator.unmount("vol1")
        self.assertEqual({}, self.probe.mounts)

    def test_serialized(self):
        """
        ``unmount`` of a volume waits for a ``mount`` of the same volume in
        progress.
        """
        self.orchestrator.create("vol1", {"encryption": "false"})
        mounting = Event()
        proceed = Event()
        real_mount = self.probe.mount

        def mount(device, mountpoint):
            mounting.set()
            proceed.wait(10)
            real_mount(device, mountpoint)
        self.probe.mount = mount

        thread = Thread(target=self.orchestrator.mount, args=("vol1",))
        thread.start()
        self.addCleanup(thread.join)
        self.addCleanup(proceed.set)
        mounting.wait(10)

        unmounted = Event()

        def unmount():
            self.orchestrator.unmount("vol1")
            unmounted.set()
        second = Thread(target=unmount)
        second.start()
        self.addCleanup(second.join)

        self.assertFalse(unmounted.wait(0.1))
        proceed.set()
        self.assertTrue(unmounted.wait(10))
        self.assertEqual({}, self.probe.mounts)


class ReadOnlyTests(OrchestratorTestsMixin, TestCase):
    """
    Tests for ``MountOrchestrator.get``, ``list``, ``path`` and ``remove``.
    """
    def test_path(self):
        """
        The path is reconstructed whether or not the volume exists.
        """
        self.assertEqual(
            self.mount_dir.descendant(["vol1", "data"]),
            self.orchestrator.path("vol1"))

    def test_get_unknown(self):
        self.assertRaises(UnknownVolume, self.orchestrator.get, "vol1")

    def test_list(self):
        """
        Every volume with a name is listed.
        """
        self.orchestrator.create("vol1", {"encryption": "false"})
        self.orchestrator.create("vol2", {"encryption": "false"})
        self.cinder.add(None)
        self.cinder.add("")
        self.assertEqual(
            ["vol1", "vol2"],
            sorted(info.name for info in self.orchestrator.list()),
        )

    def test_remove(self):
        """
        A removed volume can no longer be found.
        """
        self.orchestrator.create("vol1", {"encryption": "false"})
        self.orchestrator.remove("vol1")
        self.assertRaises(UnknownVolume, self.orchestrator.get, "vol1")

    def test_remove_mounted(self):
        """
        A volume which is still attached is detached before being removed.
        """
        self.orchestrator.create("vol1", {"encryption": "false"})
        self.orchestrator.mount("vol1")
        self.orchestrator.remove("vol1")
        self.assertEqual({}, self.cinder.volumes)
