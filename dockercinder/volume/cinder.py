# -*- test-case-name: dockercinder.volume.test.test_cinder -*-
# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Cinder volumes and their attachment to this compute instance through Nova.
"""

from datetime import datetime, timezone
import socket
import time
from uuid import UUID

from eliot import Message

from pyrsistent import PClass, field, pvector_field

from keystoneauth1 import loading
from keystoneauth1.exceptions.http import HttpError as KeystoneHttpError
from keystoneauth1.session import Session
from cinderclient.client import Client as CinderClient
from cinderclient.exceptions import ClientException as CinderClientException
from novaclient.client import Client as NovaClient
from novaclient.exceptions import ClientException as NovaClientException

from twisted.python.filepath import FilePath

from zope.interface import implementer, Interface

from ..common import (
    interface_decorator, poll_until, interval_steps, LoopExceeded,
)
from .device import DEVICE_DIRECTORY, device_identifier
from ._logging import (
    OPENSTACK_ACTION, NOVA_CLIENT_EXCEPTION, CINDER_CLIENT_EXCEPTION,
    KEYSTONE_HTTP_ERROR, COMPUTE_INSTANCE_ID_NOT_FOUND, ATTACH_VOLUME,
    DETACH_VOLUME, WAITING_FOR_VOLUME_STATUS, FORCED_DETACH,
)

CINDER_API_VERSION = "3"
NOVA_API_VERSION = "2.1"

AVAILABLE = "available"
# A volume in one of these states becomes available by itself.
SETTLING_STATES = ("creating", "detaching")

MACHINE_ID_FILE = FilePath("/etc/machine-id")


class UnknownVolume(Exception):
    """
    There is no volume with the given name.
    """
    def __init__(self, name):
        self.name = name

    def __str__(self):
        return "Volume {!r} not found".format(self.name)


class InvalidSize(Exception):
    """
    A volume size which is not a positive whole number of GiB.
    """
    def __init__(self, size):
        self.size = size

    def __str__(self):
        return "Invalid volume size {!r}: must be a positive whole number " \
            "of GiB".format(self.size)


class VolumeStateTimeout(Exception):
    """
    A volume did not reach a status in time.

    :ivar Volume volume: The volume being waited on.
    :ivar str desired_status: The status it was meant to reach.
    :ivar str last_status: The status it had when we gave up.
    """
    def __init__(self, volume, desired_status, last_status):
        self.volume = volume
        self.desired_status = desired_status
        self.last_status = last_status

    def __str__(self):
        return (
            "Timed out waiting for volume {} ({!r}) to become {!r}, "
            "last status {!r}".format(
                self.volume.volume_id, self.volume.name,
                self.desired_status, self.last_status)
        )


class UnexpectedVolumeState(Exception):
    """
    A volume is in a status from which the requested operation cannot
    proceed.
    """
    def __init__(self, volume, desired_status, unexpected_status):
        self.volume = volume
        self.desired_status = desired_status
        self.unexpected_status = unexpected_status

    def __str__(self):
        return (
            "Invalid volume state for volume {} ({!r}): expected {!r}, "
            "found {!r}".format(
                self.volume.volume_id, self.volume.name,
                self.desired_status, self.unexpected_status)
        )


class UnknownInstanceID(Exception):
    """
    The Nova ID of this compute instance could not be determined.
    """
    def __init__(self, hostname, matching_servers):
        self.hostname = hostname
        self.matching_servers = matching_servers

    def __str__(self):
        return (
            "Unable to determine the compute instance ID: configure "
            "node.machine_id.  Servers named {!r}: {!r}".format(
                self.hostname, self.matching_servers)
        )


def rfc3339(timestamp):
    """
    Convert a Cinder timestamp to RFC 3339.

    Cinder reports times in UTC, usually without a zone designator.

    :param str timestamp: An ISO 8601 timestamp, or ``None``.
    :return: The RFC 3339 form, or an empty string if ``timestamp`` is
        missing or not understood.
    """
    if not timestamp:
        return ""
    try:
        parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return ""
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Attachment(PClass):
    """
    A Cinder volume attached to a Nova server.
    """
    attachment_id = field(type=str, mandatory=True)
    server_id = field(type=str, mandatory=True)
    volume_id = field(type=str, mandatory=True)


class Volume(PClass):
    """
    What we know about a Cinder volume.

    :ivar str volume_id: The Cinder ID.
    :ivar str name: The Cinder name, which is the Docker volume name.
    :ivar str status: The Cinder status, e.g. ``available`` or ``in-use``.
    :ivar int size: The size in GiB.
    :ivar volume_type: The Cinder volume type, if any.
    :ivar str created_at: The creation time in RFC 3339 form, or an empty
        string.
    :ivar attachments: The ``Attachment``s of the volume.
    """
    volume_id = field(type=str, mandatory=True)
    name = field(type=str, mandatory=True, initial="")
    status = field(type=str, mandatory=True)
    size = field(type=int, mandatory=True, initial=0)
    volume_type = field(type=(str, type(None)), initial=None)
    created_at = field(type=str, mandatory=True, initial="")
    attachments = pvector_field(Attachment)


def volume_from_cinder(cinder_volume):
    """
    :param cinder_volume: A ``cinderclient.v3.volumes.Volume``.
    :return: The equivalent ``Volume``.
    """
    attachments = []
    for attachment in getattr(cinder_volume, "attachments", None) or []:
        attachments.append(Attachment(
            attachment_id=str(
                attachment.get("attachment_id") or attachment.get("id")),
            server_id=str(attachment["server_id"]),
            volume_id=str(attachment.get("volume_id") or cinder_volume.id),
        ))
    return Volume(
        volume_id=cinder_volume.id,
        name=getattr(cinder_volume, "name", None) or "",
        status=cinder_volume.status,
        size=int(getattr(cinder_volume, "size", 0) or 0),
        volume_type=getattr(cinder_volume, "volume_type", None),
        created_at=rfc3339(getattr(cinder_volume, "created_at", None)),
        attachments=attachments,
    )


def _openstack_logged_method(method_name, original_name):
    """
    Run a method and log additional information about any exceptions that are
    raised.

    :param str method_name: The name of the method of the wrapped object to
        call.
    :param str original_name: The name of the attribute of self where the
        wrapped object can be found.

    :return: A function which will call the method of the wrapped object and do
        the extra exception logging.
    """
    def _run_with_logging(self, *args, **kwargs):
        original = getattr(self, original_name)
        method = getattr(original, method_name)

        with OPENSTACK_ACTION(operation=[method_name, args, kwargs]):
            try:
                return method(*args, **kwargs)
            except NovaClientException as e:
                NOVA_CLIENT_EXCEPTION(
                    code=e.code,
                    message=_text(e.message),
                    details=e.details,
                    request_id=e.request_id,
                    url=getattr(e, "url", None),
                    method=getattr(e, "method", None),
                ).write()
                raise
            except CinderClientException as e:
                CINDER_CLIENT_EXCEPTION(
                    code=e.code,
                    message=_text(e.message),
                    details=e.details,
                    request_id=e.request_id,
                    url=getattr(e, "url", None),
                    method=getattr(e, "method", None),
                ).write()
                raise
            except KeystoneHttpError as e:
                KEYSTONE_HTTP_ERROR(
                    code=e.http_status,
                    message=_text(e.message),
                    details=e.details,
                    request_id=e.request_id,
                    url=e.url,
                    method=e.method,
                    response=(
                        e.response.text if e.response is not None else None),
                ).write()
                raise
    return _run_with_logging


def _text(value):
    if value is None:
        return None
    return str(value)


def auto_openstack_logging(interface, original):
    """
    Create a class decorator which adds OpenStack-specific exception logging
    versions of all of the methods on ``interface``.  Nova, Cinder and
    Keystone client exceptions will have all of their details logged any time
    they are raised.

    :param zope.interface.InterfaceClass interface: The interface from which to
        take methods.
    :param str original: The name of an attribute on instances of the decorated
        class which refers to a provider of ``interface``.

    :return: The class decorator.
    """
    return interface_decorator(
        "auto_openstack_logging",
        interface,
        _openstack_logged_method,
        original,
    )


class ICinderVolumeManager(Interface):
    """
    The parts of ``cinderclient.v3.volumes.VolumeManager`` that we use.
    """

    # Cinder sizes are in GiB.
    def create(size, name=None, volume_type=None):
        """
        Creates a volume.

        :param int size: Size of volume in GiB.
        :param str name: Name of the volume.
        :param str volume_type: Type of the volume.
        :rtype: ``cinderclient.v3.volumes.Volume``
        """

    def list(search_opts=None):
        """
        Lists volumes, optionally filtered.

        :param dict search_opts: Filters, e.g. ``{"name": "vol1"}``.
        """

    def get(volume_id):
        """
        Retrieve information about an existing volume.
        """

    def delete(volume):
        """
        Delete a volume.

        :param volume: The ID of the volume to delete.
        """


class INovaVolumeManager(Interface):
    """
    The parts of ``novaclient.v2.volumes.VolumeManager`` that we use.
    """
    def create_server_volume(server_id, volume_id):
        """
        Attach a volume to a server.  The device name is chosen by Nova.
        """

    def delete_server_volume(server_id, volume_id):
        """
        Detach a volume from a server.
        """


class INovaServerManager(Interface):
    """
    The parts of ``novaclient.v2.servers.ServerManager`` that we use.
    """
    def list():
        """
        Get a list of servers.
        """


@implementer(ICinderVolumeManager)
@auto_openstack_logging(ICinderVolumeManager, "_cinder_volumes")
class _LoggingCinderVolumeManager(PClass):
    _cinder_volumes = field(mandatory=True)


@implementer(INovaVolumeManager)
@auto_openstack_logging(INovaVolumeManager, "_nova_volumes")
class _LoggingNovaVolumeManager(PClass):
    _nova_volumes = field(mandatory=True)


@implementer(INovaServerManager)
@auto_openstack_logging(INovaServerManager, "_nova_servers")
class _LoggingNovaServerManager(PClass):
    _nova_servers = field(mandatory=True)


def _openstack_auth_from_config(auth_plugin='password', **config):
    """
    Create an OpenStack authentication plugin from the given configuration.

    :param str auth_plugin: The name of the keystoneauth plugin to create.
    :param config: Parameters to supply to the authentication plugin.  The
        exact parameters depend on the authentication plugin selected; other
        keys are ignored.

    :return: The authentication object.
    """
    loader = loading.get_plugin_loader(auth_plugin)
    plugin_kwargs = {}
    for option in loader.get_options():
        # option.dest is option.name with hyphens replaced with underscores.
        if option.dest in config:
            plugin_kwargs[option.dest] = config[option.dest]
    return loader.load_from_options(**plugin_kwargs)


def _openstack_verify_from_config(
        verify_peer=True, verify_ca_path=None, **config):
    """
    Turn ``verify_peer`` and ``verify_ca_path`` into a requests-style
    ``verify`` value.

    Turning off ``verify_peer`` disables certificate checking entirely.  With
    ``verify_ca_path`` the certificate is checked against that CA bundle,
    otherwise against the system CAs.

    :return: ``False``, ``True`` or the CA bundle path.
    """
    if verify_peer:
        if verify_ca_path:
            return verify_ca_path
        return True
    return False


def get_keystone_session(**config):
    """
    Create a Keystone session from the ``openstack`` configuration section.

    :return: ``keystoneauth1.session.Session``
    """
    return Session(
        auth=_openstack_auth_from_config(**config),
        verify=_openstack_verify_from_config(**config),
    )


class OpenStackAPI(PClass):
    """
    The logging-wrapped OpenStack managers used by this package.
    """
    cinder_volumes = field(mandatory=True)
    nova_volumes = field(mandatory=True)
    nova_servers = field(mandatory=True)


def openstack_from_configuration(region=None, **config):
    """
    Build the Cinder and Nova clients from the ``openstack`` configuration
    section.

    :param str region: The OpenStack region to use.
    :param config: Keystone session options.

    :return: An ``OpenStackAPI``.
    """
    session = get_keystone_session(**config)
    cinder = CinderClient(
        CINDER_API_VERSION, session=session, region_name=region)
    nova = NovaClient(NOVA_API_VERSION, session=session, region_name=region)
    return OpenStackAPI(
        cinder_volumes=_LoggingCinderVolumeManager(
            _cinder_volumes=cinder.volumes),
        nova_volumes=_LoggingNovaVolumeManager(_nova_volumes=nova.volumes),
        nova_servers=_LoggingNovaServerManager(_nova_servers=nova.servers),
    )


def _machine_id_from_file(machine_id_file):
    """
    :return: The content of ``machine_id_file`` as a hyphenated UUID, or
        ``None`` if it cannot be read or is not a UUID.
    """
    try:
        content = machine_id_file.getContent().decode("ascii").strip()
        return str(UUID(content))
    except (IOError, UnicodeDecodeError, ValueError):
        return None


def compute_instance_id(configured, nova_server_manager,
                        machine_id_file=MACHINE_ID_FILE,
                        hostname=socket.gethostname):
    """
    Work out the Nova ID of this compute instance.

    In order of preference: the configured ID; the systemd machine ID, which
    cloud images commonly set to the instance UUID; the one Nova server whose
    name is this machine's hostname.

    :param configured: The ``node.machine_id`` configuration, or ``None``.
    :param INovaServerManager nova_server_manager: Used to list servers.
    :param FilePath machine_id_file: The systemd machine ID file.
    :param hostname: A no-argument callable giving this machine's hostname.

    :raise UnknownInstanceID: If no unique server matches.
    :return: The instance ID.
    """
    if configured:
        Message.new(
            message_type="docker-cinder:openstack:compute_instance_id",
            source="configuration", instance_id=configured,
        ).write()
        return configured
    from_file = _machine_id_from_file(machine_id_file)
    if from_file is not None:
        Message.new(
            message_type="docker-cinder:openstack:compute_instance_id",
            source=machine_id_file.path, instance_id=from_file,
        ).write()
        return from_file
    name = hostname()
    matching = [
        server.id for server in nova_server_manager.list()
        if server.name == name
    ]
    if len(matching) != 1:
        COMPUTE_INSTANCE_ID_NOT_FOUND(
            hostname=name, matching_servers=matching).write()
        raise UnknownInstanceID(name, matching)
    Message.new(
        message_type="docker-cinder:openstack:compute_instance_id",
        source="hostname", instance_id=matching[0],
    ).write()
    return matching[0]


def parse_size(size):
    """
    :param size: A size in GiB, as an ``int`` or a string of digits.

    :raise InvalidSize: If ``size`` is not a positive whole number.
    :return: The size as an ``int``.
    """
    if isinstance(size, bool):
        raise InvalidSize(size)
    if isinstance(size, int):
        parsed = size
    else:
        text = str(size).strip()
        if not text.isdecimal():
            raise InvalidSize(size)
        parsed = int(text)
    if parsed <= 0:
        raise InvalidSize(size)
    return parsed


class AttachmentController(object):
    """
    Attach Cinder volumes to this compute instance and detach them again.

    :ivar ICinderVolumeManager _cinder_volumes: For volume status.
    :ivar INovaVolumeManager _nova_volumes: For attachments.
    :ivar IDeviceProbe _device_probe: Finds the device of an attached volume.
    :ivar MountConfiguration _configuration: Supplies the instance ID and the
        timeouts.
    :ivar FilePath _device_directory: Where attached volumes appear.
    :ivar _sleep: ``time.sleep`` or a replacement for testing.
    """
    def __init__(self, cinder_volumes, nova_volumes, device_probe,
                 configuration, device_directory=DEVICE_DIRECTORY,
                 sleep=time.sleep):
        self._cinder_volumes = cinder_volumes
        self._nova_volumes = nova_volumes
        self._device_probe = device_probe
        self._configuration = configuration
        self._device_directory = device_directory
        self._sleep = sleep

    def _get(self, volume_id):
        return volume_from_cinder(self._cinder_volumes.get(volume_id))

    def wait_for_status(self, volume, status):
        """
        Wait for ``volume`` to have ``status``.

        :param Volume volume: The volume, as last seen.
        :param str status: The status to wait for.

        :raise VolumeStateTimeout: If the status is not reached in time.
        :return: The ``Volume`` as last fetched.
        """
        if volume.status == status:
            return volume
        WAITING_FOR_VOLUME_STATUS(
            volume_id=volume.volume_id, status=volume.status,
            target_status=status).write()
        last_seen = [volume]

        def reached_status():
            current = self._get(volume.volume_id)
            last_seen[0] = current
            if current.status == status:
                return current
            return None

        try:
            return poll_until(
                reached_status,
                interval_steps(
                    self._configuration.volume_state_delay,
                    self._configuration.volume_state_timeout),
                self._sleep,
            )
        except LoopExceeded:
            raise VolumeStateTimeout(volume, status, last_seen[0].status)

    def attach(self, volume):
        """
        Attach ``volume`` to this compute instance, first detaching it from
        wherever else it is attached.

        The attachment is not undone if waiting for the device fails.

        :param Volume volume: The volume to attach.

        :raise VolumeStateTimeout: If the volume doesn't become available.
        :raise UnexpectedVolumeState: If it isn't available once settled.
        :raise DeviceTimeout: If no device appears.
        :return: The ``FilePath`` of the attached block device.
        """
        server_id = self._configuration.machine_id
        with ATTACH_VOLUME(
                volume_id=volume.volume_id, server_id=server_id) as action:
            if volume.status in SETTLING_STATES:
                self.wait_for_status(volume, AVAILABLE)
            volume = self._get(volume.volume_id)
            if volume.attachments:
                for attachment in volume.attachments:
                    FORCED_DETACH(
                        volume_id=volume.volume_id,
                        server_id=attachment.server_id).write()
                volume = self.detach(volume)
            if volume.status != AVAILABLE:
                raise UnexpectedVolumeState(volume, AVAILABLE, volume.status)

            self._nova_volumes.create_server_volume(
                server_id, volume.volume_id)
            device = self._device_probe.wait_for_device(
                self._device_directory,
                device_identifier(volume.volume_id),
                self._configuration.device_wait_timeout,
            )
            self._sleep(self._configuration.device_wait_delay)
            action.add_success_fields(device=device.path)
            return device

    def detach(self, volume):
        """
        Remove every attachment of ``volume`` and wait for it to become
        available.  The first failing detach is raised and the remaining
        attachments are left alone.

        :param Volume volume: The volume to detach.
        :return: The available ``Volume``.
        """
        with DETACH_VOLUME(volume_id=volume.volume_id):
            for attachment in volume.attachments:
                # Nova identifies a server's volume attachment by volume ID.
                self._nova_volumes.delete_server_volume(
                    attachment.server_id, volume.volume_id)
            return self.wait_for_status(volume, AVAILABLE)


class VolumeLifecycleManager(object):
    """
    Create, find and delete Cinder volumes.
    """
    def __init__(self, cinder_volumes, attachments, configuration):
        """
        :param ICinderVolumeManager cinder_volumes: The Cinder API.
        :param AttachmentController attachments: Used to detach volumes
            before deleting them.
        :param MountConfiguration configuration: Supplies defaults for new
            volumes.
        """
        self._cinder_volumes = cinder_volumes
        self._attachments = attachments
        self._configuration = configuration

    def create(self, name, size=None, volume_type=None):
        """
        Create a volume.

        :param str name: The volume name.
        :param size: The size in GiB; the configured default if ``None``.
        :param volume_type: The Cinder volume type; the configured default if
            ``None``.

        :raise InvalidSize: Before anything is created, if ``size`` is not a
            positive whole number.
        :return: The new ``Volume``.
        """
        if size is None:
            size = self._configuration.default_size
        size = parse_size(size)
        if volume_type is None:
            volume_type = self._configuration.default_type
        return volume_from_cinder(self._cinder_volumes.create(
            size=size, name=name, volume_type=volume_type or None))

    def find_by_name(self, name):
        """
        :raise UnknownVolume: If there is no volume called ``name``.
        :return: The first ``Volume`` called ``name``.
        """
        for cinder_volume in self._cinder_volumes.list(
                search_opts={"name": name}):
            if cinder_volume.name == name:
                return volume_from_cinder(cinder_volume)
        raise UnknownVolume(name)

    def get(self, volume_id):
        return volume_from_cinder(self._cinder_volumes.get(volume_id))

    def list(self):
        return [
            volume_from_cinder(cinder_volume)
            for cinder_volume in self._cinder_volumes.list()
        ]

    def remove(self, volume):
        """
        Delete ``volume``, detaching it first if it is attached anywhere.
        """
        if volume.attachments:
            volume = self._attachments.detach(volume)
        self._cinder_volumes.delete(volume.volume_id)
