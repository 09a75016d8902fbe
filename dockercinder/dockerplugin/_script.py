# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Command to start up the Docker plugin.
"""
import os
from os import umask
from stat import S_IRUSR, S_IWUSR, S_IXUSR
import sys

from twisted.python.usage import Options, UsageError
from twisted.internet.endpoints import serverFromString
from twisted.application.internet import StreamServerEndpointService
from twisted.web.server import Site
from twisted.python.filepath import FilePath

from ..common.configuration import ConfigurationError
from ..common.script import standard_options, ScriptRunner, main_for_service
from ..volume.cinder import (
    MACHINE_ID_FILE, AttachmentController, VolumeLifecycleManager,
    UnknownInstanceID, compute_instance_id, openstack_from_configuration,
)
from ..volume.configuration import (
    DEFAULT_CONFIGURATION_PATH, load_configuration,
)
from ..volume.device import DeviceProbe
from ..volume.luks import LuksEncryption
from ..volume.orchestrator import MountOrchestrator
from ._api import VolumePlugin

PLUGIN_PATH = FilePath("/run/docker/plugins/cinder.sock")

# Command line options which replace values of the configuration file's
# ``mount`` section.
_OVERRIDES = {
    "mount-dir": "mount_dir",
    "filesystem": "filesystem",
    "default-size": "default_size",
    "default-type": "default_type",
}


@standard_options
class DockerPluginOptions(Options):
    """
    Command-line options for the Docker plugin.
    """
    synopsis = "Usage: docker-cinder-plugin [options]"

    optParameters = [
        ["config", "c", DEFAULT_CONFIGURATION_PATH.path,
         "The configuration file."],
        ["socket", "s", PLUGIN_PATH.path,
         "The Unix socket to listen on, unless started by systemd socket "
         "activation."],
        ["mount-dir", None, None,
         "The directory volumes are mounted under."],
        ["filesystem", None, None,
         "The filesystem new volumes are formatted with."],
        ["default-size", None, None,
         "The size in GiB of volumes created without a size option."],
        ["default-type", None, None,
         "The Cinder volume type of volumes created without a type option."],
    ]

    def postOptions(self):
        self["config"] = FilePath(self["config"])
        self["socket"] = FilePath(self["socket"])
        if self["default-size"] is not None:
            try:
                self["default-size"] = int(self["default-size"])
            except ValueError:
                raise UsageError(
                    "--default-size must be a whole number of GiB")

    def overrides(self):
        """
        :return: A ``dict`` of the ``mount`` configuration values given on
            the command line, ``None`` for those that were not.
        """
        return {
            key: self[option] for (option, key) in _OVERRIDES.items()
        }


def build_orchestrator(openstack, configuration):
    """
    Wire the volume operations together.

    :param OpenStackAPI openstack: The Cinder and Nova managers.
    :param MountConfiguration configuration: The mount configuration, with
        the ID of this compute instance.

    :return: A ``MountOrchestrator``.
    """
    device_probe = DeviceProbe()
    attachments = AttachmentController(
        openstack.cinder_volumes, openstack.nova_volumes, device_probe,
        configuration)
    volumes = VolumeLifecycleManager(
        openstack.cinder_volumes, attachments, configuration)
    return MountOrchestrator(
        volumes, attachments, LuksEncryption(), device_probe, configuration)


class DockerPluginScript(object):
    """
    Start the Docker plugin.
    """
    def __init__(self, environ=os.environ,
                 openstack_factory=openstack_from_configuration,
                 sys_module=sys, threadpool=None,
                 machine_id_file=MACHINE_ID_FILE):
        """
        :param environ: The process environment, consulted for systemd
            socket activation.
        :param openstack_factory: Called with the ``openstack`` section of
            the configuration to get an ``OpenStackAPI``.
        :param sys_module: A ``sys`` like module, for its ``stderr``.
        :param threadpool: The thread pool for blocking volume operations,
            by default the reactor's.
        :param FilePath machine_id_file: The systemd machine ID file.
        """
        self._environ = environ
        self._openstack_factory = openstack_factory
        self._sys_module = sys_module
        self._threadpool = threadpool
        self._machine_id_file = machine_id_file

    def _create_listening_directory(self, directory_path):
        """
        Create the parent directory for the Unix socket if it doesn't exist.

        :param FilePath directory_path: The directory to create.
        """
        original_umask = umask(0)
        try:
            if not directory_path.exists():
                directory_path.makedirs()
            directory_path.chmod(S_IRUSR | S_IWUSR | S_IXUSR)
        finally:
            umask(original_umask)

    def _socket_activated(self):
        return "LISTEN_FDS" in self._environ

    def _endpoint_description(self, socket_path):
        """
        :param FilePath socket_path: The socket to create when not socket
            activated.
        :return: The server endpoint description string.
        """
        if self._socket_activated():
            return "systemd:domain=UNIX:index=0"
        return "unix:{}:mode=600".format(socket_path.path)

    def _fail(self, error):
        self._sys_module.stderr.write("ERROR: {}\n".format(error))
        raise SystemExit(1)

    def main(self, reactor, options):
        try:
            configuration = load_configuration(
                options["config"], options.overrides())
        except ConfigurationError as e:
            self._fail(e)

        openstack = self._openstack_factory(**configuration.openstack)
        try:
            machine_id = compute_instance_id(
                configuration.mount.machine_id, openstack.nova_servers,
                self._machine_id_file)
        except UnknownInstanceID as e:
            self._fail(e)
        orchestrator = build_orchestrator(
            openstack, configuration.mount.set(machine_id=machine_id))

        threadpool = self._threadpool
        if threadpool is None:
            threadpool = reactor.getThreadPool()
        plugin = VolumePlugin(reactor, threadpool, orchestrator)

        if not self._socket_activated():
            self._create_listening_directory(options["socket"].parent())

        # This is how to run an HTTP API on a Unix socket.
        endpoint = serverFromString(
            reactor, self._endpoint_description(options["socket"]))
        service = StreamServerEndpointService(
            endpoint, Site(plugin.app.resource()))
        return main_for_service(reactor, service)


def docker_cinder_plugin_main():
    """
    Script entry point that runs the Docker plugin.
    """
    return ScriptRunner(script=DockerPluginScript(),
                        options=DockerPluginOptions()).main()
