# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
An HTTP API implementing the Docker Volumes Plugin API.

See https://docs.docker.com/engine/extend/plugins_volume/ for details.
"""

from functools import wraps

import yaml

from eliot import writeFailure

from pyrsistent import PClass, field

from twisted.python.filepath import FilePath
from twisted.internet.defer import maybeDeferred
from twisted.web.http import OK

from klein import Klein

from ..restapi import structured, EndpointResponse, BadRequest
from ..common import auto_threaded
from ..volume.orchestrator import IVolumeOrchestrator


SCHEMA_BASE = FilePath(__file__).sibling('schema')
SCHEMAS = {
    '/endpoints.json': yaml.safe_load(
        SCHEMA_BASE.child('endpoints.yml').getContent()),
    }


def _endpoint(name, ignore_body=False):
    """
    Decorator factory for API endpoints, adding appropriate JSON in/out
    encoding.

    This also converts errors and ``BadRequest`` exceptions to JSON that
    can be read by Docker and therefore shown to the user.

    :param str name: The name of the endpoint in the schema.
    :param ignore_body: If true, ignore the contents of the body for all
        HTTP methods, including ``POST``. By default the body is only
        ignored for ``GET`` and ``HEAD``.

    :return: Decorator for a method.
    """
    def decorator(f):
        @wraps(f)
        @structured(
            inputSchema={},
            outputSchema={"$ref": "/endpoints.json#/definitions/" + name},
            schema_store=SCHEMAS,
            ignore_body=ignore_body)
        def wrapped(*args, **kwargs):
            d = maybeDeferred(f, *args, **kwargs)

            def handle_error(failure):
                if failure.check(BadRequest):
                    code = failure.value.code
                    body = failure.value.result
                else:
                    writeFailure(failure)
                    # Docker only shows the error to the user when the code
                    # is OK:
                    code = OK
                    body = {"Err": "{}: {}".format(failure.type.__name__,
                                                   failure.value)}
                return EndpointResponse(code, body)
            d.addErrback(handle_error)
            return d
        return wrapped
    return decorator


@auto_threaded(IVolumeOrchestrator, "reactor", "orchestrator", "threadpool")
class _ThreadedOrchestrator(PClass):
    """
    An ``IVolumeOrchestrator`` whose blocking methods run in a thread pool
    and return ``Deferred`` results.
    """
    reactor = field(mandatory=True)
    orchestrator = field(mandatory=True)
    threadpool = field(mandatory=True)


def _volume_result(volume):
    """
    :param VolumeInfo volume: A volume.
    :return: The JSON description of ``volume``.
    """
    return {
        "Name": volume.name,
        "Mountpoint": volume.mountpoint.path,
        "CreatedAt": volume.created_at,
    }


class VolumePlugin(object):
    """
    An implementation of the Docker Volumes Plugin API.

    We don't validate inputs with a schema since Docker doesn't publish one
    and we can't be sure they won't change things in minor ways. We do
    validate outputs to ensure we output the documented requirements.
    """
    app = Klein()

    def __init__(self, reactor, threadpool, orchestrator):
        """
        :param reactor: The reactor the results are delivered in.
        :param threadpool: The ``ThreadPool`` the blocking volume operations
            run in.
        :param IVolumeOrchestrator orchestrator: The volume operations.
        """
        self._orchestrator = _ThreadedOrchestrator(
            reactor=reactor, orchestrator=orchestrator, threadpool=threadpool)

    @app.route("/Plugin.Activate", methods=["POST"])
    @_endpoint("PluginActivate", ignore_body=True)
    def plugin_activate(self):
        """
        Return which Docker plugin APIs this object supports.
        """
        return {"Implements": ["VolumeDriver"]}

    @app.route("/VolumeDriver.Capabilities", methods=["POST"])
    @_endpoint("Capabilities", ignore_body=True)
    def volumedriver_capabilities(self):
        """
        Cinder volumes can be attached from any compute instance, so they
        are global.
        """
        return {"Capabilities": {"Scope": "global"}}

    @app.route("/VolumeDriver.Create", methods=["POST"])
    @_endpoint("Create")
    def volumedriver_create(self, Name, Opts=None):
        """
        Create a volume with the given name.

        :param str Name: The name of the volume.

        :param dict Opts: Options passed from Docker for the volume
            at creation: ``size``, ``type`` and ``encryption``.  ``None`` if
            not supplied in the request body.

        :return: Result indicating success.
        """
        d = self._orchestrator.create(Name, Opts or {})
        d.addCallback(lambda _: {"Err": ""})
        return d

    @app.route("/VolumeDriver.Remove", methods=["POST"])
    @_endpoint("Remove")
    def volumedriver_remove(self, Name):
        """
        Delete a volume, detaching it first if necessary.

        :param str Name: The name of the volume.

        :return: Result indicating success.
        """
        d = self._orchestrator.remove(Name)
        d.addCallback(lambda _: {"Err": ""})
        return d

    @app.route("/VolumeDriver.Mount", methods=["POST"])
    @_endpoint("Mount")
    def volumedriver_mount(self, Name, ID=None):
        """
        Attach the volume to this compute instance and mount it.

        :param str Name: The name of the volume.
        :param str ID: The identifier of the mount request, unused.

        :return: Result that includes the mountpoint.
        """
        d = self._orchestrator.mount(Name)
        d.addCallback(
            lambda mountpoint: {"Err": "", "Mountpoint": mountpoint.path})
        return d

    @app.route("/VolumeDriver.Unmount", methods=["POST"])
    @_endpoint("Unmount")
    def volumedriver_unmount(self, Name, ID=None):
        """
        The Docker container is no longer using the given volume.

        :param str Name: The name of the volume.
        :param str ID: The identifier of the mount request, unused.

        :return: Result indicating success.
        """
        d = self._orchestrator.unmount(Name)
        d.addCallback(lambda _: {"Err": ""})
        return d

    @app.route("/VolumeDriver.Path", methods=["POST"])
    @_endpoint("Path")
    def volumedriver_path(self, Name):
        """
        Return the path of a volume, whether or not it is mounted.

        :param str Name: The name of the volume.

        :return: Result that includes the mountpoint.
        """
        d = self._orchestrator.path(Name)
        d.addCallback(
            lambda mountpoint: {"Err": "", "Mountpoint": mountpoint.path})
        return d

    @app.route("/VolumeDriver.Get", methods=["POST"])
    @_endpoint("Get")
    def volumedriver_get(self, Name):
        """
        Return information about the current state of a particular volume.

        :param str Name: The name of the volume.

        :return: Result describing the volume.
        """
        d = self._orchestrator.get(Name)
        d.addCallback(
            lambda volume: {"Err": "", "Volume": _volume_result(volume)})
        return d

    @app.route("/VolumeDriver.List", methods=["POST"])
    @_endpoint("List", ignore_body=True)
    def volumedriver_list(self):
        """
        Return information about all volumes.

        :return: Result listing the volumes, sorted by name.
        """
        d = self._orchestrator.list()
        d.addCallback(lambda volumes: {
            "Err": "",
            "Volumes": sorted(
                (_volume_result(volume) for volume in volumes),
                key=lambda result: result["Name"]),
        })
        return d
