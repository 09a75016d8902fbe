# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Eliot message and action types for the volume subsystem.
"""

from eliot import Field, ActionType, MessageType

# An OPERATION is a list of:
# method name, positional arguments, keyword arguments.
OPERATION = Field.for_types(
    "operation", [list],
    "The OpenStack client operation being executed, "
    "along with positional and keyword arguments.")

OPENSTACK_ACTION = ActionType(
    "docker-cinder:openstack",
    [OPERATION],
    [],
    "An operation is executing using an OpenStack client.")

CODE = Field.for_types("code", [int, None], "The HTTP response code.")
MESSAGE = Field.for_types(
    "message", [str, None],
    "A human-readable error message given by the response.",
)
DETAILS = Field.for_types(
    "details", [dict, str, None], "Extra details about the error.")
REQUEST_ID = Field.for_types(
    "request_id", [str, None],
    "The unique identifier assigned by the server for this request.",
)
URL = Field.for_types("url", [str, None], "The request URL.")
METHOD = Field.for_types("method", [str, None], "The request method.")

NOVA_CLIENT_EXCEPTION = MessageType(
    "docker-cinder:openstack:nova_client_exception",
    [CODE, MESSAGE, DETAILS, REQUEST_ID, URL, METHOD],
)

CINDER_CLIENT_EXCEPTION = MessageType(
    "docker-cinder:openstack:cinder_client_exception",
    [CODE, MESSAGE, DETAILS, REQUEST_ID, URL, METHOD],
)

RESPONSE = Field.for_types("response", [str, None], "The response body.")

KEYSTONE_HTTP_ERROR = MessageType(
    "docker-cinder:openstack:keystone_http_error",
    [CODE, RESPONSE, MESSAGE, DETAILS, REQUEST_ID, URL, METHOD],
)

VOLUME_NAME = Field.for_types(
    "volume_name", [str], "The name of the Docker volume.")
VOLUME_ID = Field.for_types(
    "volume_id", [str], "The Cinder identifier of the volume.")
STATUS = Field.for_types(
    "status", [str], "The Cinder status of the volume.")
TARGET_STATUS = Field.for_types(
    "target_status", [str], "The status being waited for.")
DEVICE = Field.for_types(
    "device", [str], "The path of a local block device.")
MOUNTPOINT = Field.for_types(
    "mountpoint", [str], "The path where a volume is mounted.")
SERVER_ID = Field.for_types(
    "server_id", [str], "The Nova identifier of a compute instance.")
ERROR = Field.for_types(
    "error", [str], "A description of what went wrong.")

CREATE_VOLUME = ActionType(
    "docker-cinder:volume:create",
    [VOLUME_NAME],
    [],
    "A Docker volume is being created.")

MOUNT_VOLUME = ActionType(
    "docker-cinder:volume:mount",
    [VOLUME_NAME],
    [MOUNTPOINT],
    "A Docker volume is being attached and mounted.")

UNMOUNT_VOLUME = ActionType(
    "docker-cinder:volume:unmount",
    [VOLUME_NAME],
    [],
    "A Docker volume is being unmounted and detached.")

REMOVE_VOLUME = ActionType(
    "docker-cinder:volume:remove",
    [VOLUME_NAME],
    [],
    "A Docker volume is being deleted.")

ATTACH_VOLUME = ActionType(
    "docker-cinder:volume:attach",
    [VOLUME_ID, SERVER_ID],
    [DEVICE],
    "A Cinder volume is being attached to this compute instance.")

DETACH_VOLUME = ActionType(
    "docker-cinder:volume:detach",
    [VOLUME_ID],
    [],
    "All attachments of a Cinder volume are being removed.")

WAITING_FOR_VOLUME_STATUS = MessageType(
    "docker-cinder:volume:status_wait",
    [VOLUME_ID, STATUS, TARGET_STATUS],
    "Waiting for a volume to reach a target status.")

FORCED_DETACH = MessageType(
    "docker-cinder:volume:forced_detach",
    [VOLUME_ID, SERVER_ID],
    "A volume attached elsewhere is being detached before attaching it here.")

ENCRYPTION_UNAVAILABLE = MessageType(
    "docker-cinder:volume:encryption_unavailable",
    [VOLUME_NAME],
    "Encryption was requested but no key file is configured, so the volume "
    "is created unencrypted.")

FORMATTING = MessageType(
    "docker-cinder:volume:formatting",
    [VOLUME_NAME, DEVICE],
    "No filesystem was found on the device, so a new one is being made.")

MOUNT_DIRECTORY_RETRY = MessageType(
    "docker-cinder:volume:mount_directory_retry",
    [MOUNTPOINT, ERROR],
    "The mount directory could not be created.  Unless attempts are "
    "exhausted it is unmounted and creation is retried.")

UNMOUNT_FAILED = MessageType(
    "docker-cinder:volume:unmount_failed",
    [VOLUME_NAME, MOUNTPOINT, ERROR],
    "The mount point of a volume could not be unmounted.")

MOUNTPOINT_STAT_FAILED = MessageType(
    "docker-cinder:volume:mountpoint_stat_failed",
    [VOLUME_NAME, MOUNTPOINT, ERROR],
    "The mount point of a volume could not be examined, which usually means "
    "a broken mount, so it is unmounted anyway.")

LUKS_CLOSE_FAILED = MessageType(
    "docker-cinder:volume:luks_close_failed",
    [VOLUME_NAME, ERROR],
    "The encryption mapping of a volume could not be closed.")

ENCRYPTION_RECOVERY_FAILED = MessageType(
    "docker-cinder:volume:encryption_recovery_failed",
    [VOLUME_NAME, MOUNTPOINT, ERROR],
    "The encryption state of a mount point could not be determined.")

VOLUME_LOOKUP_FAILED = MessageType(
    "docker-cinder:volume:lookup_failed",
    [VOLUME_NAME, ERROR],
    "The Cinder volume for a Docker volume could not be found.")

DETACH_FAILED = MessageType(
    "docker-cinder:volume:detach_failed",
    [VOLUME_NAME, ERROR],
    "A volume could not be detached from this compute instance.")

LOCAL_HOSTNAME = Field.for_types(
    "hostname", [str], "The hostname of this machine.")
MATCHING_SERVERS = Field.for_types(
    "matching_servers", [list],
    "The identifiers of the Nova servers with a matching name.")

COMPUTE_INSTANCE_ID_NOT_FOUND = MessageType(
    "docker-cinder:openstack:compute_instance_id:not_found",
    [LOCAL_HOSTNAME, MATCHING_SERVERS],
    "Unable to determine the instance ID of this node.",
)
