# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Shared docker-cinder components.
"""

__all__ = [
    'interface_decorator', 'auto_threaded',
    'poll_until', 'interval_steps', 'exponential_steps', 'LoopExceeded',
    'KeyedLock',
]

from ._interface import interface_decorator
from ._thread import auto_threaded
from ._retry import (
    poll_until, interval_steps, exponential_steps, LoopExceeded,
)
from ._lock import KeyedLock
