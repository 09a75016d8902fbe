# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Locks keyed by name.
"""

from contextlib import contextmanager
from threading import Lock


class KeyedLock(object):
    """
    A collection of mutexes, one per key.

    The mutex for a key is created the first time somebody asks for it and
    discarded again as soon as nobody holds or waits on it, so the number of
    live mutexes is bounded by the number of keys in use.
    """
    def __init__(self):
        self._guard = Lock()
        # key -> [Lock, number of threads holding or waiting on it]
        self._locks = {}

    def _acquire_entry(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [Lock(), 0]
            entry[1] += 1
            return entry[0]

    def _release_entry(self, key):
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def lock(self, key):
        """
        Hold the mutex for ``key`` for the duration of the ``with`` block.
        """
        mutex = self._acquire_entry(key)
        try:
            with mutex:
                yield
        finally:
            self._release_entry(key)

    def keys(self):
        """
        :return: The keys which currently have a live mutex.
        """
        with self._guard:
            return set(self._locks)
