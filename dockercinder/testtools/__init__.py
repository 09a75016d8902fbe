# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Various utilities to help with unit testing.
"""

from io import StringIO
from random import randrange

from twisted.internet.base import _ThreePhaseEvent
from twisted.internet.task import Clock
from twisted.internet.testing import MemoryReactor
from twisted.python.failure import Failure

from ._base import TestCase

__all__ = [
    'TestCase', 'random_name', 'CustomException',
    'NonThreadPool', 'NonReactor', 'FakeSysModule', 'MemoryCoreReactor',
]


def random_name(case):
    """
    Return a short, random name.

    :param TestCase case: The test case being run.  The test method that is
        running will be mixed into the name.

    :return name: A random ``str`` name.
    """
    return "{}-{}".format(case.id().rsplit(".", 1)[-1], randrange(10 ** 6))


class CustomException(Exception):
    """
    An exception that will never be raised by real code, useful for
    testing.
    """


class NonThreadPool(object):
    """
    A stand-in for ``twisted.python.threadpool.ThreadPool`` which runs the
    function synchronously in the calling thread.

    :ivar int calls: The number of calls which have been dispatched to this
        object.
    """
    calls = 0

    def callInThreadWithCallback(self, onResult, func, *args, **kw):
        self.calls += 1
        try:
            result = func(*args, **kw)
        except Exception:
            onResult(False, Failure())
        else:
            onResult(True, result)


class NonReactor(object):
    """
    A stand-in for ``twisted.internet.reactor`` which fits into the execution
    model defined by ``NonThreadPool``.
    """
    def callFromThread(self, f, *args, **kwargs):
        f(*args, **kwargs)


class FakeSysModule(object):
    """
    A ``sys`` like substitute for testing the handling of ``argv``,
    ``stdout`` and ``stderr`` by command line scripts.

    :ivar list argv: See ``__init__``.
    :ivar io.StringIO stdout: Standard output.
    :ivar io.StringIO stderr: Standard error.
    """
    def __init__(self, argv=None):
        """
        :param list argv: The arguments list which should be exposed as
            ``sys.argv``.
        """
        if argv is None:
            argv = []
        self.argv = argv
        self.stdout = StringIO()
        self.stderr = StringIO()


class MemoryCoreReactor(MemoryReactor, Clock):
    """
    Fake reactor with ``listenUNIX``, ``IReactorTime`` and just enough of an
    implementation of ``IReactorCore``.
    """
    def __init__(self):
        MemoryReactor.__init__(self)
        Clock.__init__(self)
        self._triggers = {}

    def addSystemEventTrigger(self, phase, eventType, callable, *args, **kw):
        event = self._triggers.setdefault(eventType, _ThreePhaseEvent())
        return eventType, event.addTrigger(phase, callable, *args, **kw)

    def removeSystemEventTrigger(self, triggerID):
        eventType, handle = triggerID
        event = self._triggers.setdefault(eventType, _ThreePhaseEvent())
        event.removeTrigger(handle)

    def fireSystemEvent(self, eventType):
        event = self._triggers.get(eventType)
        if event is not None:
            event.fireEvent()
