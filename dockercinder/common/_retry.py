# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Helpers for retrying things.
"""

from itertools import count, islice, repeat
import time


class LoopExceeded(Exception):
    """
    Raised when ``poll_until`` looped too many times.
    """

    def __init__(self, predicate, last_result):
        super(LoopExceeded, self).__init__(
            '%r never True in poll_until, last result: %r'
            % (predicate, last_result))
        self.last_result = last_result


def poll_until(predicate, steps, sleep=None):
    """
    Perform steps until a non-false result is returned.

    Exceptions raised by ``predicate`` are not retried; they propagate to the
    caller immediately.

    :param predicate: a function to be called until it returns a
        non-false result.
    :param [float] steps: An iterable of delay intervals, measured in seconds.
    :param callable sleep: called with the interval to delay on.
        Defaults to `time.sleep`.
    :returns: the non-false result from the final call.
    :raise LoopExceeded: If given a finite sequence of steps, and we exhaust
        that sequence waiting for predicate to be truthy.
    """
    if sleep is None:
        sleep = time.sleep
    for step in steps:
        result = predicate()
        if result:
            return result
        sleep(step)
    result = predicate()
    if result:
        return result
    raise LoopExceeded(predicate, result)


def interval_steps(interval, timeout):
    """
    Generate a fixed ``interval`` as many times as fits in ``timeout``.

    Used with ``poll_until`` this checks once immediately and then once after
    every interval until ``timeout`` has elapsed.

    :param float interval: Seconds between checks.  Must be > 0.
    :param float timeout: Total number of seconds to keep checking for.

    :returns: An iterator of floats.
    """
    if interval <= 0:
        raise ValueError(
            "Invalid ``interval`` ({!r}). Must be > 0.".format(interval))
    return repeat(interval, max(int(timeout / interval), 0))


def exponential_steps(initial=1.0, factor=2, limit=None):
    """
    Generate exponentially increasing delays.

    :param float initial: The first delay.
    :param factor: The multiplier applied to each successive delay.
    :param int limit: The number of delays to generate, ``None`` for
        unlimited.

    :returns: An iterator of floats, e.g. ``1.0, 2.0, 4.0, ...``.
    """
    steps = (initial * (factor ** n) for n in count())
    if limit is not None:
        steps = islice(steps, limit)
    return steps
