# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Base classes for unit tests.
"""

from unittest import SkipTest

from fixtures import TempDir
import testtools

from twisted.python.filepath import FilePath
from twisted.trial import unittest


class _MktempMixin(object):
    """
    ``mktemp`` support for testtools TestCases.
    """

    def mktemp(self):
        """
        Create a temporary path for use in tests.

        Provided for compatibility with Twisted's ``TestCase``.

        :return: Path to non-existent file or directory.
        """
        return self.make_temporary_path().path

    def make_temporary_path(self):
        """
        :return: A ``FilePath`` to a non-existent file or directory which is
            removed again when the test finishes.
        """
        return self.make_temporary_directory().child('temp')

    def make_temporary_directory(self):
        """
        :return: A ``FilePath`` to a new, empty directory which is removed
            again when the test finishes.
        """
        return FilePath(self.useFixture(TempDir()).path)

    def make_temporary_file(self, content=b'', permissions=None):
        """
        Create a temporary file for use in tests.

        :param bytes content: Content to write to the file.
        :param int permissions: The permissions for the file.
        :return: Path to file.
        :rtype: FilePath
        """
        path = self.make_temporary_path()
        path.setContent(content)
        if permissions is not None:
            path.chmod(permissions)
        return path


class _DeferredAssertionMixin(object):
    """
    Synchronous Deferred-related assertions support for testtools TestCase.

    Provided for compatibility with Twisted's TestCase.  New code should use
    matchers instead.
    """
    successResultOf = unittest.SynchronousTestCase.successResultOf
    failureResultOf = unittest.SynchronousTestCase.failureResultOf
    assertNoResult = unittest.SynchronousTestCase.assertNoResult

    # Not related to Deferreds but required by the implementation of the above.
    assertIdentical = unittest.SynchronousTestCase.assertIdentical


class TestCase(testtools.TestCase, _MktempMixin, _DeferredAssertionMixin):
    """
    Base class for synchronous test cases.
    """
    # Eliot's validateLogging checks for SkipTest when deciding whether to
    # validate logging; make testtools use the same exception for skips.
    skipException = SkipTest
