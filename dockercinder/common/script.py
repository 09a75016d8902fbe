# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Helpers for docker-cinder shell commands.
"""

import sys

from bitmath import MiB

from eliot import MessageType, fields, Logger, FileDestination
from eliot.logwriter import ThreadedWriter

from twisted.application.service import MultiService, Service
from twisted.internet import task, reactor as global_reactor
from twisted.internet.defer import Deferred, maybeDeferred
from twisted.python import usage
from twisted.python.log import textFromEventDict, startLoggingWithObserver, err
from twisted.python import log as twisted_log
from twisted.python.logfile import LogFile
from twisted.python.filepath import FilePath

from zope.interface import Interface

from .. import __version__


__all__ = [
    'standard_options',
    'ICommandLineScript',
    'ScriptRunner',
    'main_for_service',
]


LOGFILE_LENGTH = int(MiB(100).to_Byte().value)
LOGFILE_COUNT = 5


def standard_options(cls):
    """
    Add ``--version``, ``--verbose`` and ``--logfile`` to a ``usage.Options``
    subclass.

    :param type cls: The class to decorate.
    :return: The decorated class.
    """
    original_init = cls.__init__

    def __init__(self, *args, **kwargs):
        """
        :param sys_module: An optional ``sys`` like module for use in
            testing.  Defaults to ``sys``.
        """
        self._sys_module = kwargs.pop('sys_module', sys)
        self['verbosity'] = 0
        self['logfile'] = self._sys_module.stdout
        original_init(self, *args, **kwargs)
    cls.__init__ = __init__

    def opt_version(self):
        """Print the program's version and exit."""
        self._sys_module.stdout.write(__version__ + '\n')
        raise SystemExit(0)
    cls.opt_version = opt_version

    def opt_verbose(self):
        """Turn on verbose logging."""
        self['verbosity'] += 1
    cls.opt_verbose = opt_verbose
    cls.opt_v = opt_verbose

    def opt_logfile(self, logfile_path):
        """
        Log to a file instead of ``stdout``.  The file is rotated every
        100 MiB, keeping five old files.  Its directory is created if it does
        not already exist.
        """
        logfile = FilePath(logfile_path)
        logfile_directory = logfile.parent()
        if not logfile_directory.exists():
            logfile_directory.makedirs()
        self['logfile'] = LogFile.fromFullPath(
            logfile.path,
            rotateLength=LOGFILE_LENGTH,
            maxRotatedFiles=LOGFILE_COUNT,
        )
    cls.opt_logfile = opt_logfile

    return cls


class ICommandLineScript(Interface):
    """A script which can be run by ``ScriptRunner``."""
    def main(reactor, options):
        """
        :param reactor: A Twisted reactor.
        :param dict options: A dictionary of configuration options.
        :return: A ``Deferred`` which fires when the script has completed.
        """


def eliot_logging_service(log_file, reactor, capture_stdout):
    """
    :return: A service which, while running, writes eliot messages to
        ``log_file`` from a thread and forwards Twisted's log to eliot.
    """
    service = MultiService()
    ThreadedWriter(FileDestination(file=log_file), reactor).setServiceParent(
        service)
    EliotObserver(capture_stdout=capture_stdout).setServiceParent(service)
    return service


TWISTED_LOG_MESSAGE = MessageType("twisted:log",
                                  fields(error=bool, message=str),
                                  "A log message from Twisted.")


class EliotObserver(Service):
    """
    A Twisted log observer that logs to Eliot.
    """
    def __init__(self, publisher=twisted_log, capture_stdout=True):
        """
        :param publisher: A ``LogPublisher`` to capture logs from, or if no
            argument is given the default Twisted log system.
        :param bool capture_stdout: Whether to capture standard output and
            standard error to eliot.
        """
        self.logger = Logger()
        self.publisher = publisher
        self.capture_stdout = capture_stdout

    def __call__(self, msg):
        error = bool(msg.get("isError"))
        message = textFromEventDict(msg)
        if message is None:
            return
        TWISTED_LOG_MESSAGE(error=error, message=message).write(self.logger)

    def startService(self):
        """
        Start capturing Twisted logs.
        """
        startLoggingWithObserver(self, setStdout=self.capture_stdout)


class ScriptRunner(object):
    """
    Parse the command line, start logging and run an ``ICommandLineScript``
    under ``task.react``.

    :ivar ICommandLineScript script: See ``script`` of ``__init__``.
    :ivar _react: A reference to ``task.react`` which can be overridden for
        testing purposes.
    """
    _react = staticmethod(task.react)

    def __init__(self, script, options, logging=True,
                 reactor=None, sys_module=None):
        """
        :param ICommandLineScript script: The script object to be run.
        :param usage.Options options: An option parser object.
        :param logging: If ``True``, log to the configured log file;
            otherwise don't log.
        :param reactor: Optional reactor to override default one.
        :param sys_module: An optional ``sys`` like module for use in
            testing. Defaults to ``sys``.
        """
        self.script = script
        self.options = options
        self.logging = logging
        if reactor is None:
            reactor = global_reactor
        self._reactor = reactor

        if sys_module is None:
            sys_module = sys
        self.sys_module = sys_module

    def _parse_options(self, arguments):
        """
        Parse ``arguments`` with the script's options.  A ``UsageError`` is
        written to ``stderr`` along with the usage text and the process exits
        with status 1.

        :param list arguments: The command line arguments to be parsed.
        :return: The populated options.
        """
        try:
            self.options.parseOptions(arguments)
        except usage.UsageError as e:
            self.sys_module.stderr.write(str(self.options))
            self.sys_module.stderr.write('ERROR: {}\n'.format(e))
            raise SystemExit(1)
        return self.options

    def main(self):
        """Parse arguments and run the script's main function via ``react``."""
        # --version raises SystemExit, so this comes before any side effects.
        options = self._parse_options(self.sys_module.argv[1:])

        if self.logging:
            log_writer = eliot_logging_service(
                options['logfile'], self._reactor, True)
        else:
            log_writer = Service()
        log_writer.startService()

        def run_and_log(reactor):
            d = maybeDeferred(self.script.main, reactor, options)

            def got_error(failure):
                if not failure.check(SystemExit):
                    err(failure)
                return failure
            d.addErrback(got_error)
            return d
        try:
            self._react(run_and_log, [], _reactor=self._reactor)
        finally:
            log_writer.stopService()


def _chain_stop_result(service, stop):
    """
    Stop ``service`` and fire ``stop`` with the result.
    """
    maybeDeferred(service.stopService).chainDeferred(stop)


def main_for_service(reactor, service):
    """
    Start ``service`` and stop it again when ``reactor`` shuts down.

    Intended to be driven by ``twisted.internet.task.react``::

        react(main_for_service, [VolumePluginService()])

    :param IReactorCore reactor: The reactor whose lifetime the service is
        tied to.
    :param IService service: The service to run.

    :return: A ``Deferred`` which fires after the service has finished
        stopping.
    """
    service.startService()
    stop = Deferred()
    reactor.addSystemEventTrigger(
        "before", "shutdown", _chain_stop_result, service, stop)
    return stop
