import atexit
import datetime
import logging
import os.path

import psutil
from humanize import naturalsize

try:
    from fabric import Config, Connection
    from fabric.main import Fab, Executor
except ImportError:
    import sys
    sys.stderr.write('cannot find fabric, install with `apt install python3-fabric`')  # noqa: E501
    raise

from paramiko.client import RejectPolicy
from invoke import Argument


__version__ = '0.3.0'

LOG_FILE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'


class VerboseProgram(Fab):
    """Fabric program with --verbose/-v and --log-file flags.

    This overrides the builtin fabric.Fab class to add a --verbose
    commandline argument to the parser, and a --log-file argument to
    keep a timestamped trace of what was done to the server, which is
    useful when a provisioning run goes sideways and the console
    scrollback is gone.

    This is called a Program because that is how invoke calls that
    class.
    """
    def __init__(self, *args,
                 executor_class=Executor,
                 config_class=Config,
                 **kwargs):
        """Add proper defaults to `__init__`

        The two overriden parameters here are only set in fabric.main,
        not in the fabric.Fab constructor. So override parameters here
        do not properly get set otherwise."""
        super().__init__(*args,
                         executor_class=executor_class,
                         config_class=config_class,
                         **kwargs)

    def core_args(self):
        """Add the extra Arguments to the commandline parser"""
        core_args = super().core_args()
        extra_args = [
            Argument(
                names=('verbose', 'v'),
                kind=bool,
                default=False,
                help="be more verbose"
            ),
            Argument(
                names=('log-file',),
                help="also append log messages to this file"
            ),
        ]
        return core_args + extra_args

    def parse_core(self, argv):
        """setup logging and a timer

        This reacts to the '--debug' and '--verbose' flags to setup
        proper levels in the `logging` module. It also sets up a
        Timer() to report on how long jobs take in general.
        """

        # override basic format
        logging.basicConfig(format='%(message)s')
        super().parse_core(argv)
        if self.args.debug.value:
            logging.getLogger('').setLevel(logging.DEBUG)
        elif self.args.verbose.value:
            logging.getLogger('').setLevel(logging.INFO)

        log_file = self.args['log-file'].value
        if log_file:
            setup_log_file(log_file)

        # override default logging policies in submodules
        #
        # without this, we get debugging info from paramiko with --verbose
        for mod in 'fabric', 'paramiko', 'invoke':
            logging.getLogger(mod).setLevel('WARNING')

        # set a timer
        self._pve_timer = Timer()
        logging.info('starting tasks at %s', self._pve_timer.stamp)
        atexit.register(self._pve_log_completion)

    def _pve_log_completion(self):
        """atexit handler that runs at the end of the program"""
        logging.info('completed tasks, %s', self._pve_timer)


def setup_log_file(path, level=logging.INFO):
    """attach a file handler to the root logger

    The console keeps its terse format and verbosity, the file gets
    timestamps and levels. Returns the handler so callers can detach
    it."""
    root = logging.getLogger('')
    # pin existing handlers to the current verbosity before lowering
    # the root logger for the file
    for other in root.handlers:
        if other.level == logging.NOTSET:
            other.setLevel(root.getEffectiveLevel())
    handler = logging.FileHandler(os.path.expanduser(path))
    handler.setFormatter(logging.Formatter(LOG_FILE_FORMAT))
    handler.setLevel(level)
    root.addHandler(handler)
    if root.getEffectiveLevel() > level:
        root.setLevel(level)
    return handler


Connection.default_host_key_policy = RejectPolicy


# hack to fix Fabric key policy:
# https://github.com/fabric/fabric/issues/2071
def safe_open(self):
    SaferConnection.setup_ssh_client(self)
    Connection.open_orig(self)


class SaferConnection(Connection):
    # a freshly reinstalled Hetzner box has a new host key, which must
    # be added to known_hosts by hand instead of being trusted blindly
    def setup_ssh_client(self):
        if self.default_host_key_policy is not None:
            logging.debug('host key policy: %s', self.default_host_key_policy)
            self.client.set_missing_host_key_policy(self.default_host_key_policy())
        known_hosts = self.ssh_config.get('UserKnownHostsFile'.lower(),
                                          '~/.ssh/known_hosts  ~/.ssh/known_hosts2')
        logging.debug('loading host keys from %s', known_hosts)
        # multiple keys, seperated by whitespace, can be provided
        for filename in [os.path.expanduser(f) for f in known_hosts.split()]:
            if os.path.exists(filename):
                self.client.load_host_keys(filename)


Connection.open_orig = Connection.open
Connection.open = safe_open


class Timer(object):
    """this class is to track time and resources passed"""

    def __init__(self):
        """initialize the timstamp"""
        self.stamp = datetime.datetime.now()

    def times(self):
        """return a string designing resource usage"""
        return 'user %s system %s chlduser %s chldsystem %s' % os.times()[:4]

    def rss(self):
        process = psutil.Process(os.getpid())
        return process.memory_info().rss

    def memory(self):
        return 'RSS %s' % naturalsize(self.rss())

    def diff(self):
        """a datediff between the creation of the object and now"""
        return datetime.datetime.now() - self.stamp

    def __str__(self):
        """return a string representing the time passed and resources used"""
        return 'elapsed: %s (%s %s)' % (str(self.diff()),
                                        self.times(),
                                        self.memory())


def test_timer():
    timer = Timer()
    assert timer.diff().total_seconds() >= 0
    assert timer.memory().startswith('RSS ')
    assert str(timer).startswith('elapsed: ')
