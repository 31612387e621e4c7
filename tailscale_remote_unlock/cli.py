# Remote unlocking of encrypted storage over a private overlay network.
#
# Last Change: October 18, 2026

"""
Usage: tailscale-remote-unlock [OPTIONS]

Run an SSH server in the pre-boot environment of a machine whose ZFS datasets
are encrypted, so that an operator can enter the passphrases remotely. The SSH
server is only reachable over the Tailscale overlay network. Connect using
'ssh -t' (a terminal is required), enter passphrases until all encryption
roots are unlocked and the boot sequence will be resumed.

Default values of the options below can be set in the [server] section of the
configuration file /etc/tailscale-remote-unlock.ini (or any of the other
locations searched by update-dotdee).

Supported options:

  -n, --hostname=NAME

    The machine name used to join the tailnet. This option is required
    unless the --listen option is given.

  -a, --auth-key=FILE

    The file with the Tailscale auth key
    (defaults to /etc/tailscale-remote-unlock/auth_key).

  -k, --ssh-host-key=FILE

    Use the private key stored in FILE as an SSH host key. This option can be
    repeated, it defaults to the RSA and Ed25519 host keys in the directory
    /etc/tailscale-remote-unlock.

  -l, --listen=ADDRESS

    Listen on the given address instead of joining the tailnet and
    listening on the address assigned by Tailscale.

  -p, --port=NUMBER

    The port number of the SSH server (defaults to 22).

  -A, --authorized-keys=FILE

    Require SSH public key authentication using the given 'authorized_keys'
    file. By default membership of the tailnet is the only access control.

  -v, --verbose

    Increase logging verbosity (can be repeated).

  -q, --quiet

    Decrease logging verbosity (can be repeated).

  -h, --help

    Show this message and exit.
"""

# Standard library modules.
import asyncio
import getopt
import os
import signal
import sys

# External dependencies.
import asyncssh
import coloredlogs
from humanfriendly import format, parse_path
from humanfriendly.terminal import usage, warning
from property_manager import PropertyManager, lazy_property, mutable_property, required_property
from update_dotdee import ConfigLoader
from verboselogs import VerboseLogger

# Modules included in our package.
from tailscale_remote_unlock import RemoteUnlockError, ShutdownRequested
from tailscale_remote_unlock.overlay import TailscaleNode
from tailscale_remote_unlock.server import UnlockServer
from tailscale_remote_unlock.zfs import ZFSProvider

PROGRAM_NAME = 'tailscale-remote-unlock'
"""The name of the program, used to find configuration files (a string)."""

CONFIG_DIRECTORY = '/etc/tailscale-remote-unlock'
"""The directory with the auth key and SSH host keys (a string)."""

CONFIG_SECTION = 'server'
"""The name of the configuration section with default option values (a string)."""

# Public identifiers that require documentation.
__all__ = (
    'CONFIG_DIRECTORY',
    'CONFIG_SECTION',
    'PROGRAM_NAME',
    'RemoteUnlockProgram',
    'ShutdownHandler',
    'config_file',
    'logger',
    'main',
)

# Initialize a logger for this module.
logger = VerboseLogger(__name__)


def main():
    """Command line interface for ``tailscale-remote-unlock``."""
    # Initialize logging to the terminal and system log.
    coloredlogs.install(syslog=True)
    # Parse the command line arguments.
    program_opts = {}
    host_key_files = []
    try:
        options, arguments = getopt.gnu_getopt(sys.argv[1:], 'n:a:k:l:p:A:vqh', [
            'hostname=', 'auth-key=', 'ssh-host-key=', 'listen=', 'port=',
            'authorized-keys=', 'verbose', 'quiet', 'help',
        ])
        for option, value in options:
            if option in ('-n', '--hostname'):
                program_opts['hostname'] = value
            elif option in ('-a', '--auth-key'):
                program_opts['auth_key_file'] = parse_path(value)
            elif option in ('-k', '--ssh-host-key'):
                host_key_files.append(parse_path(value))
            elif option in ('-l', '--listen'):
                program_opts['listen_address'] = value
            elif option in ('-p', '--port'):
                program_opts['port_number'] = int(value)
            elif option in ('-A', '--authorized-keys'):
                program_opts['authorized_keys'] = parse_path(value)
            elif option in ('-v', '--verbose'):
                coloredlogs.increase_verbosity()
            elif option in ('-q', '--quiet'):
                coloredlogs.decrease_verbosity()
            elif option in ('-h', '--help'):
                usage(__doc__)
                sys.exit(0)
            else:
                raise Exception("Unhandled option!")
        if arguments:
            raise Exception("no positional arguments allowed")
        if host_key_files:
            program_opts['host_key_files'] = host_key_files
        program = RemoteUnlockProgram(**program_opts)
        if not (program.hostname or program.listen_address):
            raise Exception("hostname must be specified (unless --listen is used)")
    except Exception as e:
        warning("Failed to parse command line arguments! (%s)", e)
        sys.exit(1)
    # Serve the unlock sessions.
    try:
        program.run()
    except ShutdownRequested as e:
        logger.notice("%s", e)
    except RemoteUnlockError as e:
        logger.error("Aborting due to error: %s", e)
        sys.exit(2)
    except Exception:
        logger.exception("Aborting due to unexpected exception!")
        sys.exit(3)


def config_file(filename):
    """Get the pathname of a file in :data:`CONFIG_DIRECTORY`."""
    return os.path.join(CONFIG_DIRECTORY, filename)


class RemoteUnlockProgram(PropertyManager):

    """
    Python API for the `tailscale-remote-unlock` program.

    The settings of the program are properties whose default values are taken
    from the :data:`CONFIG_SECTION` section of the configuration loaded by
    :attr:`config_loader`. The :func:`run()` method checks the environment,
    joins the tailnet (unless :attr:`listen_address` is set) and runs an
    :class:`~tailscale_remote_unlock.server.UnlockServer` until all volumes
    are unlocked or a shutdown is requested.
    """

    @mutable_property(cached=True)
    def config_loader(self):
        """A :class:`~update_dotdee.ConfigLoader` object."""
        return ConfigLoader(program_name=PROGRAM_NAME)

    @lazy_property
    def config(self):
        """A dictionary with configuration options (loaded from :data:`CONFIG_SECTION`)."""
        if CONFIG_SECTION in self.config_loader.section_names:
            return self.config_loader.get_options(CONFIG_SECTION)
        return {}

    @mutable_property
    def hostname(self):
        """The machine name used to join the tailnet (a string or :data:`None`)."""
        return self.config.get('hostname')

    @mutable_property
    def auth_key_file(self):
        """The pathname of the file with the Tailscale auth key (a string)."""
        return parse_path(self.config.get('auth-key', config_file('auth_key')))

    @mutable_property
    def host_key_files(self):
        """The pathnames of the SSH host keys (a list of strings)."""
        if 'ssh-host-keys' in self.config:
            return [parse_path(fn) for fn in self.config['ssh-host-keys'].split()]
        return [config_file('ssh_host_rsa_key'), config_file('ssh_host_ed25519_key')]

    @mutable_property
    def listen_address(self):
        """The address to listen on instead of the tailnet address (a string or :data:`None`)."""
        return self.config.get('listen')

    @mutable_property(cached=True)
    def port_number(self):
        """The port number of the SSH server (an integer, defaults to 22)."""
        return int(self.config.get('port', '22'))

    @mutable_property
    def authorized_keys(self):
        """The pathname of an ``authorized_keys`` file (a string or :data:`None`)."""
        if 'authorized-keys' in self.config:
            return parse_path(self.config['authorized-keys'])

    @mutable_property(cached=True)
    def provider(self):
        """The volume locking provider (a :class:`~tailscale_remote_unlock.zfs.ZFSProvider` object)."""
        return ZFSProvider()

    def load_host_keys(self):
        """
        Load the SSH host keys.

        :returns: A list of :class:`asyncssh.SSHKey` objects.
        :raises: :exc:`~tailscale_remote_unlock.RemoteUnlockError` when a
                 host key can't be loaded.
        """
        host_keys = []
        for filename in self.host_key_files:
            logger.verbose("Loading SSH host key %s ..", filename)
            try:
                host_keys.append(asyncssh.read_private_key(filename))
            except (OSError, asyncssh.KeyImportError) as e:
                raise RemoteUnlockError(format("Failed to load SSH host key %s! (%s)", filename, e))
        return host_keys

    def run(self):
        """
        Serve interactive unlock sessions until all volumes are unlocked.

        :raises: :exc:`~tailscale_remote_unlock.ShutdownRequested` when a
                 shutdown was requested before all volumes were unlocked,
                 other :exc:`~tailscale_remote_unlock.RemoteUnlockError`
                 exceptions when the environment isn't usable.
        """
        self.provider.check_available()
        host_keys = self.load_host_keys()
        if self.listen_address:
            asyncio.run(self.serve(host_keys, self.listen_address))
        else:
            with TailscaleNode(hostname=self.hostname, auth_key_file=self.auth_key_file) as node:
                asyncio.run(self.serve(host_keys, node.find_address()))

    async def serve(self, host_keys, address):
        """
        Run the unlock server with signal handlers installed.

        :param host_keys: The SSH host keys (a list).
        :param address: The address to listen on (a string).
        """
        cancelled = asyncio.Event()
        handler = ShutdownHandler(cancelled=cancelled)
        handler.install(asyncio.get_running_loop())
        try:
            server = UnlockServer(
                provider=self.provider,
                host_keys=host_keys,
                listen_address=address,
                port_number=self.port_number,
                authorized_keys=self.authorized_keys,
            )
            await server.run(cancelled)
        finally:
            handler.uninstall()


class ShutdownHandler(PropertyManager):

    """
    Translate signals into shutdown requests.

    The first signal sets :attr:`cancelled` which makes the unlock server shut
    down gracefully, a second signal terminates the process immediately.
    """

    @required_property
    def cancelled(self):
        """The :class:`asyncio.Event` that requests a graceful shutdown."""

    @mutable_property
    def signals(self):
        """The signals that are handled (a tuple of integers)."""
        return (signal.SIGINT, signal.SIGTERM)

    @mutable_property
    def loop(self):
        """The event loop in which the signal handlers are installed (or :data:`None`)."""

    @mutable_property
    def received(self):
        """The number of signals received so far (an integer)."""
        return 0

    def install(self, loop):
        """Install the signal handlers in the given event loop."""
        self.loop = loop
        for signum in self.signals:
            loop.add_signal_handler(signum, self.handle_signal, signum)

    def uninstall(self):
        """Remove the signal handlers installed by :func:`install()`."""
        if self.loop:
            for signum in self.signals:
                self.loop.remove_signal_handler(signum)
            self.loop = None

    def handle_signal(self, signum):
        """Request a graceful shutdown on the first signal, exit immediately on the second."""
        self.received += 1
        if self.received == 1:
            logger.notice("Exiting (send the signal again to force) ..")
            self.cancelled.set()
        else:
            logger.warning("Received signal %i again, exiting immediately!", signum)
            os._exit(1)
