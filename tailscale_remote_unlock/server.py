# Remote unlocking of encrypted storage over a private overlay network.
#
# Last Change: October 18, 2026

"""
The SSH server that runs the interactive unlock sessions.

The :class:`UnlockServer` class accepts SSH connections, runs an
:class:`~tailscale_remote_unlock.session.UnlockSession` for every connection
that requests a PTY and stops once all volumes are unlocked, after which the
boot sequence is resumed. Three tasks run side by side in a task group:

1. :func:`UnlockServer.serve()` waits for the listener to be closed.
2. :func:`UnlockServer.watch_completion()` waits for the completion signal
   (success) or the cancellation event (shutdown requested).
3. :func:`UnlockServer.watch_shutdown()` closes the listener and open
   connections when the task group is being cancelled, so that
   :func:`~UnlockServer.serve()` returns promptly.

The first task that raises an exception makes the task group cancel the
other tasks, after which the exception decides the outcome.
"""

# Standard library modules.
import asyncio
import functools
import itertools

# External dependencies.
import asyncssh
from humanfriendly import Timer, format, pluralize
from property_manager import PropertyManager, lazy_property, mutable_property, required_property
from verboselogs import VerboseLogger

# Modules included in our package.
from tailscale_remote_unlock import AllVolumesUnlocked, RemoteUnlockError, ShutdownRequested
from tailscale_remote_unlock.session import CompletionSignal, Terminal, UnlockSession

# Public identifiers that require documentation.
__all__ = (
    'SSHTerminal',
    'UnlockSSHServer',
    'UnlockServer',
    'logger',
)

# Initialize a logger for this module.
logger = VerboseLogger(__name__)


class UnlockServer(PropertyManager):

    """Run interactive unlock sessions until all volumes are unlocked."""

    @required_property
    def provider(self):
        """The :class:`~tailscale_remote_unlock.volumes.VolumeProvider` used by all sessions."""

    @mutable_property(repr=False)
    def host_keys(self):
        """The SSH host keys (a list of :class:`asyncssh.SSHKey` objects or filenames)."""
        return []

    @mutable_property
    def listen_address(self):
        """The address to listen on (a string, defaults to all addresses)."""
        return ''

    @mutable_property
    def port_number(self):
        """The port number to listen on (an integer, defaults to 22)."""
        return 22

    @mutable_property
    def authorized_keys(self):
        """
        The filename of an ``authorized_keys`` file (a string or :data:`None`).

        When this is :data:`None` (the default) clients are not authenticated
        at the SSH level, access is restricted by only listening on the
        overlay network.
        """

    @lazy_property
    def completion(self):
        """The :class:`~tailscale_remote_unlock.session.CompletionSignal` shared by all sessions."""
        return CompletionSignal()

    @lazy_property
    def connections(self):
        """The open SSH connections (a :class:`set` of :class:`asyncssh.SSHServerConnection` objects)."""
        return set()

    @lazy_property
    def session_ids(self):
        """An iterator of numbers used to name sessions in log messages."""
        return itertools.count(1)

    def create_session(self, terminal, **options):
        """
        Create an interactive unlock session.

        :param terminal: A :class:`~tailscale_remote_unlock.session.Terminal` object.
        :param options: Any keyword arguments are passed on to
                        :class:`~tailscale_remote_unlock.session.UnlockSession`.
        :returns: An :class:`~tailscale_remote_unlock.session.UnlockSession` object.
        """
        options.setdefault('name', 'session #%i' % next(self.session_ids))
        return UnlockSession(
            provider=self.provider,
            terminal=terminal,
            completion=self.completion,
            **options
        )

    async def start_listener(self):
        """
        Start listening for SSH connections.

        :returns: An :class:`asyncssh.SSHAcceptor` object.
        :raises: :exc:`~tailscale_remote_unlock.RemoteUnlockError` when the
                 address can't be bound.
        """
        options = dict(
            server_factory=functools.partial(UnlockSSHServer, self),
            server_host_keys=self.host_keys,
            process_factory=self.handle_client,
            agent_forwarding=False,
            x11_forwarding=False,
        )
        if self.authorized_keys:
            options['authorized_client_keys'] = self.authorized_keys
        try:
            listener = await asyncssh.listen(self.listen_address, self.port_number, **options)
        except OSError as e:
            raise RemoteUnlockError(format(
                "Failed to listen on %s:%i! (%s)",
                self.listen_address or '*', self.port_number, e,
            ))
        logger.info("Listening for SSH connections on %s:%i ..", self.listen_address or '*', self.port_number)
        return listener

    async def handle_client(self, process):
        """
        Handle an SSH session.

        :param process: An :class:`asyncssh.SSHServerProcess` object.

        Sessions without a PTY are rejected, the password prompt
        doesn't work without one.
        """
        if process.subsystem:
            logger.notice("Rejecting request for %r subsystem.", process.subsystem)
            process.exit(1)
            return
        if process.get_terminal_type() is None:
            logger.notice("Rejecting session without PTY.")
            process.stdout.write(u"No PTY requested.\n")
            process.exit(1)
            return
        session = self.create_session(SSHTerminal(process))
        logger.info("Starting %s ..", session.name)
        try:
            await session.run()
            process.exit(0)
        except (OSError, asyncssh.Error) as e:
            logger.verbose("Lost connection of %s: %s", session.name, e)

    async def run(self, cancelled, listener=None):
        """
        Serve until all volumes are unlocked, then resume booting.

        :param cancelled: An :class:`asyncio.Event` that is set to request a shutdown.
        :param listener: The listener (created using :func:`start_listener()`
                         when this is :data:`None`).
        :raises: :exc:`~tailscale_remote_unlock.ShutdownRequested` when
                 `cancelled` was set before all volumes were unlocked, or any
                 exception raised by the listener or by
                 :func:`~tailscale_remote_unlock.volumes.VolumeProvider.resume_boot()`.
        """
        timer = Timer()
        if listener is None:
            listener = await self.start_listener()
        try:
            await self.serve_until_unlocked(cancelled, listener)
        except AllVolumesUnlocked:
            logger.success("Unlocked all volumes in %s.", timer)
            await asyncio.to_thread(self.provider.resume_boot)
            logger.info("Boot sequence resumed.")

    async def serve_until_unlocked(self, cancelled, listener):
        """
        Run the serve task and the watch tasks as a group.

        :param cancelled: An :class:`asyncio.Event` that is set to request a shutdown.
        :param listener: The listener.
        :raises: :exc:`~tailscale_remote_unlock.AllVolumesUnlocked` when the
                 completion watcher ended the group, otherwise the exception
                 that ended the group.
        """
        try:
            async with asyncio.TaskGroup() as group:
                group.create_task(self.serve(listener))
                group.create_task(self.watch_completion(cancelled))
                group.create_task(self.watch_shutdown(cancelled, listener))
        except ExceptionGroup as e:
            if e.subgroup(AllVolumesUnlocked) is not None:
                raise AllVolumesUnlocked()
            raise e.exceptions[0]

    async def serve(self, listener):
        """Keep serving until the listener is closed."""
        await listener.wait_closed()
        logger.verbose("Listener was closed.")

    async def watch_completion(self, cancelled):
        """
        Wait for the completion signal or a shutdown request.

        :raises: :exc:`~tailscale_remote_unlock.AllVolumesUnlocked` when the
                 completion signal fired, :exc:`~tailscale_remote_unlock.ShutdownRequested`
                 when `cancelled` was set first.
        """
        waiters = [
            asyncio.ensure_future(self.completion.wait()),
            asyncio.ensure_future(cancelled.wait()),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        if self.completion.is_set():
            raise AllVolumesUnlocked()
        raise ShutdownRequested("Shutdown requested before all volumes were unlocked.")

    async def watch_shutdown(self, cancelled, listener):
        """Close the listener once a shutdown is requested or the group is cancelled."""
        try:
            await cancelled.wait()
        finally:
            self.close(listener)

    def close(self, listener):
        """Close the listener and any open connections."""
        logger.verbose("Closing listener and %s ..", pluralize(len(self.connections), "open connection"))
        listener.close()
        for connection in list(self.connections):
            connection.close()


class UnlockSSHServer(asyncssh.SSHServer):

    """Keeps track of connections for :class:`UnlockServer`."""

    def __init__(self, server):
        """
        Initialize an :class:`UnlockSSHServer` object.

        :param server: The :class:`UnlockServer` that accepted the connection.
        """
        self.server = server
        self.connection = None

    def connection_made(self, conn):
        self.connection = conn
        self.server.connections.add(conn)
        peer = conn.get_extra_info('peername') or ('unknown',)
        logger.info("Accepted SSH connection from %s.", peer[0])

    def connection_lost(self, exc):
        self.server.connections.discard(self.connection)
        if exc:
            logger.verbose("SSH connection lost: %s", exc)

    def begin_auth(self, username):
        # Authentication is only required when authorized keys are configured.
        return bool(self.server.authorized_keys)


class SSHTerminal(Terminal):

    """Connects :class:`~tailscale_remote_unlock.session.UnlockSession` to an SSH session with a PTY."""

    def __init__(self, process):
        """
        Initialize an :class:`SSHTerminal` object.

        :param process: An :class:`asyncssh.SSHServerProcess` object.
        """
        self.process = process
        width, height, pixel_width, pixel_height = process.get_terminal_size()
        self.resize(width, height)

    def write(self, text):
        self.process.stdout.write(text)

    async def read_password(self, prompt):
        self.write(prompt)
        self.process.channel.set_echo(False)
        try:
            line = await self.read_line()
        finally:
            self.process.channel.set_echo(True)
        # The line editor echoes the newline even when echo is disabled.
        return line.rstrip(u"\r\n")

    async def read_line(self):
        """
        Read a line of input, handling terminal resize notifications.

        :returns: The line including its newline (a string).
        :raises: :exc:`~exceptions.EOFError` at the end of the input or when
                 the client sent a break or signal (e.g. Control-C).
        """
        while True:
            try:
                line = await self.process.stdin.readline()
            except asyncssh.TerminalSizeChanged as e:
                self.resize(e.width, e.height)
                continue
            except (asyncssh.BreakReceived, asyncssh.SignalReceived) as e:
                raise EOFError(format("Input interrupted (%s)", e))
            if not line.endswith(u"\n"):
                raise EOFError("End of input")
            return line
