# Remote unlocking of encrypted storage over a private overlay network.
#
# Last Change: October 18, 2026

"""
Interactive unlock sessions.

Every connection to the unlock server is handled by an :class:`UnlockSession`
object which implements the following state machine::

  RENDERING -> PROMPTING -> BULK_UNLOCKING -> RENDERING
                  ^  |            |
                  |  v            v
                 RETRYING <-------+

The session ends in :data:`SessionState.COMPLETED` once no locked volumes
remain (the first session to notice this fires the :class:`CompletionSignal`)
or in :data:`SessionState.ABORTED` when the operator disconnects or the
volumes can't be listed. The session reads and writes text through a
:class:`Terminal` object, so it doesn't depend on SSH at all.
"""

# Standard library modules.
import asyncio
import enum
import threading

# External dependencies.
from humanfriendly import pluralize
from humanfriendly.terminal import ansi_wrap
from property_manager import PropertyManager, lazy_property, mutable_property, required_property
from verboselogs import VerboseLogger

# Modules included in our package.
from tailscale_remote_unlock.volumes import apply_password, count_locked

BANNER = u"\N{KEY} Welcome to tailscale-remote-unlock!\n"
"""The text written to the terminal when a session starts (a string)."""

STATUS_MARKER = u"\N{BLACK LARGE CIRCLE}"
"""The marker in front of volume names, colored green (unlocked) or red (locked) (a string)."""

PASSWORD_PROMPT = "Password: "
"""The prompt for the password (a string)."""

# Public identifiers that require documentation.
__all__ = (
    'BANNER',
    'CompletionSignal',
    'PASSWORD_PROMPT',
    'STATUS_MARKER',
    'SessionState',
    'Terminal',
    'UnlockSession',
    'format_volumes',
    'logger',
)

# Initialize a logger for this module.
logger = VerboseLogger(__name__)


class SessionState(enum.Enum):

    """The states of an :class:`UnlockSession`."""

    RENDERING = 'rendering'
    PROMPTING = 'prompting'
    RETRYING = 'retrying'
    BULK_UNLOCKING = 'bulk-unlocking'
    COMPLETED = 'completed'
    ABORTED = 'aborted'


FINAL_STATES = frozenset([SessionState.COMPLETED, SessionState.ABORTED])
"""The states in which an :class:`UnlockSession` stops (a :class:`frozenset`)."""


def format_volumes(volumes, width=None):
    """
    Render the lock state of volumes for display on a terminal.

    :param volumes: A dictionary like the one returned by
                    :func:`~tailscale_remote_unlock.volumes.VolumeProvider.list_volumes()`.
    :param width: The width of the terminal (an integer or :data:`None`).
                  Names that don't fit on one line are truncated.
    :returns: A string with one line per volume, sorted by name.
    """
    lines = []
    for name in sorted(volumes):
        marker = ansi_wrap(STATUS_MARKER, color='red' if volumes[name] else 'green')
        # The marker and the space take two columns.
        if width and len(name) > width - 2:
            name = name[:max(width - 3, 0)] + u"\N{HORIZONTAL ELLIPSIS}"
        lines.append(u"%s %s\n" % (marker, name))
    return u"".join(lines)


class CompletionSignal(object):

    """
    One-shot event that means "every volume is unlocked".

    Multiple sessions can notice at the same time that no locked volumes
    remain, so :func:`fire()` is guarded by a lock and only the first call
    has an effect. When :func:`fire()` is called from a thread other than
    the one running the event loop of :func:`wait()` the event is set using
    :meth:`~asyncio.loop.call_soon_threadsafe()`.
    """

    def __init__(self):
        """Initialize a :class:`CompletionSignal` object."""
        self.lock = threading.Lock()
        self.fired = False
        self.event = asyncio.Event()
        self.loop = None

    def fire(self):
        """
        Set the signal (unless it was set before).

        :returns: :data:`True` for the one caller that actually set the
                  signal, :data:`False` for every caller after that.
        """
        with self.lock:
            if self.fired:
                return False
            self.fired = True
            loop = self.loop
        if loop is None or get_running_loop() is loop:
            self.event.set()
        else:
            loop.call_soon_threadsafe(self.event.set)
        return True

    def is_set(self):
        """:data:`True` when the signal has been fired, :data:`False` otherwise."""
        return self.fired

    async def wait(self):
        """Wait for the signal to be fired."""
        with self.lock:
            self.loop = asyncio.get_running_loop()
            if self.fired:
                return
        await self.event.wait()


def get_running_loop():
    """Get the event loop running in the current thread (or :data:`None`)."""
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class Terminal(object):

    """
    The interface between :class:`UnlockSession` and the remote operator.

    Subclasses implement :func:`write()` and :func:`read_password()`, see
    :class:`~tailscale_remote_unlock.server.SSHTerminal`. The :attr:`width`
    is used to truncate volume names that don't fit on one line.
    """

    width = 80
    height = 24

    def write(self, text):
        """Write text to the terminal."""
        raise NotImplementedError()

    async def read_password(self, prompt):
        """
        Read a line of input without echoing it back.

        :param prompt: The prompt to show (a string).
        :returns: The line without its trailing newline (a string).
        :raises: :exc:`~exceptions.EOFError` when the remote side closed the
                 input or interrupted the prompt.
        """
        raise NotImplementedError()

    def resize(self, width, height):
        """Record the dimensions reported by the terminal."""
        logger.debug("Terminal resized to %ix%i.", width, height)
        self.width = width
        self.height = height


class UnlockSession(PropertyManager):

    """The password entry protocol run for each connection."""

    @required_property
    def provider(self):
        """The :class:`~tailscale_remote_unlock.volumes.VolumeProvider` shared by all sessions."""

    @required_property
    def terminal(self):
        """The :class:`Terminal` connected to the operator."""

    @required_property
    def completion(self):
        """The :class:`CompletionSignal` shared by all sessions."""

    @mutable_property
    def name(self):
        """A name for the session used in log messages (a string)."""
        return 'session'

    @lazy_property
    def history(self):
        """The states the session has been in, in order (a list of :class:`SessionState` members)."""
        return []

    @mutable_property(repr=False)
    def password(self):
        """The password being processed (a string or :data:`None`)."""

    @mutable_property
    def feedback(self):
        """The message shown in :data:`SessionState.RETRYING` (a string)."""
        return u""

    @lazy_property
    def handlers(self):
        """A dictionary that maps non-final states to the coroutine functions that handle them."""
        return {
            SessionState.RENDERING: self.render,
            SessionState.PROMPTING: self.prompt,
            SessionState.RETRYING: self.retry,
            SessionState.BULK_UNLOCKING: self.unlock,
        }

    async def run(self):
        """
        Run the session until it reaches a final state.

        :returns: :data:`SessionState.COMPLETED` or :data:`SessionState.ABORTED`.
        """
        self.terminal.write(BANNER)
        state = SessionState.RENDERING
        while True:
            self.history.append(state)
            if state in FINAL_STATES:
                logger.verbose("%s finished in state %s.", self.name, state.value)
                return state
            state = await self.handlers[state]()

    async def render(self):
        """Show the state of the volumes, or fire the completion signal when nothing is locked."""
        try:
            volumes = await asyncio.to_thread(self.provider.list_volumes)
        except Exception as e:
            logger.warning("%s failed to get encrypted volumes: %s", self.name, e)
            self.error(u"Error getting encrypted volumes: %s" % e)
            return SessionState.ABORTED
        if count_locked(volumes) == 0:
            self.terminal.write(u"\n%s\n" % ansi_wrap(u"\N{CHECK MARK} All volumes are unlocked.", color='green'))
            if self.completion.fire():
                logger.success("All volumes are unlocked (noticed by %s).", self.name)
            return SessionState.COMPLETED
        self.terminal.write(u"\n%s\n" % format_volumes(volumes, self.terminal.width))
        return SessionState.PROMPTING

    async def prompt(self):
        """Read a password from the operator."""
        try:
            password = await self.terminal.read_password(PASSWORD_PROMPT)
        except EOFError:
            logger.verbose("%s reached end of input.", self.name)
            self.terminal.write(u"\n")
            return SessionState.ABORTED
        if not password:
            self.feedback = u"Empty password. Please try again."
            return SessionState.RETRYING
        self.password = password
        return SessionState.BULK_UNLOCKING

    async def retry(self):
        """Tell the operator why the password wasn't accepted."""
        self.error(self.feedback)
        return SessionState.PROMPTING

    async def unlock(self):
        """Try the password on all locked volumes."""
        try:
            num_unlocked = await asyncio.to_thread(apply_password, self.provider, self.password)
        except Exception as e:
            logger.warning("%s failed to unlock volumes: %s", self.name, e)
            self.error(u"Error: %s" % e)
            return SessionState.PROMPTING
        finally:
            self.password = None
        if num_unlocked == 0:
            self.feedback = u"Invalid password. Please try again."
            return SessionState.RETRYING
        logger.info("%s unlocked %s.", self.name, pluralize(num_unlocked, "volume"))
        self.terminal.write(u"%s\n" % ansi_wrap(u"Unlocked %s." % pluralize(num_unlocked, "volume"), color='green'))
        return SessionState.RENDERING

    def error(self, text):
        """Show an error message to the operator."""
        self.terminal.write(u"%s\n" % ansi_wrap(text, color='red'))
