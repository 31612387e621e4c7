# Remote unlocking of encrypted storage over a private overlay network.
#
# Last Change: October 18, 2026

"""
Membership of the Tailscale overlay network.

The unlock server only listens on the address assigned to the machine by
Tailscale, so it can only be reached from the tailnet. The
:class:`TailscaleNode` class drives the ``tailscale`` program (the
``tailscaled`` daemon needs to be running in the pre-boot environment).
"""

# External dependencies.
from executor import ExternalCommandFailed
from executor.contexts import LocalContext
from humanfriendly import format
from property_manager import PropertyManager, mutable_property, required_property
from verboselogs import VerboseLogger

# Modules included in our package.
from tailscale_remote_unlock import MissingProgramError, OverlayError

# Public identifiers that require documentation.
__all__ = (
    'TailscaleNode',
    'logger',
)

# Initialize a logger for this module.
logger = VerboseLogger(__name__)


class TailscaleNode(PropertyManager):

    """
    Join the tailnet while the unlock server is running.

    When used as a context manager the node joins the tailnet on entry and
    logs out on exit, no matter how the ``with`` block ended. Logging out
    removes the node from the tailnet, which is what you want for the
    short lived pre-boot environment.
    """

    @required_property
    def hostname(self):
        """The name of the machine on the tailnet (a string)."""

    @mutable_property
    def auth_key_file(self):
        """The pathname of the file with the Tailscale auth key (a string or :data:`None`)."""

    @mutable_property(cached=True)
    def context(self):
        """The command execution context (defaults to a :class:`~executor.contexts.LocalContext` object)."""
        return LocalContext()

    @mutable_property
    def joined(self):
        """:data:`True` after :func:`join()` succeeded, :data:`False` otherwise."""
        return False

    def __enter__(self):
        """Join the tailnet."""
        self.join()
        return self

    def __exit__(self, exc_type=None, exc_value=None, traceback=None):
        """Leave the tailnet."""
        if self.joined:
            self.logout()

    def join(self):
        """
        Join the tailnet using ``tailscale up``.

        :raises: :exc:`~tailscale_remote_unlock.MissingProgramError` when the
                 ``tailscale`` program isn't installed,
                 :exc:`~tailscale_remote_unlock.OverlayError` when ``tailscale
                 up`` fails (for example because there's no internet connection).
        """
        if not self.context.find_program('tailscale'):
            raise MissingProgramError("The 'tailscale' program is not installed!")
        command = ['tailscale', 'up', '--hostname=%s' % self.hostname]
        if self.auth_key_file:
            command.append('--auth-key=file:%s' % self.auth_key_file)
        logger.info("Joining tailnet as %s ..", self.hostname)
        try:
            self.context.execute(*command)
        except ExternalCommandFailed as e:
            raise OverlayError(format("Failed to join tailnet! (%s)", e))
        self.joined = True

    def find_address(self):
        """
        Find the IPv4 address assigned to this machine by Tailscale.

        :returns: The IP address (a string).
        :raises: :exc:`~tailscale_remote_unlock.OverlayError` when no address was assigned.
        """
        try:
            output = self.context.capture('tailscale', 'ip', '-4')
        except ExternalCommandFailed as e:
            raise OverlayError(format("Failed to get tailnet address! (%s)", e))
        addresses = output.split()
        if not addresses:
            raise OverlayError("Tailscale didn't report an IPv4 address!")
        logger.verbose("Tailnet address is %s.", addresses[0])
        return addresses[0]

    def logout(self):
        """Log out of the tailnet (failures are logged but don't raise an exception)."""
        logger.info("Logging out of tailnet ..")
        if self.context.execute('tailscale', 'logout', check=False).succeeded:
            self.joined = False
        else:
            logger.warning("Failed to log out of tailnet!")
