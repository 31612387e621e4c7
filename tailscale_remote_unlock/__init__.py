# Remote unlocking of encrypted storage over a private overlay network.
#
# Last Change: October 18, 2026

"""The top level :mod:`tailscale_remote_unlock` module."""

# External dependencies.
from verboselogs import VerboseLogger

# Public identifiers that require documentation.
__all__ = (
    'AllVolumesUnlocked',
    'MissingProgramError',
    'OverlayError',
    'RemoteUnlockError',
    'ShutdownRequested',
    'VolumeError',
    '__version__',
    'logger',
)

# Semi-standard module versioning.
__version__ = '0.1.0'
"""The global version number of the `tailscale-remote-unlock` package (a string)."""

# Initialize a logger for this module.
logger = VerboseLogger(__name__)


class RemoteUnlockError(Exception):

    """Base class for custom exceptions raised by :mod:`tailscale_remote_unlock`."""


class VolumeError(RemoteUnlockError):

    """
    Raised when a volume locking provider fails for a reason other than a wrong password.

    A wrong password is never reported using this exception, providers
    return :data:`False` from :func:`~tailscale_remote_unlock.volumes.VolumeProvider.try_password()`
    instead.
    """


class MissingProgramError(RemoteUnlockError):

    """Raised when a program required by a volume locking provider isn't available."""


class OverlayError(RemoteUnlockError):

    """Raised when joining the overlay network or finding our address on it fails."""


class ShutdownRequested(RemoteUnlockError):

    """Raised by the session server lifecycle when it was cancelled before all volumes were unlocked."""


class AllVolumesUnlocked(Exception):

    """
    Sentinel raised by the completion watcher of the session server lifecycle.

    This is not an error: it terminates the supervised group of tasks in
    :class:`~tailscale_remote_unlock.server.UnlockServer` because there's
    nothing left to unlock, after which the boot sequence is resumed.
    """
