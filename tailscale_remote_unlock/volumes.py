# Remote unlocking of encrypted storage over a private overlay network.
#
# Last Change: October 18, 2026

"""
Volume locking providers and the bulk unlock operation.

The :class:`VolumeProvider` class defines the contract between the unlock
orchestration (the interactive sessions and the server lifecycle) and a
concrete storage encryption backend like ZFS (see :mod:`tailscale_remote_unlock.zfs`).
Supporting another backend means implementing this contract, the rest of the
program never needs to know which backend is in use.
"""

# External dependencies.
from humanfriendly import pluralize
from property_manager import PropertyManager
from verboselogs import VerboseLogger

# Public identifiers that require documentation.
__all__ = (
    'VolumeProvider',
    'apply_password',
    'count_locked',
    'logger',
)

# Initialize a logger for this module.
logger = VerboseLogger(__name__)


def apply_password(provider, password):
    """
    Try a password on every volume that is currently locked.

    :param provider: A :class:`VolumeProvider` object.
    :param password: The password to try (a string).
    :returns: The number of volumes that were unlocked by the password (an integer).
    :raises: Any exception raised by :func:`VolumeProvider.list_volumes()` or
             :func:`VolumeProvider.try_password()`. The first operational
             error aborts the sweep, volumes that were already unlocked by
             the password stay unlocked.

    Volumes that are already unlocked are skipped, so entering a correct
    password a second time doesn't touch any volumes. The caller is only told
    how many volumes were unlocked and not which ones, because a password
    can legitimately apply to just a subset of the encryption roots.
    """
    volumes = provider.list_volumes()
    num_unlocked = 0
    for name, locked in volumes.items():
        if not locked:
            continue
        logger.verbose("Trying password on %s ..", name)
        if provider.try_password(name, password):
            logger.info("Unlocked %s.", name)
            num_unlocked += 1
    logger.verbose("Password unlocked %s.", pluralize(num_unlocked, "volume"))
    return num_unlocked


def count_locked(volumes):
    """
    Count the locked volumes in a result of :func:`VolumeProvider.list_volumes()`.

    :param volumes: A dictionary like the one returned by :func:`VolumeProvider.list_volumes()`.
    :returns: The number of locked volumes (an integer).
    """
    return sum(1 for locked in volumes.values() if locked)


class VolumeProvider(PropertyManager):

    """
    Abstract base class for volume locking providers.

    Subclasses need to implement :func:`list_volumes()`, :func:`try_password()`
    and :func:`resume_boot()`. Implementations must be safe to call from
    multiple threads because every interactive session queries the provider
    independently.
    """

    def list_volumes(self):
        """
        Get the lock state of all protected volumes.

        :returns: A dictionary with volume names (strings) as keys and
                  :data:`True` (locked) or :data:`False` (unlocked) as values.
                  The dictionary is empty when there are no protected volumes.
        :raises: :exc:`~tailscale_remote_unlock.VolumeError` when the state
                 can't be determined.
        """
        raise NotImplementedError()

    def try_password(self, volume, password):
        """
        Try to unlock a single volume.

        :param volume: The name of the volume (a string).
        :param password: The password to try (a string).
        :returns: :data:`True` when the password unlocked the volume,
                  :data:`False` when the password is wrong (the volume stays
                  locked) or the volume was already unlocked.
        :raises: :exc:`~tailscale_remote_unlock.VolumeError` on operational
                 failures (anything other than a wrong password).
        """
        raise NotImplementedError()

    def resume_boot(self):
        """
        Signal the host to continue booting.

        This is called once, after all volumes have been unlocked.
        """
        raise NotImplementedError()
