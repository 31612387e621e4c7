# Remote unlocking of encrypted storage over a private overlay network.
#
# Last Change: October 18, 2026

"""
Volume locking provider for ZFS native encryption.

The :class:`ZFSProvider` class reports the key status of every ZFS encryption
root and loads keys using ``zfs load-key``. Once all keys are loaded the boot
sequence is resumed by killing the password prompts that are blocking it.
"""

# External dependencies.
from executor import ExternalCommandFailed
from executor.contexts import LocalContext
from humanfriendly import compact, format, pluralize
from property_manager import mutable_property
from verboselogs import VerboseLogger

# Modules included in our package.
from tailscale_remote_unlock import MissingProgramError, VolumeError
from tailscale_remote_unlock.volumes import VolumeProvider

REQUIRED_PROGRAMS = ('zfs', 'zpool', 'killall')
"""The programs that need to be installed for :class:`ZFSProvider` to work (a tuple of strings)."""

WRONG_PASSWORD_MESSAGES = (
    'Key load error: Passphrase too ',
    'Key load error: Incorrect key provided for ',
)
"""Prefixes of ``zfs load-key`` error messages that mean the password was wrong (a tuple of strings)."""

KEY_ALREADY_LOADED_MESSAGE = 'Key load error: Key already loaded for '
"""Prefix of the ``zfs load-key`` error message for volumes that were already unlocked (a string)."""

# Public identifiers that require documentation.
__all__ = (
    'KEY_ALREADY_LOADED_MESSAGE',
    'REQUIRED_PROGRAMS',
    'WRONG_PASSWORD_MESSAGES',
    'ZFSProvider',
    'logger',
)

# Initialize a logger for this module.
logger = VerboseLogger(__name__)


class ZFSProvider(VolumeProvider):

    """
    Unlock ZFS encryption roots.

    Only encryption roots are reported as volumes, datasets that inherit
    their key from an encryption root are unlocked along with it.
    """

    @mutable_property(cached=True)
    def context(self):
        """The command execution context (defaults to a :class:`~executor.contexts.LocalContext` object)."""
        return LocalContext()

    @mutable_property
    def boot_prompts(self):
        """The names of the processes that are killed to resume booting (a tuple of strings)."""
        return ('systemd-ask-password', 'zfs')

    def check_available(self):
        """
        Make sure the ZFS user space programs and kernel module are available.

        :raises: :exc:`~tailscale_remote_unlock.MissingProgramError` when a
                 required program is missing or ``zfs version`` or ``zpool
                 version`` fails (which means the kernel module isn't loaded).
        """
        for program in REQUIRED_PROGRAMS:
            if not self.context.find_program(program):
                raise MissingProgramError(format("The %r program is not installed!", program))
        for program in ('zfs', 'zpool'):
            if not self.context.test(program, 'version'):
                raise MissingProgramError(compact("""
                    The {program} program doesn't work, is the ZFS kernel
                    module loaded?
                """, program=program))
        logger.verbose("ZFS user space programs and kernel module are available.")

    def find_encryption_roots(self):
        """
        Find the ZFS encryption roots.

        :returns: A sorted list of dataset names (strings).
        :raises: :exc:`~tailscale_remote_unlock.VolumeError` when ``zfs get`` fails.
        """
        listing = self.capture('zfs', 'get', 'encryptionroot', '-H', '-o', 'value')
        roots = set()
        for line in listing.splitlines():
            line = line.strip()
            # Unencrypted datasets report '-' as their encryption root.
            if line and line != '-':
                roots.add(line)
        logger.verbose("Found %s.", pluralize(len(roots), "encryption root"))
        return sorted(roots)

    def list_volumes(self):
        """
        Get the key status of all ZFS encryption roots.

        :returns: A dictionary like the one documented by
                  :func:`~tailscale_remote_unlock.volumes.VolumeProvider.list_volumes()`.
        :raises: :exc:`~tailscale_remote_unlock.VolumeError` when ``zfs get``
                 fails or reports an unexpected key status.
        """
        roots = self.find_encryption_roots()
        if not roots:
            return {}
        listing = self.capture('zfs', 'get', 'keystatus', '-H', '-o', 'name,value', *roots)
        volumes = {}
        for line in listing.splitlines():
            if not line.strip():
                continue
            fields = line.split('\t')
            if len(fields) != 2:
                raise VolumeError(format("zfs get keystatus returned malformed line: %r", line))
            name, value = fields
            if value == 'available':
                volumes[name] = False
            elif value == 'unavailable':
                volumes[name] = True
            else:
                # 'none' is not a valid key status for encryption roots.
                raise VolumeError(format(
                    "zfs get keystatus returned unexpected value: %s = %s",
                    name, value,
                ))
        return volumes

    def try_password(self, volume, password):
        """
        Load the key of an encryption root using ``zfs load-key``.

        :param volume: The name of the encryption root (a string).
        :param password: The passphrase (a string).
        :returns: :data:`True` when the key was loaded, :data:`False` when the
                  passphrase is wrong or the key was already loaded.
        :raises: :exc:`~tailscale_remote_unlock.VolumeError` for other errors.

        ZFS doesn't use distinct exit codes for these situations so the
        error message on the standard error stream has to be inspected.
        """
        cmd = self.context.execute(
            'zfs', 'load-key', volume,
            input=password,
            capture=True,
            capture_stderr=True,
            check=False,
        )
        if cmd.succeeded:
            return True
        message = (cmd.stderr or b'').decode('UTF-8', 'replace').strip()
        if message.startswith(WRONG_PASSWORD_MESSAGES):
            logger.verbose("Wrong password for %s.", volume)
            return False
        if message.startswith(KEY_ALREADY_LOADED_MESSAGE):
            logger.verbose("Key of %s was already loaded.", volume)
            return False
        raise VolumeError(message or format(
            "zfs load-key %s failed with return code %i!",
            volume, cmd.returncode,
        ))

    def resume_boot(self):
        """
        Resume the boot sequence by killing the password prompts.

        :raises: :exc:`~tailscale_remote_unlock.VolumeError` when ``killall`` fails.
        """
        logger.info("Resuming boot by killing %s ..", ', '.join(self.boot_prompts))
        try:
            self.context.execute('killall', *self.boot_prompts)
        except ExternalCommandFailed as e:
            raise VolumeError(format("Failed to resume boot! (%s)", e))

    def capture(self, *command):
        """Capture the output of a ``zfs`` command, translating failures to :exc:`~tailscale_remote_unlock.VolumeError`."""
        try:
            return self.context.capture(*command)
        except ExternalCommandFailed as e:
            raise VolumeError(format("Failed to run %s! (%s)", ' '.join(command[:2]), e))
