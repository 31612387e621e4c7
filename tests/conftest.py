"""Fakes shared by the test suite of :mod:`tailscale_remote_unlock`."""

import asyncio
import threading
from types import SimpleNamespace

from tailscale_remote_unlock.session import Terminal
from tailscale_remote_unlock.volumes import VolumeProvider


class FakeProvider(VolumeProvider):

    """In-memory volume locking provider: each volume is unlocked by one password."""

    def __init__(self, volumes, keys=None, failures=None):
        super(FakeProvider, self).__init__()
        self.locked = dict(volumes)
        self.keys = dict(keys or {})
        self.failures = dict(failures or {})
        self.mutex = threading.Lock()
        self.attempts = []
        self.list_error = None
        self.resume_error = None
        self.resumed = 0

    def list_volumes(self):
        with self.mutex:
            if self.list_error:
                raise self.list_error
            return dict(self.locked)

    def try_password(self, volume, password):
        with self.mutex:
            self.attempts.append((volume, password))
            if volume in self.failures:
                raise self.failures[volume]
            if not self.locked[volume]:
                return False
            if self.keys.get(volume) == password:
                self.locked[volume] = False
                return True
            return False

    def resume_boot(self):
        self.resumed += 1
        if self.resume_error:
            raise self.resume_error


class FakeTerminal(Terminal):

    """Terminal that replays scripted input lines and reports EOF afterwards."""

    def __init__(self, inputs=()):
        self.inputs = list(inputs)
        self.output = []
        self.prompts = []

    def write(self, text):
        self.output.append(text)

    async def read_password(self, prompt):
        self.prompts.append(prompt)
        await asyncio.sleep(0)
        if not self.inputs:
            raise EOFError()
        return self.inputs.pop(0)

    @property
    def text(self):
        return ''.join(self.output)


class BlockingTerminal(FakeTerminal):

    """Terminal whose operator never types anything."""

    async def read_password(self, prompt):
        self.prompts.append(prompt)
        await asyncio.Event().wait()


class FakeListener(object):

    """Stand-in for :class:`asyncssh.SSHAcceptor`."""

    def __init__(self, error=None):
        self.error = error
        self.is_closed = False
        self.closed = asyncio.Event()

    def close(self):
        self.is_closed = True
        self.closed.set()

    async def wait_closed(self):
        await asyncio.sleep(0)
        if self.error:
            raise self.error
        await self.closed.wait()


class FakeConnection(object):

    """Stand-in for :class:`asyncssh.SSHServerConnection`."""

    def __init__(self, peer='100.64.0.7'):
        self.peer = peer
        self.is_closed = False

    def close(self):
        self.is_closed = True

    def get_extra_info(self, name):
        return (self.peer, 51234) if name == 'peername' else None


class FakeStdin(object):

    """Replays lines (or raises exceptions) like :class:`asyncssh.SSHReader`."""

    def __init__(self, items):
        self.items = list(items)

    async def readline(self):
        if not self.items:
            return ''
        item = self.items.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class FakeProcess(object):

    """Stand-in for :class:`asyncssh.SSHServerProcess`."""

    def __init__(self, lines=(), term_type='xterm-256color', subsystem=None, size=(80, 24)):
        self.term_type = term_type
        self.subsystem = subsystem
        self.size = size
        self.written = []
        self.echo = []
        self.exit_status = None
        self.stdin = FakeStdin(lines)
        self.stdout = SimpleNamespace(write=self.written.append)
        self.channel = SimpleNamespace(set_echo=self.echo.append)

    def get_terminal_type(self):
        return self.term_type

    def get_terminal_size(self):
        return self.size + (0, 0)

    def exit(self, status):
        self.exit_status = status

    @property
    def text(self):
        return ''.join(self.written)


class FakeContext(object):

    """Stand-in for :class:`executor.contexts.LocalContext` that records commands."""

    def __init__(self, outputs=None, results=None, programs=('zfs', 'zpool', 'killall', 'tailscale'), working=True):
        self.outputs = dict(outputs or {})
        self.results = dict(results or {})
        self.programs = programs
        self.working = working
        self.commands = []

    def find_program(self, program):
        return ['/usr/sbin/%s' % program] if program in self.programs else []

    def test(self, *command):
        self.commands.append(command)
        return self.working

    def capture(self, *command):
        self.commands.append(command)
        return self.outputs[command]

    def execute(self, *command, **options):
        self.commands.append(command)
        self.last_options = options
        return self.results.get(command, SimpleNamespace(succeeded=True, returncode=0, stderr=b''))
