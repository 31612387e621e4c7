from types import SimpleNamespace

import pytest

from tailscale_remote_unlock import MissingProgramError, OverlayError
from tailscale_remote_unlock.overlay import TailscaleNode

from conftest import FakeContext


def test_join_and_logout():
    context = FakeContext()
    with TailscaleNode(hostname='nas-unlock', auth_key_file='/etc/tailscale-remote-unlock/auth_key', context=context) as node:
        assert node.joined
    assert not node.joined
    assert context.commands == [
        ('tailscale', 'up', '--hostname=nas-unlock', '--auth-key=file:/etc/tailscale-remote-unlock/auth_key'),
        ('tailscale', 'logout'),
    ]


def test_logout_happens_when_block_fails():
    context = FakeContext()
    with pytest.raises(RuntimeError):
        with TailscaleNode(hostname='nas-unlock', context=context):
            raise RuntimeError("server crashed")
    assert context.commands[-1] == ('tailscale', 'logout')


def test_failed_logout_is_not_fatal():
    context = FakeContext(results={('tailscale', 'logout'): SimpleNamespace(succeeded=False)})
    node = TailscaleNode(hostname='nas-unlock', context=context, joined=True)
    node.logout()
    assert node.joined


def test_join_requires_tailscale_program():
    context = FakeContext(programs=('zfs',))
    with pytest.raises(MissingProgramError):
        TailscaleNode(hostname='nas-unlock', context=context).join()
    assert context.commands == []


def test_find_address():
    context = FakeContext(outputs={('tailscale', 'ip', '-4'): "100.101.102.103\n"})
    assert TailscaleNode(hostname='nas-unlock', context=context).find_address() == '100.101.102.103'


def test_find_address_without_address():
    context = FakeContext(outputs={('tailscale', 'ip', '-4'): ""})
    with pytest.raises(OverlayError):
        TailscaleNode(hostname='nas-unlock', context=context).find_address()
