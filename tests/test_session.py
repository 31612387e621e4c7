import asyncio
import threading
import time
from concurrent.futures import ThreadPoolExecutor

from humanfriendly.terminal import ansi_wrap

from tailscale_remote_unlock import VolumeError
from tailscale_remote_unlock.session import (
    BANNER,
    PASSWORD_PROMPT,
    STATUS_MARKER,
    CompletionSignal,
    SessionState,
    UnlockSession,
    format_volumes,
)

from conftest import FakeProvider, FakeTerminal

R = SessionState.RENDERING
P = SessionState.PROMPTING
T = SessionState.RETRYING
B = SessionState.BULK_UNLOCKING
C = SessionState.COMPLETED
A = SessionState.ABORTED


def make_session(provider, inputs=(), completion=None):
    terminal = FakeTerminal(inputs)
    session = UnlockSession(
        provider=provider,
        terminal=terminal,
        completion=completion or CompletionSignal(),
    )
    return session, terminal


def status_line(name, locked):
    return u"%s %s\n" % (ansi_wrap(STATUS_MARKER, color='red' if locked else 'green'), name)


def test_unlock_two_volumes_with_two_passwords():
    provider = FakeProvider({'A': True, 'B': True}, keys={'A': 'p1', 'B': 'p2'})
    session, terminal = make_session(provider, ['p1', 'p2'])
    assert asyncio.run(session.run()) == C
    assert session.history == [R, P, B, R, P, B, R, C]
    assert session.completion.is_set()
    assert terminal.prompts == [PASSWORD_PROMPT, PASSWORD_PROMPT]
    text = terminal.text
    assert text.startswith(BANNER)
    first_render = text.index(status_line('A', True))
    assert text.index(status_line('B', True)) > first_render
    second_render = text.index(status_line('A', False))
    assert text.index(status_line('B', True), second_render) > second_render
    assert text.count("Unlocked 1 volume.") == 2
    assert "All volumes are unlocked." in text


def test_empty_password_is_rejected_locally():
    provider = FakeProvider({'A': True}, keys={'A': 'p1'})
    session, terminal = make_session(provider, [''])
    assert asyncio.run(session.run()) == A
    assert session.history == [R, P, T, P, A]
    assert provider.attempts == []
    assert "Empty password. Please try again." in terminal.text
    assert not session.completion.is_set()


def test_no_volumes_completes_without_prompting():
    session, terminal = make_session(FakeProvider({}))
    assert asyncio.run(session.run()) == C
    assert session.history == [R, C]
    assert terminal.prompts == []
    assert "All volumes are unlocked." in terminal.text
    assert session.completion.is_set()


def test_wrong_password_retries():
    provider = FakeProvider({'A': True}, keys={'A': 'p1'})
    session, terminal = make_session(provider, ['nope', 'p1'])
    assert asyncio.run(session.run()) == C
    assert session.history == [R, P, B, T, P, B, R, C]
    assert "Invalid password. Please try again." in terminal.text


def test_operational_error_keeps_session_alive():
    provider = FakeProvider({'A': True}, keys={'A': 'p1'}, failures={'A': VolumeError("dataset is busy")})
    session, terminal = make_session(provider, ['p1'])
    assert asyncio.run(session.run()) == A
    assert session.history == [R, P, B, P, A]
    assert "Error: dataset is busy" in terminal.text
    assert session.password is None


def test_listing_error_aborts_session():
    provider = FakeProvider({'A': True})
    provider.list_error = VolumeError("zfs get failed")
    session, terminal = make_session(provider, ['p1'])
    assert asyncio.run(session.run()) == A
    assert session.history == [R, A]
    assert "Error getting encrypted volumes: zfs get failed" in terminal.text
    assert not session.completion.is_set()


def test_end_of_input_aborts_session():
    session, terminal = make_session(FakeProvider({'A': True}))
    assert asyncio.run(session.run()) == A
    assert session.history == [R, P, A]
    assert not session.completion.is_set()


def test_concurrent_sessions_fire_completion_once():
    provider = FakeProvider({})
    completion = CompletionSignal()
    fired = []
    original_fire = completion.fire

    def counting_fire():
        result = original_fire()
        fired.append(result)
        return result

    completion.fire = counting_fire
    sessions = [make_session(provider, completion=completion)[0] for i in range(3)]

    async def scenario():
        return await asyncio.gather(*(session.run() for session in sessions))

    assert asyncio.run(scenario()) == [C, C, C]
    assert sorted(fired) == [False, False, True]


def test_completion_signal_is_set_once_across_threads():
    completion = CompletionSignal()
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda i: completion.fire(), range(32)))
    assert results.count(True) == 1
    assert completion.is_set()


def test_completion_signal_wakes_waiters():
    completion = CompletionSignal()

    async def scenario():
        waiter = asyncio.ensure_future(completion.wait())
        await asyncio.sleep(0)
        assert not waiter.done()
        completion.fire()
        await asyncio.wait_for(waiter, timeout=1)

    asyncio.run(scenario())


def test_completion_signal_fired_from_thread_wakes_waiter():
    completion = CompletionSignal()

    async def scenario():
        timer = threading.Timer(0.1, completion.fire)
        started = time.monotonic()
        timer.start()
        try:
            await asyncio.wait_for(completion.wait(), timeout=3)
        finally:
            timer.join()
        return time.monotonic() - started

    assert asyncio.run(scenario()) < 2
    assert completion.is_set()


def test_format_volumes_sorts_by_name():
    text = format_volumes({'zroot': True, 'bpool': False})
    assert text == status_line('bpool', False) + status_line('zroot', True)


def test_format_volumes_truncates_long_names():
    text = format_volumes({'tank/very/long/dataset': True, 'bpool': False}, width=12)
    assert text == status_line('bpool', False) + status_line(u"tank/very\N{HORIZONTAL ELLIPSIS}", True)


def test_render_uses_terminal_width():
    session, terminal = make_session(FakeProvider({'tank/very/long/dataset': True}))
    terminal.resize(12, 24)
    assert asyncio.run(session.run()) == A
    assert status_line(u"tank/very\N{HORIZONTAL ELLIPSIS}", True) in terminal.text
    assert 'tank/very/long/dataset' not in terminal.text
