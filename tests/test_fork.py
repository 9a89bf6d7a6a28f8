import sys

import pytest

from conftest import ATTACKER, BRIDGE
from fakechain import FakeBackend, FakeChain
from reinit_probe.errors import ForkUnavailableError, TransportError
from reinit_probe.fork import AnvilBackend, ForkSessionManager


def test_open_resolves_latest_to_head(manager, endpoint):
    session = manager.open(endpoint, None)
    try:
        assert session.block_height == 1000
        assert session.block_tag == hex(1000)
    finally:
        manager.close(session)


def test_open_beyond_head_fails_before_any_fork(manager, backend, endpoint):
    with pytest.raises(ForkUnavailableError) as info:
        manager.open(endpoint, 1001)
    assert info.value.block_height == 1001
    assert backend.started == []


def test_open_on_non_archive_node_fails(endpoint):
    chain = FakeChain(head=1000, archive_depth=128)
    backend = FakeBackend(chain)
    manager = ForkSessionManager(backend, upstream_factory=lambda ep: chain.client())
    with pytest.raises(ForkUnavailableError) as info:
        manager.open(endpoint, 500)
    assert "missing trie node" in str(info.value)
    assert backend.started == []
    # recent blocks are still fine
    with manager.session(endpoint, 900) as session:
        assert session.block_height == 900


def test_close_is_idempotent(manager, backend, endpoint):
    session = manager.open(endpoint, 1000)
    manager.close(session)
    manager.close(session)
    assert session.closed
    assert len(backend.stopped) == 1
    assert manager.open_sessions == 0


def test_session_context_closes_on_error(manager, backend, endpoint):
    with pytest.raises(RuntimeError):
        with manager.session(endpoint, 1000) as session:
            raise RuntimeError("boom")
    assert session.closed
    assert len(backend.stopped) == 1


def test_closed_session_refuses_overlay_writes(manager, endpoint):
    session = manager.open(endpoint, 1000)
    manager.close(session)
    with pytest.raises(ForkUnavailableError):
        session.set_balance(ATTACKER, 1)
    with pytest.raises(TransportError):
        session.client.read_code(BRIDGE)


def test_sessions_at_same_height_read_identically(manager, endpoint):
    with manager.session(endpoint, 1000) as a, manager.session(endpoint, 1000) as b:
        for session in (a, b):
            assert session.client.read_code(BRIDGE, "latest") == a.client.read_code(BRIDGE, 1000)
        assert [a.client.read_storage_slot(BRIDGE, s) for s in range(3)] == \
               [b.client.read_storage_slot(BRIDGE, s) for s in range(3)]
        assert a.session_id != b.session_id


def test_overlay_writes_stay_in_their_session(manager, chain, endpoint):
    with manager.session(endpoint, 1000) as a, manager.session(endpoint, 1000) as b:
        a.set_storage(BRIDGE, 1, b"\x01")
        a.set_code(BRIDGE, b"")
        assert a.client.read_code(BRIDGE) == b""
        assert a.client.read_storage_slot(BRIDGE, 1) == (1).to_bytes(32, "big")
        assert b.client.read_code(BRIDGE) != b""
        assert b.client.read_storage_slot(BRIDGE, 1) == (0xDEAD).to_bytes(32, "big")
    upstream = chain.client()
    assert upstream.read_code(BRIDGE) != b""
    assert upstream.read_storage_slot(BRIDGE, 1) == (0xDEAD).to_bytes(32, "big")


def test_close_all(manager, endpoint):
    sessions = [manager.open(endpoint, 1000) for _ in range(3)]
    assert manager.open_sessions == 3
    manager.close_all()
    assert all(s.closed for s in sessions)
    assert manager.open_sessions == 0


def test_anvil_command_line(endpoint):
    cmd = AnvilBackend(binary="anvil").command(endpoint, 123, 9545)
    assert cmd[:5] == ["anvil", "--fork-url", endpoint.url, "--fork-block-number", "123"]
    assert "--port" in cmd and "9545" in cmd
    assert cmd[-2:] == ["--fork-header", "Authorization: Bearer secret"]


def test_missing_anvil_binary_is_fork_unavailable(endpoint):
    backend = AnvilBackend(binary="definitely-not-anvil-xyz")
    with pytest.raises(ForkUnavailableError):
        backend.start(endpoint, 1)


def fake_anvil(tmp_path, body):
    path = tmp_path / "anvil"
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(0o755)
    return str(path)


@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
def test_anvil_exit_reports_its_stderr(tmp_path, endpoint):
    binary = fake_anvil(tmp_path, 'echo "Error: failed to get fork block number" >&2\nexit 1')
    with pytest.raises(ForkUnavailableError, match="code 1: Error: failed to get fork block number"):
        AnvilBackend(binary=binary, retries=0).start(endpoint, 1)


@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
def test_chatty_anvil_is_stopped_after_startup_timeout(tmp_path, endpoint):
    # far more stderr than a pipe buffer holds
    binary = fake_anvil(tmp_path, "head -c 200000 /dev/zero | tr '\\0' x >&2\nexec sleep 30")
    backend = AnvilBackend(binary=binary, startup_timeout=0.5, retries=0)
    with pytest.raises(ForkUnavailableError, match="did not come up"):
        backend.start(endpoint, 1)
