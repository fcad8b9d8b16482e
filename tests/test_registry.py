"""Tests for shellbridge.session.registry.SessionRegistry."""

from __future__ import annotations

import pytest

from shellbridge.errors import SpawnError, TerminationReason
from shellbridge.session.registry import SessionRegistry
from shellbridge.session.state import SessionMode, SessionState

from conftest import FakeSpawner, RecordingHandle


class TestOpenSession:
    def test_allocates_distinct_channel_ids(self, spawner: FakeSpawner) -> None:
        registry = SessionRegistry(spawner=spawner)
        a = registry.open_session(RecordingHandle())
        b = registry.open_session(RecordingHandle())
        assert a.channel_id != b.channel_id
        assert len(registry) == 2
        assert registry.get(a.channel_id) is a  # type: ignore[arg-type]

    def test_session_is_idle_interactive(self, spawner: FakeSpawner) -> None:
        registry = SessionRegistry(spawner=spawner)
        session = registry.open_session(RecordingHandle())
        assert session.mode is SessionMode.INTERACTIVE
        assert session.state is SessionState.IDLE
        assert spawner.spawned == []


class TestOpenSubsystem:
    def test_replaces_interactive_session(
        self, spawner: FakeSpawner, handle: RecordingHandle
    ) -> None:
        registry = SessionRegistry(spawner=spawner, subsystems={"shell": ["/bin/cat"]})
        interactive = registry.open_session(handle)
        cid = interactive.channel_id
        assert cid is not None

        session = registry.open_subsystem(cid, "shell", handle)
        assert session.mode is SessionMode.SUBSYSTEM
        assert session.state is SessionState.RUNNING
        assert session.channel_id == cid
        assert registry.get(cid) is session
        assert interactive.closed
        assert handle.calls == []
        assert spawner.last.executable == "/bin/cat"

    def test_unknown_name(self, spawner: FakeSpawner, handle: RecordingHandle) -> None:
        registry = SessionRegistry(spawner=spawner, subsystems={"shell": None})
        assert registry.has_subsystem("shell")
        assert not registry.has_subsystem("sftp")
        with pytest.raises(KeyError):
            registry.open_subsystem(1, "sftp", handle)

    def test_spawn_failure_keeps_previous(self, handle: RecordingHandle) -> None:
        registry = SessionRegistry(
            spawner=FakeSpawner(fail=True), subsystems={"shell": ["/bin/cat"]}
        )
        interactive = registry.open_session(handle)
        cid = interactive.channel_id
        assert cid is not None
        with pytest.raises(SpawnError):
            registry.open_subsystem(cid, "shell", handle)
        assert registry.get(cid) is interactive
        assert not interactive.closed


class TestTeardown:
    def test_close_session(self, spawner: FakeSpawner, handle: RecordingHandle) -> None:
        registry = SessionRegistry(spawner=spawner)
        session = registry.open_session(handle)
        assert session.channel_id is not None
        registry.close_session(session.channel_id)
        assert session.closed
        assert session.termination_reason is TerminationReason.TEARDOWN
        assert registry.get(session.channel_id) is None
        assert len(registry) == 0

    def test_close_unknown_is_safe(self, spawner: FakeSpawner) -> None:
        SessionRegistry(spawner=spawner).close_session(12345)

    def test_cleanup_kills_processes(self, spawner: FakeSpawner) -> None:
        registry = SessionRegistry(spawner=spawner, subsystems={"shell": ["/bin/cat"]})
        first = registry.open_session(RecordingHandle())
        second = registry.open_session(RecordingHandle())
        assert first.channel_id is not None and second.channel_id is not None
        registry.open_subsystem(second.channel_id, "shell", RecordingHandle())

        registry.cleanup()
        assert len(registry) == 0
        assert first.closed
        assert spawner.last.closed == 1

    def test_list_sessions(self, spawner: FakeSpawner) -> None:
        registry = SessionRegistry(spawner=spawner)
        session = registry.open_session(RecordingHandle())
        assert registry.list_sessions() == [
            {
                "channel_id": session.channel_id,
                "mode": "interactive",
                "state": "idle",
                "subsystem": False,
            }
        ]
