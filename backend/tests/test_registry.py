"""Tests for the session registry and session state transitions."""
import threading
from unittest.mock import MagicMock

from pyrunner.engine.registry import SessionRegistry
from pyrunner.engine.session import ExecutionHandle, Session, SessionState


def _handle(tmp_path):
    return ExecutionHandle(process=MagicMock(pid=1234), workspace_dir=tmp_path, emit=lambda e: None)


class TestSessionRegistry:
    def test_put_and_get(self, tmp_path):
        reg = SessionRegistry()
        handle = _handle(tmp_path)
        reg.put("s1", handle)
        assert reg.get("s1") is handle
        assert "s1" in reg
        assert len(reg) == 1

    def test_get_missing(self):
        assert SessionRegistry().get("nope") is None

    def test_remove(self, tmp_path):
        reg = SessionRegistry()
        reg.put("s1", _handle(tmp_path))
        reg.remove("s1")
        assert reg.get("s1") is None
        assert "s1" not in reg

    def test_remove_is_idempotent(self, tmp_path):
        reg = SessionRegistry()
        reg.put("s1", _handle(tmp_path))
        reg.remove("s1")
        reg.remove("s1")  # no error
        reg.remove("never-added")
        assert len(reg) == 0

    def test_pop_returns_handle_once(self, tmp_path):
        reg = SessionRegistry()
        handle = _handle(tmp_path)
        reg.put("s1", handle)
        assert reg.pop("s1") is handle
        assert reg.pop("s1") is None

    def test_ids_snapshot(self, tmp_path):
        reg = SessionRegistry()
        reg.put("a", _handle(tmp_path))
        reg.put("b", _handle(tmp_path))
        ids = reg.ids()
        reg.remove("a")
        assert sorted(ids) == ["a", "b"]
        assert reg.ids() == ["b"]

    def test_concurrent_pop_single_winner(self, tmp_path):
        """Only one of many racing threads gets the handle."""
        reg = SessionRegistry()
        reg.put("s1", _handle(tmp_path))
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(reg.pop("s1"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=2.0)

        assert sum(r is not None for r in results) == 1


class TestSessionState:
    def test_initial_state_idle(self, tmp_path):
        s = Session(tmp_path)
        assert s.state == SessionState.IDLE
        assert not s.is_running

    def test_workspace_derived_from_id(self, tmp_path):
        s = Session(tmp_path, session_id="abc")
        assert s.id == "abc"
        assert s.workspace_dir == tmp_path / "abc"

    def test_ids_are_unique(self, tmp_path):
        assert Session(tmp_path).id != Session(tmp_path).id

    def test_transition(self, tmp_path):
        s = Session(tmp_path)
        assert s.transition(SessionState.IDLE, SessionState.RUNNING)
        assert s.is_running

    def test_transition_from_wrong_state(self, tmp_path):
        s = Session(tmp_path)
        assert not s.transition(SessionState.RUNNING, SessionState.TERMINATING)
        assert s.state == SessionState.IDLE

    def test_only_first_teardown_claims(self, tmp_path):
        s = Session(tmp_path)
        s.transition(SessionState.IDLE, SessionState.RUNNING)
        assert s.transition(SessionState.RUNNING, SessionState.TERMINATING)
        assert not s.transition(SessionState.RUNNING, SessionState.TERMINATING)
        assert s.transition(SessionState.TERMINATING, SessionState.IDLE)


class TestExecutionHandle:
    def test_cancel_tasks_keeps_caller(self, tmp_path):
        handle = _handle(tmp_path)
        timer, reader, keep = MagicMock(), MagicMock(), MagicMock()
        handle.timer = timer
        handle.tasks = [reader, keep]
        handle.cancel_tasks(keep=keep)
        timer.cancel.assert_called_once()
        reader.cancel.assert_called_once()
        keep.cancel.assert_not_called()

    def test_alive_follows_returncode(self, tmp_path):
        handle = _handle(tmp_path)
        handle.process.returncode = None
        assert handle.alive
        handle.process.returncode = 0
        assert not handle.alive
