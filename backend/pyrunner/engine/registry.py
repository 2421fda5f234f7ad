"""Thread-safe registry of live executions, keyed by session id."""
import threading

from .session import ExecutionHandle


class SessionRegistry:
    """Maps session id -> ExecutionHandle for every execution still running.

    An id is present only while its handle is live; entries are removed by
    the controller's teardown, so the registry never needs closing itself.
    """

    def __init__(self):
        self._handles: dict[str, ExecutionHandle] = {}
        self._lock = threading.Lock()

    def put(self, session_id: str, handle: ExecutionHandle) -> None:
        with self._lock:
            self._handles[session_id] = handle

    def get(self, session_id: str) -> ExecutionHandle | None:
        with self._lock:
            return self._handles.get(session_id)

    def remove(self, session_id: str) -> None:
        """Drop the entry; a missing id is a no-op."""
        with self._lock:
            self._handles.pop(session_id, None)

    def pop(self, session_id: str) -> ExecutionHandle | None:
        with self._lock:
            return self._handles.pop(session_id, None)

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._handles)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)
