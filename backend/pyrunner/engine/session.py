"""Per-connection session state and the handle of its running execution."""
import asyncio
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

EmitCallback = Callable[[dict[str, Any]], Awaitable[None]]


class SessionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    TERMINATING = "terminating"


class Session:
    """One client's execution context; holds at most one execution at a time."""

    def __init__(self, workspace_root: Path, session_id: str | None = None):
        self.id = session_id or str(uuid.uuid4())
        self.workspace_dir = Path(workspace_root) / self.id
        self._state = SessionState.IDLE
        self._lock = threading.Lock()

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def is_running(self) -> bool:
        return self.state == SessionState.RUNNING

    def transition(self, expected: SessionState, new: SessionState) -> bool:
        """Move to ``new`` only if currently in ``expected``. Returns success."""
        with self._lock:
            if self._state != expected:
                return False
            self._state = new
            return True

    def __repr__(self) -> str:
        return f"Session(id={self.id!r}, state={self.state.value})"


@dataclass
class ExecutionHandle:
    """Live child process plus its timer; exists only while a session runs."""

    process: asyncio.subprocess.Process
    workspace_dir: Path
    emit: EmitCallback
    timer: asyncio.Task | None = None
    tasks: list[asyncio.Task] = field(default_factory=list)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return self.process.returncode is None

    def cancel_tasks(self, keep: asyncio.Task | None = None) -> None:
        """Cancel the timer and stream tasks, except ``keep`` (the caller)."""
        for task in [self.timer, *self.tasks]:
            if task is not None and task is not keep:
                # Cancelling a finished task is a no-op
                task.cancel()
