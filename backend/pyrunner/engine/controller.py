"""Execution controller: spawn user code, stream its output, enforce the time
limit and tear everything down exactly once.

Every execution is a small group of asyncio tasks owned by its
ExecutionHandle: one reader per output stream, an exit watcher, and a timer
task. Four independent triggers end an execution (natural exit, timeout,
explicit stop, client disconnect) and all of them funnel into ``teardown``.
Only the trigger that wins the ``RUNNING -> TERMINATING`` transition performs
side effects; the others return immediately.
"""
import asyncio
import codecs
import logging
import os
import signal
from enum import Enum
from pathlib import Path

import psutil

from ..config import Settings
from ..models.schemas import (
    ErrorEvent, InputProcessedEvent, OutputEvent, StartedEvent, StoppedEvent,
    TerminatedEvent,
)
from . import workspace
from .registry import SessionRegistry
from .session import EmitCallback, ExecutionHandle, Session, SessionState

logger = logging.getLogger(__name__)

REJECTED_EXIT_CODE = 1
TIMEOUT_EXIT_CODE = 124
EXIT_POLL_SECONDS = 0.05


class TeardownReason(str, Enum):
    NATURAL = "natural"
    TIMEOUT = "timeout"
    STOP = "stop"
    DISCONNECT = "disconnect"


def _ends_line(piece: str) -> bool:
    return piece.splitlines() != [piece]


async def _exited(process: asyncio.subprocess.Process) -> int:
    """Wait for the child itself to exit and return its exit code.

    ``Process.wait()`` only returns once the output pipes are closed too,
    which never happens while a background descendant still holds them.
    """
    waiter = asyncio.ensure_future(process.wait())
    try:
        while process.returncode is None:
            await asyncio.wait([waiter], timeout=EXIT_POLL_SECONDS)
    finally:
        waiter.cancel()
    return process.returncode


class ExecutionController:
    """Binds sessions to at most one child process each."""

    def __init__(self, registry: SessionRegistry, settings: Settings):
        self.registry = registry
        self.settings = settings

    # -- start ----------------------------------------------------------------

    async def start(
        self, session: Session, language: str, code: str, emit: EmitCallback,
    ) -> bool:
        """Materialize ``code`` in the session workspace and run it.

        Emits ``started`` on success, or ``error`` + ``terminated(1)`` when the
        language is unsupported or the workspace/spawn fails. A session that
        is not idle is rejected with ``error`` and its running execution is
        left alone. Callers dispatch one message at a time per session, so
        the idle check and the final transition cannot interleave with
        another start.
        """
        target = self.settings.supported_language
        if language.lower() != target.lower():
            await emit(ErrorEvent(
                message=f"Only {target.capitalize()} execution is currently supported.",
            ).to_wire())
            await emit(TerminatedEvent(exit_code=REJECTED_EXIT_CODE).to_wire())
            return False

        if session.state != SessionState.IDLE:
            await emit(ErrorEvent(
                message="Code is already running. Stop it before starting a new run.",
            ).to_wire())
            return False

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None, workspace.materialize,
                session.workspace_dir, self.settings.entry_filename, code,
            )
            process = await self._spawn(session.workspace_dir)
        except (OSError, ValueError) as e:
            logger.error("Error executing code for session %s: %s", session.id, e)
            await emit(ErrorEvent(message=f"Error executing code: {e}").to_wire())
            await emit(TerminatedEvent(exit_code=REJECTED_EXIT_CODE).to_wire())
            return False

        handle = ExecutionHandle(
            process=process, workspace_dir=session.workspace_dir, emit=emit,
        )
        self.registry.put(session.id, handle)
        session.transition(SessionState.IDLE, SessionState.RUNNING)
        await emit(StartedEvent().to_wire())

        handle.timer = asyncio.create_task(self._expire(session, process))
        readers = [
            asyncio.create_task(self._pump(process.stdout, emit, stderr=False)),
            asyncio.create_task(self._pump(process.stderr, emit, stderr=True)),
        ]
        handle.tasks = [*readers, asyncio.create_task(self._watch(session, process, readers))]
        logger.info("Started execution for session %s (pid %s)", session.id, process.pid)
        return True

    async def _spawn(self, workspace_dir: Path) -> asyncio.subprocess.Process:
        env = {**os.environ, "PYTHONUNBUFFERED": "1", "PYTHONIOENCODING": "utf-8"}
        # Own process group, so teardown can kill everything the code starts
        return await asyncio.create_subprocess_exec(
            self.settings.python_path, "-u", self.settings.entry_filename,
            cwd=workspace_dir,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            start_new_session=True,
        )

    # -- process tasks --------------------------------------------------------

    async def _pump(self, stream: asyncio.StreamReader, emit: EmitCallback, stderr: bool):
        """Forward one stream to the client until EOF, one event per line.

        A partial line is held back until its newline arrives. If nothing
        follows within ``output_flush_ms`` (e.g. an ``input()`` prompt), it
        is sent as is. Each event waits for room in the client's outbox, so a
        slow client slows the child down instead of piling up events.
        """
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        size = self.settings.read_chunk_size
        flush_delay = self.settings.output_flush_ms / 1000
        pending = ""
        while True:
            try:
                if pending:
                    chunk = await asyncio.wait_for(stream.read(size), timeout=flush_delay)
                else:
                    chunk = await stream.read(size)
            except asyncio.TimeoutError:
                await self._forward(emit, pending, stderr)
                pending = ""
                continue

            lines = (pending + decoder.decode(chunk, final=not chunk)).splitlines(keepends=True)
            pending = ""
            if chunk and lines and not _ends_line(lines[-1]) and len(lines[-1]) < size:
                pending = lines.pop()
            for line in lines:
                await self._forward(emit, line, stderr)
            if not chunk:
                return

    @staticmethod
    async def _forward(emit: EmitCallback, text: str, stderr: bool):
        if stderr:
            await emit(ErrorEvent(data=text, stream="stderr").to_wire())
        else:
            await emit(OutputEvent(data=text).to_wire())

    async def _watch(
        self, session: Session, process: asyncio.subprocess.Process,
        readers: list[asyncio.Task],
    ):
        exit_code = await _exited(process)
        # Give the readers a moment to flush; a background child that
        # inherited the pipes may hold them open indefinitely
        _, still_open = await asyncio.wait(readers, timeout=self.settings.drain_grace_seconds)
        if still_open:
            logger.info(
                "Output of session %s still open after pid %s exited", session.id, process.pid,
            )
        await self.teardown(session, TeardownReason.NATURAL, exit_code=exit_code)

    async def _expire(self, session: Session, process: asyncio.subprocess.Process):
        await asyncio.sleep(self.settings.execution_timeout)
        if process.returncode is not None:
            # Exited in time; the watcher is still flushing its output
            return
        logger.warning(
            "Execution timeout reached (%sms) for session %s",
            self.settings.execution_timeout_ms, session.id,
        )
        await self.teardown(session, TeardownReason.TIMEOUT)

    # -- input ----------------------------------------------------------------

    async def deliver_input(self, session: Session, text: str, emit: EmitCallback) -> bool:
        """Write one line to the child's stdin without waiting for it to be read.

        The write is buffered by the pipe transport. Input is refused once
        more than ``stdin_buffer_limit`` bytes are waiting for the child.
        """
        handle = self.registry.get(session.id)
        if handle is None or not session.is_running:
            await emit(ErrorEvent(
                message="No active code execution. Please run your code first.",
            ).to_wire())
            return False

        stdin = handle.process.stdin
        try:
            if stdin is None or stdin.is_closing():
                raise BrokenPipeError("standard input is closed")
            if stdin.transport.get_write_buffer_size() > self.settings.stdin_buffer_limit:
                raise BlockingIOError("process is not reading its input")
            stdin.write((text + "\n").encode("utf-8"))
            if stdin.is_closing():
                # The write hit a pipe the child already closed
                raise BrokenPipeError("standard input is closed")
        except (OSError, ValueError) as e:
            logger.info("Error sending input to session %s: %s", session.id, e)
            await emit(ErrorEvent(message=f"Error sending input: {e}").to_wire())
            return False

        await emit(InputProcessedEvent(success=True).to_wire())
        return True

    # -- teardown -------------------------------------------------------------

    async def teardown(
        self, session: Session, reason: TeardownReason, exit_code: int | None = None,
    ) -> bool:
        """End the session's execution. Safe to call any number of times.

        Returns True only for the call that actually tore the execution down.
        """
        if not session.transition(SessionState.RUNNING, SessionState.TERMINATING):
            return False

        try:
            handle = self.registry.get(session.id)
            if handle is None:
                return False
            # Nothing below yields until the entry is gone from the registry
            handle.cancel_tasks(keep=asyncio.current_task())
            self._kill(handle)
            self.registry.remove(session.id)
            logger.info(
                "Tore down execution for session %s (reason=%s)", session.id, reason.value,
            )

            await self._reap(handle)
            await self._notify(handle, reason, exit_code)
            return True
        finally:
            session.transition(SessionState.TERMINATING, SessionState.IDLE)

    def _kill(self, handle: ExecutionHandle) -> None:
        """Kill the child's process group plus any descendant that left it."""
        children = []
        if handle.alive:
            try:
                children = psutil.Process(handle.pid).children(recursive=True)
            except psutil.Error as e:
                logger.debug("Could not list children of pid %s: %s", handle.pid, e)
        try:
            os.killpg(handle.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            logger.debug("Process group %s already gone", handle.pid)
        for child in children:
            try:
                child.kill()
            except psutil.Error as e:
                logger.debug("Could not kill child %s of pid %s: %s", child.pid, handle.pid, e)
        if handle.alive:
            try:
                handle.process.kill()
            except ProcessLookupError:
                # Exited between the liveness check and the signal
                logger.debug("Process %s already exited", handle.pid)

    async def _reap(self, handle: ExecutionHandle) -> None:
        try:
            await asyncio.wait_for(
                _exited(handle.process), timeout=self.settings.kill_grace_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Process %s did not exit after kill", handle.pid)

    async def _notify(
        self, handle: ExecutionHandle, reason: TeardownReason, exit_code: int | None,
    ) -> None:
        emit = handle.emit
        if reason is TeardownReason.NATURAL:
            if exit_code is None:
                exit_code = handle.process.returncode or 0
            await emit(TerminatedEvent(exit_code=exit_code).to_wire())
        elif reason is TeardownReason.TIMEOUT:
            await emit(ErrorEvent(
                data=f"Execution timed out after {self.settings.execution_timeout:g} seconds.",
            ).to_wire())
            await emit(TerminatedEvent(exit_code=TIMEOUT_EXIT_CODE).to_wire())
        elif reason is TeardownReason.STOP:
            await emit(StoppedEvent().to_wire())
        # DISCONNECT: no channel left to notify

    # -- workspace / lifecycle ------------------------------------------------

    async def remove_workspace(self, session: Session) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, workspace.remove, session.workspace_dir)

    async def shutdown(self) -> None:
        """Kill whatever is still running when the service stops."""
        loop = asyncio.get_running_loop()
        for session_id in self.registry.ids():
            handle = self.registry.pop(session_id)
            if handle is None:
                continue
            handle.cancel_tasks(keep=asyncio.current_task())
            self._kill(handle)
            await self._reap(handle)
            await loop.run_in_executor(None, workspace.remove, handle.workspace_dir)
            logger.info("Killed execution for session %s at shutdown", session_id)
