"""WebSocket connection handler: one client channel, one session."""
import asyncio
import json
import logging
from typing import Any

from fastapi import WebSocket

from ..engine.controller import ExecutionController, TeardownReason
from ..engine.session import Session
from ..models.schemas import (
    ClientMessage, ConnectedEvent, ErrorEvent, InputMessage, ProtocolError, RunMessage,
    StopMessage, parse_client_message,
)

logger = logging.getLogger(__name__)

# Strong references to cleanup tasks that outlive a cancelled handler
_cleanups: set[asyncio.Task] = set()


class ConnectionHandler:
    """Owns one client channel and the session bound to it.

    Every outbound event goes through a single bounded queue drained by one
    writer task, so events from the process readers, the timer and the
    dispatcher reach the client as one ordered stream, and a full queue makes
    the producers wait.
    """

    def __init__(self, websocket: WebSocket, controller: ExecutionController):
        self.websocket = websocket
        self.controller = controller
        self.session = Session(controller.settings.workspace_root)
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=controller.settings.outbox_size)
        self._closed = False

    async def emit(self, event: dict[str, Any]):
        if self._closed:
            return
        await self._outbox.put(event)

    async def serve(self):
        await self.websocket.accept()
        logger.info("Client connected (session %s)", self.session.id)
        writer = asyncio.create_task(self._write_loop())
        await self.emit(ConnectedEvent(session_id=self.session.id).to_wire())
        try:
            while True:
                message = await self.websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                await self.dispatch(raw if raw is not None else message.get("bytes", b""))
        finally:
            logger.info("Client disconnected (session %s)", self.session.id)
            self._discard_outbox()
            writer.cancel()
            # Cleanup must finish even if this task is being cancelled
            cleanup = asyncio.create_task(self.close())
            _cleanups.add(cleanup)
            cleanup.add_done_callback(_cleanups.discard)
            await asyncio.shield(cleanup)

    async def dispatch(self, raw: str | bytes):
        try:
            message = parse_client_message(raw)
            await self._handle(message, raw)
        except ProtocolError as e:
            logger.warning("Malformed message from session %s: %s", self.session.id, e)
            await self.emit(ErrorEvent(message="Error processing your request").to_wire())
        except Exception:
            logger.exception("Error processing message for session %s", self.session.id)
            await self.emit(ErrorEvent(message="Error processing your request").to_wire())

    async def _handle(self, message: ClientMessage | None, raw: str | bytes):
        if message is None:
            logger.warning("Unknown message type from session %s: %.200r", self.session.id, raw)
        elif isinstance(message, RunMessage):
            await self.controller.start(self.session, message.language, message.code, self.emit)
        elif isinstance(message, InputMessage):
            await self.controller.deliver_input(self.session, message.input, self.emit)
        elif isinstance(message, StopMessage):
            logger.info("Received stop request for session %s", self.session.id)
            stopped = await self.controller.teardown(self.session, TeardownReason.STOP)
            if not stopped:
                logger.debug("Nothing to stop for session %s", self.session.id)

    async def close(self):
        """Terminal cleanup: kill any running execution, then drop the workspace."""
        await self.controller.teardown(self.session, TeardownReason.DISCONNECT)
        await self.controller.remove_workspace(self.session)

    def _discard_outbox(self):
        """Stop accepting events and drop the backlog, waking blocked producers."""
        self._closed = True
        while not self._outbox.empty():
            self._outbox.get_nowait()

    async def _write_loop(self):
        try:
            while True:
                event = await self._outbox.get()
                await self.websocket.send_text(json.dumps(event))
        except Exception as e:
            # Peer is gone; serve() takes care of the session
            logger.debug("Dropping events for session %s: %s", self.session.id, e)
        finally:
            self._discard_outbox()
