"""
WebSocket Proxy Session
=======================

A session pairs the accepted client socket with the outbound target socket
and pumps messages between them until either side terminates.

Each side is wrapped in a leg exposing the same small interface:

    state                          SocketState (CONNECTING/OPEN/CLOSING/CLOSED)
    frames()                       async iterator of Frame; returns on a
                                   normal close, raises on a connection error
    send(frame)                    forward one message, preserving text/binary
    close(code=None, reason="")    idempotent close; None means default code

Two forwarding tasks run per session, one per direction, so message order
is strict FIFO within a direction. A message arriving while its destination
is not OPEN is dropped.

Closure protocol (first trigger wins, the other forwarder is cancelled):

    client closes (any code)   -> close target with default code
    client connection error    -> close target with default code
    target closes (any code)   -> close client with default code
    target connection error    -> close client with 1011 "Target connection error"
"""

import asyncio
import logging
from typing import AsyncIterator, Optional

from fastapi import WebSocket, WebSocketDisconnect, status
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, ConnectionClosedOK

from ..models import Frame, SocketState

logger = logging.getLogger(__name__)

TARGET_ERROR_REASON = "Target connection error"


# ============================================================================
# Legs
# ============================================================================

class ClientLeg:
    """The inbound socket accepted by the WebSocket listener."""

    name = "client"

    def __init__(self, websocket: WebSocket):
        self._websocket = websocket
        self.state = SocketState.CONNECTING
        self.close_code: Optional[int] = None

    async def accept(self) -> None:
        await self._websocket.accept()
        self.state = SocketState.OPEN

    async def frames(self) -> AsyncIterator[Frame]:
        while True:
            try:
                message = await self._websocket.receive()
            except Exception:
                self.state = SocketState.CLOSED
                raise

            if message["type"] == "websocket.disconnect":
                self.state = SocketState.CLOSED
                self.close_code = message.get("code", status.WS_1000_NORMAL_CLOSURE)
                return

            if message.get("text") is not None:
                yield Frame(payload=message["text"])
            elif message.get("bytes") is not None:
                yield Frame(payload=message["bytes"])

    async def send(self, frame: Frame) -> None:
        try:
            if frame.is_text:
                await self._websocket.send_text(frame.payload)
            else:
                await self._websocket.send_bytes(frame.payload)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug(f"Dropped message for closed client: {e}")

    async def close(self, code: Optional[int] = None, reason: str = "") -> None:
        if self.state is not SocketState.OPEN:
            return

        self.state = SocketState.CLOSING
        try:
            await self._websocket.close(
                code=code or status.WS_1000_NORMAL_CLOSURE,
                reason=reason or None
            )
        except (RuntimeError, OSError) as e:
            logger.debug(f"Client socket already gone while closing: {e}")
        finally:
            self.state = SocketState.CLOSED


class TargetLeg:
    """The outbound connection to the backend WebSocket."""

    name = "target"

    def __init__(self, connection):
        self._connection = connection

    @property
    def state(self) -> SocketState:
        return SocketState[self._connection.state.name]

    @property
    def close_code(self) -> Optional[int]:
        return self._connection.close_code

    async def frames(self) -> AsyncIterator[Frame]:
        while True:
            try:
                message = await self._connection.recv()
            except ConnectionClosedOK:
                return
            except ConnectionClosedError as e:
                # A close frame from the target is a closure, whatever its code
                if e.rcvd is not None:
                    return
                raise

            yield Frame(payload=message)

    async def send(self, frame: Frame) -> None:
        try:
            await self._connection.send(frame.payload)
        except ConnectionClosed as e:
            logger.debug(f"Dropped message for closed target: {e}")

    async def close(self, code: Optional[int] = None, reason: str = "") -> None:
        if code is None:
            await self._connection.close()
        else:
            await self._connection.close(code, reason)


# ============================================================================
# Session
# ============================================================================

class ProxySession:
    """
    Bidirectional relay between one client leg and one target leg.

    Attributes:
        client: Inbound leg
        target: Outbound leg
        label: Client identity used in log lines (certificate CN)
    """

    def __init__(self, client, target, label: str = ""):
        self.client = client
        self.target = target
        self.label = label

    @property
    def live(self) -> bool:
        return self.client.state is SocketState.OPEN and self.target.state is SocketState.OPEN

    async def _forward(self, source, destination) -> None:
        async for frame in source.frames():
            if destination.state is SocketState.OPEN:
                await destination.send(frame)
            else:
                logger.debug(
                    f"Dropping message from {source.name}, {destination.name} is {destination.state.value}",
                    extra={"client_cn": self.label, "message_length": len(frame)}
                )

    async def _source_ended(self, source, error: Optional[BaseException]) -> None:
        if source is self.client:
            if error is not None:
                logger.error(f"Client connection error for {self.label}: {error}")
            else:
                logger.info(
                    f"Client {self.label} disconnected",
                    extra={"close_code": self.client.close_code}
                )
            await self.target.close()
            return

        if error is not None:
            logger.error(f"Target connection error for client {self.label}: {error}")
            await self.client.close(status.WS_1011_INTERNAL_ERROR, TARGET_ERROR_REASON)
        else:
            logger.info(
                f"Target disconnected for client {self.label}",
                extra={"close_code": self.target.close_code}
            )
            await self.client.close()

    async def close(self) -> None:
        """Close whatever is still open on either side."""
        await self.client.close()
        await self.target.close()

    async def run(self) -> None:
        """
        Pump messages until either side closes or fails, then close both.
        """
        pumps = {
            asyncio.create_task(self._forward(self.client, self.target)): self.client,
            asyncio.create_task(self._forward(self.target, self.client)): self.target,
        }

        try:
            done, _ = await asyncio.wait(pumps, return_when=asyncio.FIRST_COMPLETED)

            # Client first when both ended in the same iteration
            for task in sorted(done, key=lambda t: pumps[t] is not self.client):
                error = None if task.cancelled() else task.exception()
                await self._source_ended(pumps[task], error)

        finally:
            for task in pumps:
                task.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
            await self.close()
