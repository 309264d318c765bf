"""
TerminalRelay — bridges client connections to terminal sessions.

Each connection gets its own SessionManager. Inbound frames become
write/resize calls, in arrival order; PTY output and exit events become
outbound frames. A ConnectionRegistry tracks every live connection so the
whole process can shut its sessions down at once.

Usage:
    relay = TerminalRelay(lambda cid: SessionManager(provider, config, cid))
    await relay.handle_connection(transport)   # per connection
    await relay.shutdown(grace=10)              # on process exit
"""

import asyncio
import codecs
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol
from uuid import uuid4

from . import messages
from .logging import get_logger
from .messages import InputMessage, ResizeMessage, parse_client_message
from .session import ExitReason, SessionExit, SessionHandle, SessionManager

logger = get_logger("relay")


class Transport(Protocol):
    """One bidirectional text connection to a client."""

    async def send(self, text: str) -> None:
        ...

    async def receive(self) -> Optional[str]:
        """Next frame from the client, or None once the client has gone."""
        ...

    async def close(self) -> None:
        ...


ManagerFactory = Callable[[str], SessionManager]


def _utf8_decoder():
    return codecs.getincrementaldecoder("utf-8")(errors="replace")


@dataclass
class ConnectionState:
    """
    Per-connection bookkeeping. handle is None until the session is ready.

    inbox holds frames read from the transport, ending with None once the
    client has gone; gone is set at the same moment.
    """
    connection_id: str
    transport: Transport
    manager: SessionManager
    handle: Optional[SessionHandle] = None
    closed: asyncio.Event = field(default_factory=asyncio.Event)
    gone: asyncio.Event = field(default_factory=asyncio.Event)
    inbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    decoder: Any = field(default_factory=_utf8_decoder)


class ConnectionRegistry:
    """
    Every live connection, keyed by connection id.

    Iteration always goes through snapshot(), so connections may come and
    go while a shutdown walks the registry.
    """

    def __init__(self):
        self._states: Dict[str, ConnectionState] = {}

    def add(self, state: ConnectionState) -> None:
        self._states[state.connection_id] = state

    def remove(self, connection_id: str) -> Optional[ConnectionState]:
        return self._states.pop(connection_id, None)

    def get(self, connection_id: str) -> Optional[ConnectionState]:
        return self._states.get(connection_id)

    def snapshot(self) -> List[ConnectionState]:
        return list(self._states.values())

    def clear(self) -> None:
        self._states.clear()

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._states


class TerminalRelay:
    """Serves many concurrent connections, one session each."""

    def __init__(
        self,
        manager_factory: ManagerFactory,
        registry: Optional[ConnectionRegistry] = None,
    ):
        self._manager_factory = manager_factory
        self.registry = registry if registry is not None else ConnectionRegistry()

    async def handle_connection(
        self, transport: Transport, connection_id: Optional[str] = None
    ) -> None:
        """
        Run one connection from open to close.

        Returns once the client disconnects or the session ends; by then the
        session has been torn down and the connection forgotten.
        """
        connection_id = connection_id or uuid4().hex[:12]
        state = ConnectionState(
            connection_id=connection_id,
            transport=transport,
            manager=self._manager_factory(connection_id),
        )
        self.registry.add(state)
        extra = {"connection_id": connection_id}
        logger.info("New connection established", extra=extra)

        reader = asyncio.create_task(self._read_transport(state))
        try:
            await self._send(state, messages.status("Initializing sandbox..."))
            try:
                state.handle = await self._create_session(state)
            except Exception as e:
                if state.gone.is_set():
                    logger.info("Client left before the sandbox was ready", extra=extra)
                    return
                logger.error(f"Error creating sandbox: {e}", extra=extra)
                await self._send(state, messages.error(f"Failed to create sandbox: {e}"))
                await self._close(state)
                return

            await self._send(state, messages.ready())
            logger.info("Sandbox ready for input", extra=extra)
            await self._serve(state)
        finally:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
            if state.handle is not None:
                await state.handle.kill()
            self.registry.remove(connection_id)
            logger.info("Connection closed", extra=extra)

    async def _create_session(self, state: ConnectionState) -> SessionHandle:
        """Run manager.create(), killing it early if the client goes away first."""
        creating = asyncio.create_task(
            state.manager.create(
                on_output=lambda chunk: self._on_output(state, chunk),
                on_exit=lambda session_exit: self._on_exit(state, session_exit),
            )
        )
        gone = asyncio.create_task(state.gone.wait())
        try:
            await asyncio.wait({creating, gone}, return_when=asyncio.FIRST_COMPLETED)
            if not creating.done():
                logger.info(
                    "Client disconnected during sandbox creation",
                    extra={"connection_id": state.connection_id},
                )
                await state.manager.kill()
            return await creating
        finally:
            gone.cancel()
            if not creating.done():
                creating.cancel()
            await asyncio.gather(gone, creating, return_exceptions=True)

    async def _read_transport(self, state: ConnectionState) -> None:
        extra = {"connection_id": state.connection_id}
        try:
            while True:
                try:
                    raw = await state.transport.receive()
                except Exception as e:
                    logger.warning(f"Transport error: {e}", extra=extra)
                    return
                if raw is None:
                    return
                state.inbox.put_nowait(raw)
        finally:
            state.gone.set()
            state.inbox.put_nowait(None)

    async def _serve(self, state: ConnectionState) -> None:
        receiver = asyncio.create_task(self._receive_loop(state))
        closed = asyncio.create_task(state.closed.wait())
        try:
            await asyncio.wait({receiver, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            receiver.cancel()
            closed.cancel()
            await asyncio.gather(receiver, closed, return_exceptions=True)

    async def _receive_loop(self, state: ConnectionState) -> None:
        extra = {"connection_id": state.connection_id}
        while True:
            raw = await state.inbox.get()
            if raw is None:
                return

            try:
                msg = parse_client_message(raw)
            except Exception as e:
                logger.warning(f"Dropping unparseable frame: {e}", extra=extra)
                continue
            if msg is None:
                logger.debug("Ignoring unrecognised frame", extra=extra)
                continue

            try:
                if isinstance(msg, InputMessage):
                    await state.handle.write(msg.data)
                elif isinstance(msg, ResizeMessage):
                    await state.handle.resize(msg.cols, msg.rows)
            except Exception as e:
                logger.error(f"Error processing message: {e}", extra=extra, exc_info=True)

    async def _on_output(self, state: ConnectionState, chunk: bytes) -> None:
        text = state.decoder.decode(chunk)
        if text:
            await self._send(state, messages.output(text))

    async def _on_exit(self, state: ConnectionState, session_exit: SessionExit) -> None:
        tail = state.decoder.decode(b"", final=True)
        if tail:
            await self._send(state, messages.output(tail))

        logger.info(
            f"Session ended ({session_exit.reason.value})",
            extra={"connection_id": state.connection_id, "exit_code": session_exit.code},
        )
        if session_exit.reason == ExitReason.TIMEOUT:
            await self._send(state, messages.status("Session timed out due to inactivity"))
        elif session_exit.reason == ExitReason.ERROR:
            message = "Terminal session failed"
            if session_exit.detail:
                message += f": {session_exit.detail}"
            await self._send(state, messages.error(message))
        else:
            await self._send(
                state, messages.status(f"Process exited with code {session_exit.code}")
            )
        await self._close(state)

    async def _send(self, state: ConnectionState, text: str) -> None:
        if state.closed.is_set():
            return
        try:
            await state.transport.send(text)
        except Exception as e:
            # The receive side will see the disconnect and clean up
            logger.debug(f"Send failed: {e}", extra={"connection_id": state.connection_id})

    async def _close(self, state: ConnectionState) -> None:
        if state.closed.is_set():
            return
        state.closed.set()
        try:
            await state.transport.close()
        except Exception as e:
            logger.debug(f"Close failed: {e}", extra={"connection_id": state.connection_id})

    async def shutdown(self, grace: Optional[float] = None) -> None:
        """
        Kill every live session concurrently and forget all connections.

        Args:
            grace: Max seconds to wait for sessions to tear down. When it
                runs out the registry is cleared anyway.
        """
        states = self.registry.snapshot()
        logger.info(f"Cleaning up {len(states)} connections...")

        async def _stop(state: ConnectionState) -> None:
            try:
                await state.manager.kill()
            except Exception as e:
                logger.warning(
                    f"Cleanup error: {e}", extra={"connection_id": state.connection_id}
                )
            await self._close(state)

        work = asyncio.gather(*(_stop(state) for state in states))
        try:
            await asyncio.wait_for(work, timeout=grace)
        except asyncio.TimeoutError:
            logger.error(f"Forced shutdown after {grace}s with sessions still closing")
        finally:
            self.registry.clear()
        logger.info("All connections cleaned up")
