"""Session registry and start coordination for transport connections.

Every tenant owns at most one :class:`Session`. Starting a session is
serialised per tenant through a pending future (the *start lock*) and each
attempt receives a new, process-wide unique generation number. Event
listeners are registered with the ``(tenant_id, generation)`` pair as an
explicit token: an event whose generation differs from the session's current
one comes from a superseded connection and is discarded.
"""

from __future__ import annotations

import asyncio
import functools
import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .credentials import CredentialStore
from .errors import (
    GatewayError,
    SessionNotConnectedError,
    TerminalSessionError,
    TransportError,
    UnknownSessionError,
)
from .logger import get_logger
from .transport import (
    DEFAULT_RECIPIENT_SUFFIX,
    EVENT_CLOSE,
    EVENT_MESSAGE,
    EVENT_OPEN,
    EVENT_QR,
    CloseReason,
    EventListener,
    InboundMessage,
    MessageTransportProvider,
    OutboundPayload,
    TransportEvent,
    TransportHandle,
    to_transport_id,
)

InboundCallback = Callable[[str, InboundMessage], Awaitable[Any]]


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    TERMINAL = "terminal"


@dataclass
class Session:
    """Mutable state of one tenant connection."""

    tenant_id: str
    state: SessionState = SessionState.UNINITIALIZED
    generation: int = 0
    handle: Optional[TransportHandle] = None
    last_qr: Optional[str] = None
    identity: Optional[Dict[str, Any]] = None
    identity_fallback: bool = False
    connecting: bool = False
    last_error: Optional[str] = None
    terminal_reason: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self.state is SessionState.CONNECTED and self.handle is not None

    def describe(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "state": self.state.value,
            "generation": self.generation,
            "identity": self.identity,
            "has_qr": self.last_qr is not None,
            "last_error": self.last_error,
            "terminal_reason": self.terminal_reason,
        }


@dataclass(frozen=True)
class StartResult:
    """Outcome of :meth:`SessionRegistry.request_start`."""

    status: str
    qr: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def error(cls, message: str) -> "StartResult":
        return cls(status="error", message=message)

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status}
        if self.qr is not None:
            data["qr"] = self.qr
        if self.message is not None:
            data["message"] = self.message
        return data


@dataclass(frozen=True)
class CloseNotice:
    """A same-generation close handed over to the reconnect supervisor."""

    tenant_id: str
    generation: int
    reason: CloseReason = field(default_factory=CloseReason)
    attempt: int = 0


class SessionRegistry:
    """Authoritative map of tenant id to :class:`Session`.

    Only fenced event handlers and :meth:`request_start` (while holding the
    tenant start lock) change session state.
    """

    def __init__(
        self,
        provider: MessageTransportProvider,
        credentials: CredentialStore,
        *,
        connect_timeout: float = 30.0,
        send_timeout: float = 30.0,
        logout_timeout: float = 3.0,
        max_message_age: float | None = 60.0,
        recipient_suffix: str = DEFAULT_RECIPIENT_SUFFIX,
        on_inbound: InboundCallback | None = None,
        metrics=None,
        logger=None,
    ):
        self.provider = provider
        self.credentials = credentials
        self.connect_timeout = connect_timeout
        self.send_timeout = send_timeout
        self.logout_timeout = logout_timeout
        self.max_message_age = max_message_age
        self.recipient_suffix = recipient_suffix
        self.on_inbound = on_inbound
        self.metrics = metrics
        self.logger = logger or get_logger("Sessions")
        self.close_channel: asyncio.Queue[CloseNotice] = asyncio.Queue()
        self.connect_attempts = 0

        self._sessions: Dict[str, Session] = {}
        self._start_locks: Dict[str, asyncio.Future] = {}
        self._generations = itertools.count(1)

    # ------------------------------------------------------------------ queries
    def get(self, tenant_id: str) -> Optional[Session]:
        return self._sessions.get(tenant_id)

    def current_generation(self, tenant_id: str) -> Optional[int]:
        session = self._sessions.get(tenant_id)
        return session.generation if session is not None else None

    def is_connected(self, tenant_id: str) -> bool:
        session = self._sessions.get(tenant_id)
        return session is not None and session.is_connected

    def is_starting(self, tenant_id: str) -> bool:
        return tenant_id in self._start_locks

    def tenants(self, state: SessionState | None = None) -> List[str]:
        return [tid for tid, ses in self._sessions.items() if state is None or ses.state is state]

    def snapshot(self) -> List[Dict[str, Any]]:
        return [session.describe() for session in self._sessions.values()]

    def status(self, tenant_id: str) -> Dict[str, Any]:
        """Return the externally visible status of a tenant session."""
        session = self._sessions.get(tenant_id)
        if session is None:
            return {"status": "not_initialized", "tenant_id": tenant_id}
        if session.is_connected:
            return {
                "status": "connected",
                "tenant_id": tenant_id,
                "state": session.state.value,
                "identity": session.identity,
            }
        return {
            "status": "disconnected",
            "tenant_id": tenant_id,
            "state": session.state.value,
            "last_qr": session.last_qr,
        }

    # -------------------------------------------------------------- start logic
    async def request_start(self, tenant_id: str) -> StartResult:
        """Start (or join the start of) the tenant connection.

        Concurrent callers share a single connect attempt. Connect failures are
        reported through the result and never raised.
        """
        pending = self._start_locks.get(tenant_id)
        if pending is not None:
            await asyncio.shield(pending)
            return self._result_for(tenant_id)

        session = self._sessions.get(tenant_id)
        if session is not None and session.state in (SessionState.CONNECTED, SessionState.CONNECTING):
            return self._result_for(tenant_id)

        lock = asyncio.get_running_loop().create_future()
        self._start_locks[tenant_id] = lock
        try:
            return await self._open(tenant_id)
        finally:
            if self._start_locks.get(tenant_id) is lock:
                del self._start_locks[tenant_id]
            if not lock.done():
                lock.set_result(None)

    async def _open(self, tenant_id: str) -> StartResult:
        session = self._sessions.get(tenant_id)
        if session is None:
            session = Session(tenant_id=tenant_id)
            self._sessions[tenant_id] = session

        generation = next(self._generations)
        previous = session.handle
        session.generation = generation
        session.state = SessionState.CONNECTING
        session.connecting = True
        session.handle = None
        session.identity = None
        session.identity_fallback = False
        session.last_qr = None
        session.last_error = None
        session.terminal_reason = None
        self._refresh_gauge()

        if previous is not None:
            await self._close_handle(tenant_id, previous)

        self.logger.info("[%s] Starting transport connection (generation %d)", tenant_id, generation)
        listener: EventListener = functools.partial(self.dispatch_event, tenant_id, generation)
        self.connect_attempts += 1
        try:
            async with asyncio.timeout(self.connect_timeout):
                handle = await self.provider.connect(tenant_id, self.credentials.path_for(tenant_id), listener)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            if isinstance(exc, TimeoutError):
                message = f"Timed out after {self.connect_timeout}s while connecting"
            self.logger.error("[%s] Transport connect failed (generation %d): %s", tenant_id, generation, message)
            if self._owns(tenant_id, session, generation):
                session.state = SessionState.DISCONNECTED
                session.connecting = False
                session.last_error = message
            return StartResult.error(message)

        if not self._owns(tenant_id, session, generation):
            self.logger.info("[%s] Session reset while connecting, dropping generation %d", tenant_id, generation)
            await self._close_handle(tenant_id, handle)
            return StartResult.error("Session was reset while connecting")

        session.handle = handle
        if session.state is SessionState.CONNECTED and (session.identity is None or session.identity_fallback):
            # opened before connect returned; prefer the handle identity over the placeholder
            session.identity = None
            self._ensure_identity(session)
        self._refresh_gauge()
        return self._result_for(tenant_id)

    def _owns(self, tenant_id: str, session: Session, generation: int) -> bool:
        return self._sessions.get(tenant_id) is session and session.generation == generation

    def _result_for(self, tenant_id: str) -> StartResult:
        session = self._sessions.get(tenant_id)
        if session is None:
            return StartResult.error("Session was removed")
        if session.state is SessionState.CONNECTED:
            return StartResult(status="connected")
        if session.state is SessionState.TERMINAL:
            return StartResult.error(session.terminal_reason or "Session is terminal")
        if session.last_qr is not None:
            return StartResult(status="qr", qr=session.last_qr)
        if session.state is SessionState.CONNECTING:
            return StartResult(status="connecting")
        return StartResult.error(session.last_error or "Session is disconnected")

    # ----------------------------------------------------------- event handling
    async def dispatch_event(self, tenant_id: str, generation: int, event: TransportEvent) -> bool:
        """Apply a transport event if it belongs to the current generation."""
        session = self._sessions.get(tenant_id)
        if session is None or session.generation != generation:
            current = session.generation if session is not None else None
            self.logger.debug(
                "[%s] Ignoring stale %s event (generation %d, current %s)", tenant_id, event.kind, generation, current
            )
            return False
        if session.state is SessionState.TERMINAL:
            self.logger.debug("[%s] Ignoring %s event on terminal session", tenant_id, event.kind)
            return False

        if event.kind == EVENT_QR:
            session.last_qr = event.qr
            session.state = SessionState.CONNECTING
            self.logger.info("[%s] QR generated", tenant_id)
        elif event.kind == EVENT_OPEN:
            session.state = SessionState.CONNECTED
            session.connecting = False
            session.last_qr = None
            session.identity = event.identity
            self._ensure_identity(session)
            self._refresh_gauge()
            self.logger.info("[%s] Connected as %s", tenant_id, session.identity)
        elif event.kind == EVENT_CLOSE:
            reason = event.reason or CloseReason()
            session.state = SessionState.DISCONNECTED
            session.connecting = False
            self._refresh_gauge()
            self.logger.warning("[%s] Disconnected (%s)", tenant_id, reason.describe())
            self.close_channel.put_nowait(CloseNotice(tenant_id=tenant_id, generation=generation, reason=reason))
        elif event.kind == EVENT_MESSAGE:
            await self._handle_inbound(tenant_id, event.message)
        else:
            self.logger.debug("[%s] Unknown transport event %r", tenant_id, event.kind)
            return False
        return True

    def _ensure_identity(self, session: Session) -> None:
        session.identity_fallback = False
        if session.identity is None and session.handle is not None:
            session.identity = getattr(session.handle, "identity", None)
        if session.identity is None:
            self.logger.warning("[%s] Transport reported no identity, using tenant id", session.tenant_id)
            session.identity = {"id": session.tenant_id}
            session.identity_fallback = True

    async def _handle_inbound(self, tenant_id: str, message: InboundMessage | None) -> None:
        if message is None or message.from_me or not message.notify or not message.text:
            return
        if self.max_message_age is not None and message.age() > self.max_message_age:
            self.logger.debug("[%s] Ignored old message from %s", tenant_id, message.remote_id)
            return
        self.logger.info("[%s] Message from %s: %s", tenant_id, message.remote_id, message.text)
        if self.on_inbound is None:
            return
        try:
            await self.on_inbound(tenant_id, message)
        except Exception:
            self.logger.exception("[%s] Inbound message handling failed", tenant_id)

    # ----------------------------------------------------------------- sending
    async def send(
        self,
        tenant_id: str,
        recipient: str,
        payload: OutboundPayload,
        *,
        source: str = "direct",
    ) -> Any:
        """Send ``payload`` to ``recipient`` through the tenant connection."""
        session = self._sessions.get(tenant_id)
        if session is None:
            raise UnknownSessionError(tenant_id)
        if session.state is SessionState.TERMINAL:
            raise TerminalSessionError(tenant_id, session.terminal_reason or "")
        if not session.is_connected:
            raise SessionNotConnectedError(tenant_id)
        address = to_transport_id(recipient, self.recipient_suffix)
        try:
            async with asyncio.timeout(self.send_timeout):
                ack = await session.handle.send(address, payload)
        except GatewayError:
            self._count_error(tenant_id, source)
            raise
        except Exception as exc:
            self._count_error(tenant_id, source)
            raise TransportError(str(exc) or exc.__class__.__name__, tenant_id=tenant_id) from exc
        if self.metrics is not None:
            self.metrics.inc_sent(tenant_id, source)
        return ack

    async def mark_read(self, tenant_id: str, message: InboundMessage) -> None:
        """Best-effort read receipt for an inbound message."""
        session = self._sessions.get(tenant_id)
        if session is None or session.handle is None:
            return
        try:
            await session.handle.mark_read(message)
        except Exception as exc:
            self.logger.debug("[%s] mark_read failed: %s", tenant_id, exc)

    def _count_error(self, tenant_id: str, source: str) -> None:
        if self.metrics is not None:
            self.metrics.inc_error(tenant_id, source)

    # --------------------------------------------------------------- teardown
    async def mark_terminal(self, tenant_id: str, generation: int, *, purge: bool, reason: str = "") -> bool:
        """Move the session to ``terminal`` if ``generation`` is still current."""
        session = self._sessions.get(tenant_id)
        if session is None or session.generation != generation:
            return False
        session.state = SessionState.TERMINAL
        session.connecting = False
        session.identity = None
        session.terminal_reason = reason or None
        handle, session.handle = session.handle, None
        self._refresh_gauge()
        if handle is not None:
            await self._close_handle(tenant_id, handle)
        if purge:
            self.credentials.purge(tenant_id)
        return True

    async def destroy(self, tenant_id: str, *, remove_credentials: bool = True) -> bool:
        """Log out, close and forget the session; errors are logged, never raised."""
        session = self._sessions.pop(tenant_id, None)
        if session is not None and session.handle is not None:
            handle = session.handle
            if session.is_connected:
                try:
                    async with asyncio.timeout(self.logout_timeout):
                        await handle.logout()
                except Exception as exc:
                    self.logger.debug("[%s] Logout failed: %s", tenant_id, exc)
            await self._close_handle(tenant_id, handle)
        if remove_credentials:
            try:
                self.credentials.purge(tenant_id)
            except OSError as exc:
                self.logger.warning("[%s] Could not remove credentials: %s", tenant_id, exc)
        self._refresh_gauge()
        self.logger.info("[%s] Session destroyed", tenant_id)
        return session is not None

    async def close_all(self) -> None:
        """Close every handle without touching credentials (process shutdown)."""
        for tenant_id, session in list(self._sessions.items()):
            handle, session.handle = session.handle, None
            session.state = SessionState.DISCONNECTED
            # bump the generation so late close events are fenced
            session.generation = next(self._generations)
            if handle is not None:
                await self._close_handle(tenant_id, handle)
        self._refresh_gauge()

    async def _close_handle(self, tenant_id: str, handle: TransportHandle) -> None:
        try:
            await handle.close()
        except Exception as exc:
            self.logger.debug("[%s] Closing transport handle failed: %s", tenant_id, exc)

    def _refresh_gauge(self) -> None:
        if self.metrics is not None:
            self.metrics.set_connected(sum(1 for ses in self._sessions.values() if ses.is_connected))
