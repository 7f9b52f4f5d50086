"""Interfaces of the external messaging transport.

The gateway never speaks the transport wire protocol itself. A provider
object implementing :class:`MessageTransportProvider` is plugged in through
configuration and owns connecting, encrypting and decoding. The gateway
only sees lifecycle events and a handle that can send.
"""

from __future__ import annotations

import importlib
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

DEFAULT_RECIPIENT_SUFFIX = "@s.whatsapp.net"

EVENT_QR = "qr"
EVENT_OPEN = "open"
EVENT_CLOSE = "close"
EVENT_MESSAGE = "message"


@dataclass(frozen=True)
class CloseReason:
    """Why a transport connection went down."""

    status_code: Optional[int] = None
    type: Optional[str] = None
    detail: Optional[str] = None

    def describe(self) -> str:
        return f"code={self.status_code if self.status_code is not None else '-'}, type={self.type or '-'}"


@dataclass(frozen=True)
class InboundMessage:
    """A message received from a remote party."""

    remote_id: str
    text: str = ""
    timestamp: float = 0.0
    from_me: bool = False
    notify: bool = True
    ref: Any = None

    def age(self, now: float | None = None) -> float:
        now = time.time() if now is None else now
        return now - float(self.timestamp or 0)


@dataclass(frozen=True)
class TransportEvent:
    """Lifecycle or inbound event emitted by a provider connection."""

    kind: str
    qr: Optional[str] = None
    identity: Optional[Dict[str, Any]] = None
    reason: Optional[CloseReason] = None
    message: Optional[InboundMessage] = None

    @classmethod
    def qr_code(cls, payload: str) -> "TransportEvent":
        return cls(kind=EVENT_QR, qr=payload)

    @classmethod
    def opened(cls, identity: Dict[str, Any] | None = None) -> "TransportEvent":
        return cls(kind=EVENT_OPEN, identity=identity)

    @classmethod
    def closed(cls, reason: CloseReason | None = None) -> "TransportEvent":
        return cls(kind=EVENT_CLOSE, reason=reason or CloseReason())

    @classmethod
    def inbound(cls, message: InboundMessage) -> "TransportEvent":
        return cls(kind=EVENT_MESSAGE, message=message)


@dataclass
class OutboundPayload:
    """Content of an outgoing message: plain text or an image with caption."""

    text: Optional[str] = None
    image: Optional[bytes] = None
    caption: str = ""
    mimetype: str = "image/jpeg"
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        return "image" if self.image is not None else "text"

    @classmethod
    def from_text(cls, text: str) -> "OutboundPayload":
        return cls(text=text)

    @classmethod
    def from_image(cls, image: bytes, caption: str = "", mimetype: str = "image/jpeg") -> "OutboundPayload":
        return cls(image=image, caption=caption, mimetype=mimetype)


EventListener = Callable[[TransportEvent], Awaitable[None]]


class TransportHandle(Protocol):
    """A live connection owned by exactly one session."""

    identity: Optional[Dict[str, Any]]

    async def send(self, recipient_id: str, payload: OutboundPayload) -> Any: ...

    async def mark_read(self, message: InboundMessage) -> None: ...

    async def logout(self) -> None: ...

    async def close(self) -> None: ...


class MessageTransportProvider(Protocol):
    """Factory of transport connections, one per tenant."""

    async def connect(self, tenant_id: str, credentials_dir: Path, listener: EventListener) -> TransportHandle:
        """Open a connection and register ``listener`` for its events.

        The provider awaits ``listener`` for every event of the connection, in
        the order the events are produced. Events may be emitted before this
        coroutine returns (e.g. a QR code available immediately).
        """
        ...


def to_transport_id(number: str, suffix: str = DEFAULT_RECIPIENT_SUFFIX) -> str:
    """Return the transport address for a phone number or an address."""
    number = str(number).strip()
    if suffix and suffix in number:
        return number
    return f"{number}{suffix}"


def strip_transport_suffix(remote_id: str | None, suffix: str = DEFAULT_RECIPIENT_SUFFIX) -> str:
    """Return the bare phone number of a transport address."""
    remote_id = remote_id or ""
    if suffix and remote_id.endswith(suffix):
        return remote_id[: -len(suffix)]
    return remote_id


def load_provider(reference: str, **options: Any) -> MessageTransportProvider:
    """Instantiate a provider from a ``package.module:attribute`` reference.

    The attribute may be a class or a factory function; ``options`` are passed
    as keyword arguments.
    """
    module_name, sep, attribute = reference.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Invalid transport provider reference '{reference}' (expected 'module:attribute')")
    module = importlib.import_module(module_name)
    try:
        factory = getattr(module, attribute)
    except AttributeError as exc:
        raise ValueError(f"Module '{module_name}' has no attribute '{attribute}'") from exc
    return factory(**options)
