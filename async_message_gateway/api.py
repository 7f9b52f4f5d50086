"""
FastAPI application factory and HTTP schemas for the message gateway.

The module exposes a `create_app` function that builds the REST API used to
start, inspect and stop tenant sessions and to send messages through them.
Authentication is enforced through a configurable API token carried in the
``X-API-Token`` header; bulk sends additionally require the shared secret in
the ``X-Bulk-Secret`` header.
"""

from typing import Optional, Dict, Any, List, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, APIRouter, Depends, Header, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field, ConfigDict

from .core import GatewayCore

app = FastAPI(title="Async Message Gateway")
service: GatewayCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
BULK_SECRET_HEADER_NAME = "X-Bulk-Secret"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None

ERROR_STATUS = {
    "invalid_tenant_id": status.HTTP_400_BAD_REQUEST,
    "validation_error": status.HTTP_400_BAD_REQUEST,
    "not_connected": status.HTTP_400_BAD_REQUEST,
    "unknown_session": status.HTTP_400_BAD_REQUEST,
    "terminal_session": status.HTTP_400_BAD_REQUEST,
    "image_unavailable": status.HTTP_400_BAD_REQUEST,
    "forbidden": status.HTTP_403_FORBIDDEN,
}


async def require_token(api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the gateway."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class StartSessionResponse(CommandStatus):
    status: str
    qr: Optional[str] = None
    message: Optional[str] = None
    identity: Optional[Dict[str, Any]] = None


class SessionStatusResponse(CommandStatus):
    status: str
    tenant_id: str
    state: Optional[str] = None
    identity: Optional[Dict[str, Any]] = None
    last_qr: Optional[str] = None


class SessionInfo(BaseModel):
    tenant_id: str
    state: str
    generation: int
    identity: Optional[Dict[str, Any]] = None
    has_qr: bool = False
    last_error: Optional[str] = None
    terminal_reason: Optional[str] = None


class SessionsResponse(CommandStatus):
    sessions: List[SessionInfo]


class SendPayload(BaseModel):
    """Single message; ``image_url`` turns ``message`` into the image caption."""
    number: str
    message: Optional[str] = None
    image_url: Optional[str] = Field(default=None, alias="imageUrl")

    model_config = ConfigDict(populate_by_name=True)


class SendResponse(CommandStatus):
    tenant_id: str
    to: str
    type: str
    message: Optional[str] = None
    caption: Optional[str] = None
    image_url: Optional[str] = None
    timestamp: str


class BulkItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")
    recipient: Optional[str] = Field(default=None, alias="phoneNumber")
    message: Optional[str] = None


class BulkPayload(BaseModel):
    messages: List[BulkItem]


class BulkAcceptedResponse(CommandStatus):
    accepted: int


class DeliveryRecord(BaseModel):
    id: int
    tenant_id: str
    recipient: str
    source: str
    status: str
    error: Optional[str] = None
    created_ts: int


class DeliveriesResponse(CommandStatus):
    deliveries: List[DeliveryRecord]


def _raise_for(result: Dict[str, Any]) -> None:
    """Turn a failed command result into the matching HTTP error."""
    if isinstance(result, dict) and result.get("ok") is True:
        return
    code = result.get("error_code") if isinstance(result, dict) else None
    detail = result.get("error") if isinstance(result, dict) else "Unexpected command result"
    raise HTTPException(ERROR_STATUS.get(code, status.HTTP_500_INTERNAL_SERVER_ERROR), detail)


def create_app(
    svc: GatewayCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`async_message_gateway.core.GatewayCore` that
        implements the business logic for each command.
    api_token:
        Optional secret used to protect every endpoint.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Async Message Gateway", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])
    tenants = APIRouter(tags=["sessions"], dependencies=[auth_dependency])

    def _service() -> GatewayCore:
        if not service:
            raise HTTPException(500, "Service not initialized")
        return service

    @api.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def health():
        """Return a simple health status payload."""
        return BasicOkResponse(ok=True)

    @api.get("/sessions", response_model=SessionsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_sessions():
        """List the sessions known to the registry."""
        result = await _service().handle_command("listSessions", {})
        return SessionsResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the gateway."""
        return Response(content=_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    @router.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        """Trigger an attendance tick immediately."""
        result = await _service().handle_command("run now", {})
        return BasicOkResponse.model_validate(result)

    @tenants.post("/{tenant_id}/start-session", response_model=StartSessionResponse, response_model_exclude_none=True)
    async def start_session(tenant_id: str):
        """Connect the tenant, returning a pairing code when one is pending."""
        result = await _service().handle_command("startSession", {"tenant_id": tenant_id})
        _raise_for(result)
        return StartSessionResponse.model_validate(result)

    @tenants.get("/{tenant_id}/status", response_model=SessionStatusResponse, response_model_exclude_none=True)
    async def session_status(tenant_id: str):
        result = await _service().handle_command("sessionStatus", {"tenant_id": tenant_id})
        _raise_for(result)
        return SessionStatusResponse.model_validate(result)

    @tenants.post("/{tenant_id}/destroy-session", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def destroy_session(tenant_id: str):
        """Log the tenant out and delete its credentials."""
        result = await _service().handle_command("destroySession", {"tenant_id": tenant_id})
        _raise_for(result)
        return BasicOkResponse(ok=True)

    @tenants.post("/{tenant_id}/send", response_model=SendResponse, response_model_exclude_none=True)
    async def send(tenant_id: str, payload: SendPayload):
        """Send a text or image message."""
        data = {"tenant_id": tenant_id, **payload.model_dump()}
        result = await _service().handle_command("send", data)
        _raise_for(result)
        return SendResponse.model_validate(result)

    @tenants.post(
        "/{tenant_id}/send-bulk",
        response_model=BulkAcceptedResponse,
        response_model_exclude_none=True,
        status_code=status.HTTP_202_ACCEPTED,
    )
    async def send_bulk(
        tenant_id: str,
        payload: BulkPayload,
        bulk_secret: str | None = Header(default=None, alias=BULK_SECRET_HEADER_NAME),
    ):
        """Queue a throttled batch; the request returns before the first send."""
        messages = [item.model_dump(exclude_none=True) for item in payload.messages]
        data = {"tenant_id": tenant_id, "messages": messages, "secret": bulk_secret}
        result = await _service().handle_command("sendBulk", data)
        _raise_for(result)
        return BulkAcceptedResponse.model_validate(result)

    @tenants.get("/{tenant_id}/deliveries", response_model=DeliveriesResponse, response_model_exclude_none=True)
    async def deliveries(tenant_id: str, limit: int = 100):
        """Return the most recent deliveries recorded for the tenant."""
        result = await _service().handle_command("listDeliveries", {"tenant_id": tenant_id, "limit": limit})
        _raise_for(result)
        return DeliveriesResponse.model_validate(result)

    api.include_router(router)
    api.include_router(tenants)
    return api
