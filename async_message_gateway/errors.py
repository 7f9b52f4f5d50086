"""Exception hierarchy shared by the gateway components."""


class GatewayError(RuntimeError):
    """Base class for errors raised by the gateway."""

    code = "gateway_error"

    def __init__(self, message: str = "Gateway error"):
        super().__init__(message)


class TransportError(GatewayError):
    """Raised when the transport provider fails to connect or send."""

    code = "transport_error"

    def __init__(self, message: str = "Transport failure", *, tenant_id: str | None = None):
        super().__init__(message)
        self.tenant_id = tenant_id


class ConfigNotFound(GatewayError):
    """Raised when a student, tenant or template record is missing."""

    code = "config_not_found"

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} '{key}' not found")
        self.kind = kind
        self.key = key


class ValidationError(GatewayError):
    """Raised when a request is rejected at the boundary."""

    code = "validation_error"


class InvalidTenantId(ValidationError):
    code = "invalid_tenant_id"

    def __init__(self, tenant_id: str):
        super().__init__(f"Invalid tenant id '{tenant_id}': only letters, numbers, _ and - allowed")
        self.tenant_id = tenant_id


class UnknownSessionError(GatewayError):
    code = "unknown_session"

    def __init__(self, tenant_id: str):
        super().__init__(f"Unknown session: {tenant_id}")
        self.tenant_id = tenant_id


class SessionNotConnectedError(GatewayError):
    code = "not_connected"

    def __init__(self, tenant_id: str):
        super().__init__(f"Session {tenant_id} is not connected")
        self.tenant_id = tenant_id


class TerminalSessionError(GatewayError):
    """The session was closed for good and needs an explicit new start."""

    code = "terminal_session"

    def __init__(self, tenant_id: str, reason: str = ""):
        message = f"Session {tenant_id} is terminal"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.tenant_id = tenant_id
