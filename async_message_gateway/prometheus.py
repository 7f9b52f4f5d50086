"""Prometheus metrics exposed by the message gateway."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest

class GatewayMetrics:
    """Wrapper around the Prometheus registry used by the gateway."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("amg_sent_total", "Total messages sent", ["tenant_id", "source"], registry=self.registry)
        self.errors = Counter("amg_send_errors_total", "Total send errors", ["tenant_id", "source"], registry=self.registry)
        self.reconnects = Counter("amg_reconnects_total", "Total scheduled reconnects", ["tenant_id"], registry=self.registry)
        self.terminal = Counter("amg_terminal_sessions_total", "Sessions closed for good", ["tenant_id", "purged"], registry=self.registry)
        self.attendance = Counter("amg_attendance_events_total", "Attendance events by outcome", ["tenant_id", "outcome"], registry=self.registry)
        self.connected = Gauge("amg_connected_sessions", "Currently connected sessions", registry=self.registry)

    def inc_sent(self, tenant_id: str, source: str = "direct"):
        """Increase the ``sent`` counter for the given tenant."""
        self.sent.labels(tenant_id=tenant_id or "-", source=source).inc()

    def inc_error(self, tenant_id: str, source: str = "direct"):
        """Increase the ``errors`` counter for the given tenant."""
        self.errors.labels(tenant_id=tenant_id or "-", source=source).inc()

    def inc_reconnect(self, tenant_id: str):
        self.reconnects.labels(tenant_id=tenant_id or "-").inc()

    def inc_terminal(self, tenant_id: str, purged: bool):
        self.terminal.labels(tenant_id=tenant_id or "-", purged="yes" if purged else "no").inc()

    def inc_attendance(self, tenant_id: str, outcome: str):
        """Count an attendance event (checkin, checkout, outside, duplicate, invalid, ...)."""
        self.attendance.labels(tenant_id=tenant_id or "-", outcome=outcome).inc()

    def set_connected(self, value: int):
        """Update the gauge tracking connected sessions."""
        self.connected.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
