"""Multi-tenant messaging gateway microservice.

This package keeps one messaging session per tenant and provides:

- Serialised session starts with generation fencing of stale events
- Supervised reconnection with credential purge on logout
- Keyword auto-replies driven by a JSON rules file
- Attendance notifications drained from per-tenant Redis queues
- Throttled bulk delivery
- Prometheus metrics and a FastAPI REST API

Example:
    Basic usage with the FastAPI application::

        from async_message_gateway.core import GatewayCore
        from async_message_gateway.api import create_app
        from async_message_gateway.transport import load_provider

        core = GatewayCore(provider=load_provider("my_transport:Provider"))
        app = create_app(core, api_token="secret")
"""
