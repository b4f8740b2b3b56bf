"""
Shared API dependencies.
"""

from fastapi import Request

from bookingcore.core.config import get_settings
from bookingcore.services.channel_factory import CoreServices, build_services


def get_services(request: Request) -> CoreServices:
    """Process-wide services built in the lifespan; built on first use otherwise."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        services = build_services(get_settings())
        request.app.state.services = services
    return services
