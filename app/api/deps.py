from __future__ import annotations

from fastapi import Request

from app.services.container import Services


def get_services(request: Request) -> Services:
    """The process-wide services built in the app lifespan."""
    return request.app.state.services
