"""HTTP routes."""

from fastapi import Request

from codewiki.services import Services


def get_services(request: Request) -> Services:
    """FastAPI dependency returning the services built by the app lifespan."""
    return request.app.state.services
