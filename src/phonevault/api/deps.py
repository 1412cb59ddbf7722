"""Shared request dependencies."""

from fastapi import Header, HTTPException, Request

from phonevault.config import get_settings
from phonevault.errors import ValidationError
from phonevault.identity.address import parse_felt
from phonevault.services import Services


def get_services(request: Request) -> Services:
    """Component graph attached to the application."""
    return request.app.state.services


async def require_admin_token(x_admin_token: str = Header(None)) -> bool:
    """Verify admin token from header.

    If ADMIN_TOKEN is not set, allows access (dev mode).
    """
    settings = get_settings()

    if not settings.admin_token:
        # Dev mode - no token required
        return True

    if x_admin_token != settings.admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")

    return True


def felt(value: str, field: str = "value") -> int:
    """Parse a hex or decimal felt from a request body."""
    try:
        return parse_felt(value)
    except (AttributeError, ValueError):
        raise ValidationError(f"Invalid {field}: {value!r}")
