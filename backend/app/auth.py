"""Shared-token authentication for the sync routes."""

import hmac
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from .config import Settings, get_settings


def require_access_token(
    settings: Annotated[Settings, Depends(get_settings)],
    x_access_token: Annotated[str | None, Header()] = None,
) -> None:
    """Reject requests whose X-Access-Token does not match the configured token."""
    if not x_access_token or not hmac.compare_digest(
        x_access_token.encode(), settings.access_token.encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )


def client_id_from(
    x_client_id: Annotated[str | None, Header()] = None,
) -> str | None:
    """Client id from the X-Client-ID header, if the client sent one."""
    return x_client_id or None


Authorized = Depends(require_access_token)
HeaderClientId = Annotated[str | None, Depends(client_id_from)]
