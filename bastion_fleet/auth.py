"""X-API-Key guard for the fleet endpoints.

Anyone holding the key can open shells on every node behind the bastion, so
the comparison is constant-time and every rejection is logged with the
route it was aimed at. ``/health`` stays open for liveness checks.
"""

from __future__ import annotations

import hmac

from fastapi import HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

from bastion_fleet.config import settings
from bastion_fleet.utils.logging import get_logger

log = get_logger(__name__)

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def key_matches(presented: str | None, expected: str) -> bool:
    if presented is None:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


async def require_api_key(
    request: Request,
    api_key: str | None = Security(_api_key_header),
) -> None:
    """Reject the request unless it carries BASTION_API_KEY.

    A blank BASTION_API_KEY turns the check off (local use).
    """
    if not settings.api_key:
        return
    if not key_matches(api_key, settings.api_key):
        log.warning(
            "api.auth_rejected",
            method=request.method,
            path=request.url.path,
            key_present=api_key is not None,
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
