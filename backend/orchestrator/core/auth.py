"""Service-token authentication for the internal HTTP API.

The orchestrator sits behind the web tier, which authenticates end users and
checks organization membership; this service only verifies that the caller
holds the shared bearer token.
"""

import hmac

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from orchestrator.core.config import get_settings

_bearer_scheme = HTTPBearer(auto_error=False)


async def require_service_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    """FastAPI dependency validating the ``Authorization: Bearer`` service token.

    Usage::

        router = APIRouter(dependencies=[Depends(require_service_token)])

    With no token configured, requests pass only in debug mode.
    """
    settings = get_settings()
    expected = settings.internal_api_token

    if not expected:
        if settings.debug:
            return
        raise HTTPException(status_code=500, detail="Authentication is misconfigured")

    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authorization header")
    if not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid service token")

    request.state.caller = "service"
