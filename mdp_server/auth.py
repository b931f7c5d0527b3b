"""
Authentication utilities for the control-plane API.

The control plane is protected by an optional static bearer token shared by
operators, agents and build workers. When no token is configured every
request is accepted.
"""

import secrets
from collections.abc import Callable

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

# auto_error=False so an unconfigured token lets requests without a header through
security = HTTPBearer(auto_error=False)


def token_matches(expected: str, provided: str | None) -> bool:
    """
    Compare a provided bearer token with the configured one in constant time.

    Args:
        expected: Configured API token
        provided: Token extracted from the Authorization header, if any

    Returns:
        True if the tokens are equal
    """
    if provided is None:
        return False
    return secrets.compare_digest(expected.encode(), provided.encode())


def create_require_token_dependency(
    get_api_token_func: Callable[[], str | None],
):
    """
    Create a FastAPI dependency that enforces the configured bearer token.

    The token getter is injected because it is defined in app.py, which
    imports this module.

    Args:
        get_api_token_func: Function returning the configured token (or None)

    Returns:
        Async function usable with ``Depends``

    Example:
        require_token = create_require_token_dependency(get_api_token)

        @app.get("/v1/projects", dependencies=[Depends(require_token)])
        async def list_projects(): ...
    """

    async def require_token(
        credentials: HTTPAuthorizationCredentials | None = Security(security),
        api_token: str | None = Depends(get_api_token_func),
    ) -> None:
        if not api_token:
            return
        provided = credentials.credentials if credentials else None
        if not token_matches(api_token, provided):
            raise HTTPException(
                status_code=401,
                detail="unauthorized",
                headers={"WWW-Authenticate": "Bearer"},
            )

    return require_token
