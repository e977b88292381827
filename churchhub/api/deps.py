from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Annotated, Any

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from churchhub.domain.permissions import has_permission
from churchhub.infra.auth import decode_access_token
from churchhub.infra.context import set_request_context

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/identity/dev-login")

ClaimsDict = dict[str, Any]


def _forbidden(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


async def get_current_claims(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> ClaimsDict:
    # Must stay async: sync handlers run on copies of this task's context.
    try:
        claims = decode_access_token(token)
    except (jwt.PyJWTError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
    request.state.claims = claims
    set_request_context(claims.get("organization_id"), claims.get("sub"))
    return claims


def _grants_any(claims: ClaimsDict, permissions: Iterable[str], branch_id: str | None = None) -> bool:
    return any(has_permission(claims, permission, branch_id) for permission in permissions)


def require_perm(permission: str) -> Callable[..., ClaimsDict]:
    """Require ``permission`` in any of the caller's active branches."""

    def _checker(claims: Annotated[ClaimsDict, Depends(get_current_claims)]) -> ClaimsDict:
        if not _grants_any(claims, (permission,)):
            raise _forbidden(f"Missing permission: {permission}")
        return claims

    return _checker


def require_any_perm(*permissions: str) -> Callable[..., ClaimsDict]:
    accepted = tuple(item for item in permissions if item)

    def _checker(claims: Annotated[ClaimsDict, Depends(get_current_claims)]) -> ClaimsDict:
        if accepted and not _grants_any(claims, accepted):
            raise _forbidden(f"Missing any permission: {', '.join(accepted)}")
        return claims

    return _checker


def ensure_branch_perm(claims: ClaimsDict, permission: str, branch_id: str) -> None:
    if not _grants_any(claims, (permission,), branch_id):
        raise _forbidden(f"Missing permission at branch: {permission}")


def require_branch_perm(permission: str, branch_param: str = "branch_id") -> Callable[..., ClaimsDict]:
    """Require ``permission`` at the branch named by the ``branch_param`` path parameter."""

    def _checker(
        request: Request,
        claims: Annotated[ClaimsDict, Depends(get_current_claims)],
    ) -> ClaimsDict:
        branch_id = request.path_params.get(branch_param)
        if not isinstance(branch_id, str):
            raise _forbidden(f"Missing permission at branch: {permission}")
        ensure_branch_perm(claims, permission, branch_id)
        return claims

    return _checker
