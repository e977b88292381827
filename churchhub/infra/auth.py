from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))

REQUIRED_CLAIMS = ("sub", "organization_id", "exp")


def build_claims(
    *,
    user_id: str,
    organization_id: str,
    permissions: list[str],
    branch_permissions: dict[str, list[str]],
    home_branch_id: str | None,
    issued_at: datetime,
    lifetime: timedelta,
) -> dict[str, Any]:
    return {
        "sub": user_id,
        "organization_id": organization_id,
        "permissions": sorted(set(permissions)),
        "branch_permissions": {branch: sorted(set(codes)) for branch, codes in branch_permissions.items()},
        "home_branch_id": home_branch_id,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + lifetime).timestamp()),
    }


def create_access_token(
    *,
    user_id: str,
    organization_id: str,
    permissions: list[str] | None = None,
    branch_permissions: dict[str, list[str]] | None = None,
    home_branch_id: str | None = None,
    expires_minutes: int | None = None,
) -> str:
    claims = build_claims(
        user_id=user_id,
        organization_id=organization_id,
        permissions=permissions or [],
        branch_permissions=branch_permissions or {},
        home_branch_id=home_branch_id,
        issued_at=datetime.now(UTC),
        lifetime=timedelta(minutes=expires_minutes or JWT_EXPIRES_MIN),
    )
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any]:
    """Verify signature and expiry, then check the claims every request relies on.

    Raises ``jwt.PyJWTError`` for a bad or expired token and ``ValueError`` for
    a well-signed token that lacks the organization or subject.
    """
    decoded = jwt.decode(
        token,
        JWT_SECRET,
        algorithms=[JWT_ALGORITHM],
        options={"require": list(REQUIRED_CLAIMS)},
    )
    if not isinstance(decoded, dict):
        raise ValueError("Invalid token payload")
    for claim in ("sub", "organization_id"):
        if not isinstance(decoded.get(claim), str):
            raise ValueError(f"Token claim {claim} must be a string")
    return decoded
