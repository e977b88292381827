from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from churchhub.domain.models import AuditLog, now_utc
from churchhub.infra.db import engine

logger = logging.getLogger(__name__)

WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
AUDITED_READ_PATH_KEYWORDS = ("/export", "/audit-logs")
UNAUDITED_PATHS = frozenset({"/healthz", "/readyz"})
AUDIT_CONTEXT_STATE_KEY = "_audit_context"
SYSTEM_ORGANIZATION = "system"


@dataclass(frozen=True)
class AuditEntry:
    organization_id: str
    actor_id: str | None
    branch_id: str | None
    action: str
    resource: str
    method: str
    status_code: int
    detail: dict[str, Any] = field(default_factory=dict)


def write_audit_log(entry: AuditEntry) -> None:
    with Session(engine) as session:
        session.add(
            AuditLog(
                organization_id=entry.organization_id,
                actor_id=entry.actor_id,
                branch_id=entry.branch_id,
                action=entry.action,
                resource=entry.resource,
                method=entry.method,
                status_code=entry.status_code,
                detail=entry.detail,
            )
        )
        session.commit()


def merge_detail(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        current = merged.get(key)
        merged[key] = merge_detail(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return merged


def outcome_for_status(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code in (401, 403, 404):
        return "denied"
    return "rejected" if status_code >= 400 else "success"


def should_audit_request(method: str, path: str) -> bool:
    return method in WRITE_METHODS or any(keyword in path for keyword in AUDITED_READ_PATH_KEYWORDS)


def _read_context(request: Request) -> dict[str, Any]:
    raw = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, None)
    return dict(raw) if isinstance(raw, dict) else {}


def set_audit_context(
    request: Request,
    *,
    action: str | None = None,
    resource: str | None = None,
    branch_id: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    """Attach explicit audit fields to the current request.

    Repeated calls accumulate: scalar fields are overwritten and ``detail`` is
    deep-merged into what earlier calls recorded.
    """
    context = _read_context(request)
    for key, value in (("action", action), ("resource", resource), ("branch_id", branch_id)):
        if value is not None:
            context[key] = value
    if detail:
        previous = context.get("detail")
        context["detail"] = merge_detail(previous, detail) if isinstance(previous, dict) else detail
    setattr(request.state, AUDIT_CONTEXT_STATE_KEY, context)


def _context_str(context: dict[str, Any], key: str) -> str | None:
    value = context.get(key)
    return value if isinstance(value, str) else None


def build_audit_entry(request: Request, status_code: int) -> AuditEntry | None:
    path = request.url.path
    method = request.method
    if path in UNAUDITED_PATHS:
        return None
    context = _read_context(request)
    explicit = any(key in context for key in ("action", "resource", "detail"))
    if not explicit and not should_audit_request(method, path):
        return None

    claims = getattr(request.state, "claims", None) or {}
    organization_id = claims.get("organization_id") or SYSTEM_ORGANIZATION
    actor_id = claims.get("sub")
    action = _context_str(context, "action") or f"{method}:{path}"
    resource = _context_str(context, "resource") or path
    path_branch = request.path_params.get("branch_id")
    branch_id = _context_str(context, "branch_id") or (path_branch if isinstance(path_branch, str) else None)

    detail: dict[str, Any] = {
        "who": {"organization_id": organization_id, "actor_id": actor_id},
        "when": {"request_ts": now_utc().isoformat()},
        "where": {
            "path": path,
            "route": getattr(request.scope.get("route"), "path", path),
            "query": request.url.query,
            "branch_id": branch_id,
            "client_ip": request.client.host if request.client is not None else None,
            "user_agent": request.headers.get("user-agent"),
        },
        "what": {"action": action, "resource": resource, "method": method},
        "result": {"status_code": status_code, "outcome": outcome_for_status(status_code)},
    }
    extra = context.get("detail")
    if isinstance(extra, dict):
        detail = merge_detail(detail, extra)

    return AuditEntry(
        organization_id=organization_id,
        actor_id=actor_id,
        branch_id=branch_id,
        action=action,
        resource=resource,
        method=method,
        status_code=status_code,
        detail=detail,
    )


class AuditMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        entry = build_audit_entry(request, response.status_code)
        if entry is None:
            return response
        try:
            write_audit_log(entry)
        except SQLAlchemyError as exc:
            # A lost audit row never changes the response.
            logger.warning("audit write failed for %s %s: %s", entry.method, request.url.path, exc)
        return response
