from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from churchhub.api.deps import get_current_claims, require_perm
from churchhub.domain.models import AuditLogRead
from churchhub.domain.permissions import PERM_ADMIN_VIEW_LOGS
from churchhub.services.audit_service import (
    MAX_AUDIT_PAGE,
    AuditLogFilter,
    AuditService,
    InvalidInputError,
    parse_time_bound,
)

router = APIRouter()


def get_audit_service() -> AuditService:
    return AuditService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[AuditService, Depends(get_audit_service)]


def _handle_audit_error(exc: Exception) -> None:
    if isinstance(exc, InvalidInputError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    raise exc


@router.get(
    "",
    response_model=list[AuditLogRead],
    dependencies=[Depends(require_perm(PERM_ADMIN_VIEW_LOGS))],
)
def list_audit_logs(
    claims: Claims,
    service: Service,
    actor_id: Annotated[str | None, Query()] = None,
    branch_id: Annotated[str | None, Query()] = None,
    resource: Annotated[str | None, Query()] = None,
    action: Annotated[str | None, Query()] = None,
    date_from: Annotated[str | None, Query(description="ISO date or timestamp, UTC when no offset")] = None,
    date_to: Annotated[str | None, Query(description="ISO date (whole day) or timestamp")] = None,
    limit: Annotated[int, Query(ge=1, le=MAX_AUDIT_PAGE)] = 100,
) -> list[AuditLogRead]:
    try:
        filters = AuditLogFilter(
            actor_id=actor_id,
            branch_id=branch_id,
            resource=resource,
            action=action,
            date_from=parse_time_bound(date_from) if date_from else None,
            date_to=parse_time_bound(date_to, end_of_day=True) if date_to else None,
            limit=limit,
        )
    except InvalidInputError as exc:
        _handle_audit_error(exc)
        raise
    rows = service.list_audit_logs(claims["organization_id"], filters)
    return [AuditLogRead.model_validate(item) for item in rows]
