from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, time

from sqlmodel import Session, col, select

from churchhub.domain.models import AuditLog
from churchhub.infra.db import get_engine

MAX_AUDIT_PAGE = 500


class AuditError(Exception):
    pass


class InvalidInputError(AuditError):
    pass


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


def parse_time_bound(raw: str, *, end_of_day: bool = False) -> datetime:
    """Parse an ISO date or timestamp used as an audit range bound.

    Values without an offset are taken as UTC. A bare date means the start of
    that day, or its last microsecond when ``end_of_day`` is set.
    """
    text = raw.strip()
    try:
        if len(text) == 10:
            bound = datetime.combine(date.fromisoformat(text), time.max if end_of_day else time.min)
        else:
            bound = datetime.fromisoformat(text)
    except ValueError as exc:
        raise InvalidInputError(f"invalid date or timestamp: {raw}") from exc
    return _as_utc(bound)


@dataclass(frozen=True)
class AuditLogFilter:
    actor_id: str | None = None
    branch_id: str | None = None
    resource: str | None = None
    action: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    limit: int = 100


class AuditService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def list_audit_logs(self, organization_id: str, filters: AuditLogFilter | None = None) -> list[AuditLog]:
        criteria = filters or AuditLogFilter()
        with self._session() as session:
            statement = select(AuditLog).where(AuditLog.organization_id == organization_id)
            if criteria.actor_id is not None:
                statement = statement.where(AuditLog.actor_id == criteria.actor_id)
            if criteria.branch_id is not None:
                statement = statement.where(AuditLog.branch_id == criteria.branch_id)
            if criteria.resource is not None:
                statement = statement.where(AuditLog.resource == criteria.resource)
            if criteria.action is not None:
                statement = statement.where(AuditLog.action == criteria.action)
            if criteria.date_from is not None:
                statement = statement.where(col(AuditLog.ts) >= _as_utc(criteria.date_from))
            if criteria.date_to is not None:
                statement = statement.where(col(AuditLog.ts) <= _as_utc(criteria.date_to))
            limit = max(1, min(criteria.limit, MAX_AUDIT_PAGE))
            statement = statement.order_by(col(AuditLog.ts).desc()).limit(limit)
            return list(session.exec(statement).all())
