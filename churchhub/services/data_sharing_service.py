from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from sqlmodel import Session, col, select

from churchhub.domain.models import (
    SHARING_ANY_ID,
    DataSharingEvaluateRequest,
    DataSharingPolicy,
    DataSharingPolicyCreate,
    DataSharingPolicyUpdate,
    Organization,
    SharingEntityType,
    SharingPermission,
    SharingResourceType,
    now_utc,
)
from churchhub.infra.db import get_engine
from churchhub.infra.events import event_bus

logger = logging.getLogger(__name__)


class DataSharingError(Exception):
    pass


class NotFoundError(DataSharingError):
    pass


class InvalidInputError(DataSharingError):
    pass


@dataclass(frozen=True)
class DataSharingFilter:
    active: bool | None = None
    resource_type: SharingResourceType | None = None
    source_type: SharingEntityType | None = None
    source_id: str | None = None
    target_type: SharingEntityType | None = None
    target_id: str | None = None


@dataclass(frozen=True)
class DataSharingDecision:
    allowed: bool
    matched_policy_ids: tuple[str, ...] = ()


def _normalize_permissions(values: Iterable[SharingPermission | str]) -> list[str]:
    normalized = {str(getattr(item, "value", item)).strip().lower() for item in values}
    normalized.discard("")
    order = [item.value for item in SharingPermission]
    return sorted(normalized, key=lambda item: order.index(item) if item in order else len(order))


def _side_matches(policy_id: str, requested_id: str) -> bool:
    return policy_id in {SHARING_ANY_ID, requested_id}


def policy_matches(policy: DataSharingPolicy, request: DataSharingEvaluateRequest) -> bool:
    """Return True when an active policy grants the requested permission.

    ``all`` on either side of a policy matches any id of the same type, and a
    policy for resource type ``all`` covers every resource type.
    """
    if not policy.active:
        return False
    if policy.source_type != request.source_type or policy.target_type != request.target_type:
        return False
    if not _side_matches(policy.source_id, request.source_id):
        return False
    if not _side_matches(policy.target_id, request.target_id):
        return False
    if policy.resource_type not in {SharingResourceType.ALL, request.resource_type}:
        return False
    return request.permission.value in policy.permissions


class DataSharingService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_scoped_policy(self, session: Session, organization_id: str, policy_id: str) -> DataSharingPolicy:
        policy = session.exec(
            select(DataSharingPolicy)
            .where(DataSharingPolicy.organization_id == organization_id)
            .where(DataSharingPolicy.id == policy_id)
        ).first()
        if policy is None:
            raise NotFoundError("data sharing policy not found")
        return policy

    def _require_text(self, value: str | None, field_name: str) -> str:
        cleaned = (value or "").strip()
        if not cleaned:
            raise InvalidInputError(f"{field_name} is required")
        return cleaned

    def create_policy(
        self,
        organization_id: str,
        payload: DataSharingPolicyCreate,
        *,
        actor_id: str | None = None,
    ) -> DataSharingPolicy:
        name = self._require_text(payload.name, "name")
        source_id = self._require_text(payload.source_id, "source_id")
        target_id = self._require_text(payload.target_id, "target_id")
        permissions = _normalize_permissions(payload.permissions)
        if not permissions:
            raise InvalidInputError("at least one permission is required")

        with self._session() as session:
            if session.get(Organization, organization_id) is None:
                raise NotFoundError("organization not found")
            policy = DataSharingPolicy(
                organization_id=organization_id,
                name=name,
                description=payload.description,
                source_type=payload.source_type,
                source_id=source_id,
                target_type=payload.target_type,
                target_id=target_id,
                resource_type=payload.resource_type,
                permissions=permissions,
                active=payload.active,
                created_by=actor_id,
            )
            session.add(policy)
            session.commit()
            session.refresh(policy)

        logger.info("created data sharing policy %s in organization %s", policy.id, organization_id)
        event_bus.publish_dict(
            "data_sharing_policy.created",
            organization_id,
            {"policy_id": policy.id, "resource_type": str(policy.resource_type), "active": policy.active},
            actor_id=actor_id,
        )
        return policy

    def list_policies(
        self,
        organization_id: str,
        filters: DataSharingFilter | None = None,
    ) -> list[DataSharingPolicy]:
        criteria = filters or DataSharingFilter()
        with self._session() as session:
            statement = select(DataSharingPolicy).where(DataSharingPolicy.organization_id == organization_id)
            if criteria.active is not None:
                statement = statement.where(DataSharingPolicy.active == criteria.active)
            if criteria.resource_type is not None:
                statement = statement.where(DataSharingPolicy.resource_type == criteria.resource_type)
            if criteria.source_type is not None:
                statement = statement.where(DataSharingPolicy.source_type == criteria.source_type)
            if criteria.source_id is not None:
                statement = statement.where(DataSharingPolicy.source_id == criteria.source_id)
            if criteria.target_type is not None:
                statement = statement.where(DataSharingPolicy.target_type == criteria.target_type)
            if criteria.target_id is not None:
                statement = statement.where(DataSharingPolicy.target_id == criteria.target_id)
            statement = statement.order_by(col(DataSharingPolicy.name))
            return list(session.exec(statement).all())

    def get_policy(self, organization_id: str, policy_id: str) -> DataSharingPolicy:
        with self._session() as session:
            return self._get_scoped_policy(session, organization_id, policy_id)

    def update_policy(
        self,
        organization_id: str,
        policy_id: str,
        payload: DataSharingPolicyUpdate,
        *,
        actor_id: str | None = None,
    ) -> DataSharingPolicy:
        with self._session() as session:
            policy = self._get_scoped_policy(session, organization_id, policy_id)
            fields = payload.model_fields_set
            if "name" in fields:
                policy.name = self._require_text(payload.name, "name")
            if "description" in fields:
                policy.description = payload.description
            if "source_type" in fields and payload.source_type is not None:
                policy.source_type = payload.source_type
            if "source_id" in fields:
                policy.source_id = self._require_text(payload.source_id, "source_id")
            if "target_type" in fields and payload.target_type is not None:
                policy.target_type = payload.target_type
            if "target_id" in fields:
                policy.target_id = self._require_text(payload.target_id, "target_id")
            if "resource_type" in fields and payload.resource_type is not None:
                policy.resource_type = payload.resource_type
            if "permissions" in fields:
                permissions = _normalize_permissions(payload.permissions or [])
                if not permissions:
                    raise InvalidInputError("at least one permission is required")
                policy.permissions = permissions
            if "active" in fields and payload.active is not None:
                policy.active = payload.active
            policy.updated_at = now_utc()
            session.add(policy)
            session.commit()
            session.refresh(policy)

        event_bus.publish_dict(
            "data_sharing_policy.updated",
            organization_id,
            {"policy_id": policy.id, "fields": sorted(payload.model_fields_set)},
            actor_id=actor_id,
        )
        return policy

    def set_policy_active(
        self,
        organization_id: str,
        policy_id: str,
        active: bool,
        *,
        actor_id: str | None = None,
    ) -> DataSharingPolicy:
        with self._session() as session:
            policy = self._get_scoped_policy(session, organization_id, policy_id)
            policy.active = active
            policy.updated_at = now_utc()
            session.add(policy)
            session.commit()
            session.refresh(policy)

        event_bus.publish_dict(
            "data_sharing_policy.activated" if active else "data_sharing_policy.deactivated",
            organization_id,
            {"policy_id": policy.id, "active": policy.active},
            actor_id=actor_id,
        )
        return policy

    def toggle_policy(
        self,
        organization_id: str,
        policy_id: str,
        *,
        actor_id: str | None = None,
    ) -> DataSharingPolicy:
        current = self.get_policy(organization_id, policy_id)
        return self.set_policy_active(organization_id, policy_id, not current.active, actor_id=actor_id)

    def delete_policy(self, organization_id: str, policy_id: str, *, actor_id: str | None = None) -> None:
        with self._session() as session:
            policy = self._get_scoped_policy(session, organization_id, policy_id)
            session.delete(policy)
            session.commit()

        event_bus.publish_dict(
            "data_sharing_policy.deleted",
            organization_id,
            {"policy_id": policy_id},
            actor_id=actor_id,
        )

    def evaluate(self, organization_id: str, request: DataSharingEvaluateRequest) -> DataSharingDecision:
        with self._session() as session:
            candidates = session.exec(
                select(DataSharingPolicy)
                .where(DataSharingPolicy.organization_id == organization_id)
                .where(DataSharingPolicy.active == True)  # noqa: E712
                .where(DataSharingPolicy.source_type == request.source_type)
                .where(DataSharingPolicy.target_type == request.target_type)
            ).all()
            matched = tuple(sorted(item.id for item in candidates if policy_matches(item, request)))
        return DataSharingDecision(allowed=bool(matched), matched_policy_ids=matched)
