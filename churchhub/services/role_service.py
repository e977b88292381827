from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from churchhub.domain.models import (
    Permission,
    PermissionCreate,
    PermissionGroupRead,
    PermissionRead,
    PermissionUpdate,
    Role,
    RoleCreate,
    RolePermission,
    RoleRead,
    RoleUpdate,
    UserBranchAccess,
)
from churchhub.domain.permissions import (
    DEFAULT_PERMISSION_IDS,
    DEFAULT_PERMISSIONS,
    PERM_BRANCHES_EDIT,
    PERM_BRANCHES_MANAGE_STAFF,
    PERM_BRANCHES_VIEW,
    PERM_EVENTS_ATTENDANCE,
    PERM_EVENTS_CREATE,
    PERM_EVENTS_EDIT,
    PERM_EVENTS_VIEW,
    PERM_GROUPS_MANAGE,
    PERM_GROUPS_VIEW,
    PERM_MEMBERS_CREATE,
    PERM_MEMBERS_EDIT,
    PERM_MEMBERS_TRANSFER,
    PERM_MEMBERS_VIEW,
    PERM_REPORTS_EXPORT,
    PERM_REPORTS_VIEW,
    PERM_SACRAMENTS_CERTIFICATES,
    PERM_SACRAMENTS_CREATE,
    PERM_SACRAMENTS_EDIT,
    PERM_SACRAMENTS_VIEW,
)
from churchhub.infra.db import get_engine
from churchhub.infra.events import event_bus

logger = logging.getLogger(__name__)


class RoleError(Exception):
    pass


class NotFoundError(RoleError):
    pass


class ConflictError(RoleError):
    pass


class InvalidInputError(RoleError):
    pass


def _require_custom_permission(permission_id: str) -> None:
    if permission_id in DEFAULT_PERMISSION_IDS:
        raise ConflictError("default permissions are read-only")


def ensure_default_permissions(session: Session) -> list[Permission]:
    existing = session.exec(select(Permission)).all()
    by_id = {item.id: item for item in existing}
    created: list[Permission] = []
    for perm_id, name, subject in DEFAULT_PERMISSIONS:
        if perm_id in by_id:
            continue
        perm = Permission(id=perm_id, name=name, subject=subject, description=f"default permission {perm_id}")
        session.add(perm)
        created.append(perm)
    if created:
        session.commit()
        logger.info("seeded %d default permissions", len(created))
    return list(session.exec(select(Permission)).all())


def group_permissions_by_subject(permissions: Iterable[Permission]) -> list[PermissionGroupRead]:
    grouped: dict[str, list[PermissionRead]] = {}
    for permission in sorted(permissions, key=lambda item: (item.subject, item.id)):
        grouped.setdefault(permission.subject, []).append(PermissionRead.model_validate(permission))
    return [PermissionGroupRead(subject=subject, permissions=items) for subject, items in grouped.items()]


class RoleService:
    ROLE_TEMPLATES: tuple[dict[str, Any], ...] = (
        {
            "key": "branch_admin",
            "name": "branch_admin",
            "description": "full administration of a single branch",
            "permissions": [
                PERM_MEMBERS_VIEW,
                PERM_MEMBERS_CREATE,
                PERM_MEMBERS_EDIT,
                PERM_MEMBERS_TRANSFER,
                PERM_SACRAMENTS_VIEW,
                PERM_SACRAMENTS_CREATE,
                PERM_SACRAMENTS_EDIT,
                PERM_BRANCHES_VIEW,
                PERM_BRANCHES_EDIT,
                PERM_BRANCHES_MANAGE_STAFF,
                PERM_EVENTS_VIEW,
                PERM_EVENTS_CREATE,
                PERM_EVENTS_EDIT,
                PERM_GROUPS_VIEW,
                PERM_GROUPS_MANAGE,
                PERM_REPORTS_VIEW,
                PERM_REPORTS_EXPORT,
            ],
        },
        {
            "key": "pastor",
            "name": "pastor",
            "description": "pastoral staff with sacramental records",
            "permissions": [
                PERM_MEMBERS_VIEW,
                PERM_MEMBERS_EDIT,
                PERM_SACRAMENTS_VIEW,
                PERM_SACRAMENTS_CREATE,
                PERM_SACRAMENTS_EDIT,
                PERM_SACRAMENTS_CERTIFICATES,
                PERM_EVENTS_VIEW,
                PERM_GROUPS_VIEW,
                PERM_REPORTS_VIEW,
            ],
        },
        {
            "key": "ministry_leader",
            "name": "ministry_leader",
            "description": "leads a ministry or small groups",
            "permissions": [
                PERM_MEMBERS_VIEW,
                PERM_EVENTS_VIEW,
                PERM_EVENTS_CREATE,
                PERM_EVENTS_ATTENDANCE,
                PERM_GROUPS_VIEW,
                PERM_GROUPS_MANAGE,
            ],
        },
        {
            "key": "staff",
            "name": "staff",
            "description": "branch office staff",
            "permissions": [
                PERM_MEMBERS_VIEW,
                PERM_MEMBERS_CREATE,
                PERM_EVENTS_VIEW,
                PERM_EVENTS_ATTENDANCE,
                PERM_GROUPS_VIEW,
            ],
        },
        {
            "key": "volunteer",
            "name": "volunteer",
            "description": "event and attendance volunteer",
            "permissions": [
                PERM_EVENTS_VIEW,
                PERM_EVENTS_ATTENDANCE,
            ],
        },
        {
            "key": "member",
            "name": "member",
            "description": "regular church member",
            "permissions": [
                PERM_EVENTS_VIEW,
                PERM_GROUPS_VIEW,
            ],
        },
    )

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_scoped_role(self, session: Session, organization_id: str, role_id: str) -> Role | None:
        statement = select(Role).where(Role.organization_id == organization_id).where(Role.id == role_id)
        return session.exec(statement).first()

    def _role_permissions(self, session: Session, role_id: str) -> list[Permission]:
        statement = (
            select(Permission)
            .join(RolePermission, col(RolePermission.permission_id) == col(Permission.id))
            .where(RolePermission.role_id == role_id)
            .order_by(col(Permission.id))
        )
        return list(session.exec(statement).all())

    def _to_read(self, session: Session, role: Role) -> RoleRead:
        permissions = self._role_permissions(session, role.id)
        return RoleRead(
            id=role.id,
            organization_id=role.organization_id,
            name=role.name,
            description=role.description,
            is_system=role.is_system,
            permissions=[PermissionRead.model_validate(item) for item in permissions],
            created_at=role.created_at,
        )

    def _resolve_permission_ids(self, session: Session, permission_ids: Iterable[str]) -> list[str]:
        unique_ids = sorted({item.strip() for item in permission_ids if item.strip()})
        if not unique_ids:
            return []
        found = set(session.exec(select(Permission.id).where(col(Permission.id).in_(unique_ids))).all())
        missing = [item for item in unique_ids if item not in found]
        if missing:
            raise NotFoundError(f"permission not found: {', '.join(missing)}")
        return unique_ids

    def _replace_role_permissions(self, session: Session, role_id: str, permission_ids: list[str]) -> None:
        current = list(session.exec(select(RolePermission).where(RolePermission.role_id == role_id)).all())
        wanted = set(permission_ids)
        for link in current:
            if link.permission_id not in wanted:
                session.delete(link)
        current_ids = {link.permission_id for link in current}
        for permission_id in permission_ids:
            if permission_id not in current_ids:
                session.add(RolePermission(role_id=role_id, permission_id=permission_id))

    def list_permissions(self, subject: str | None = None) -> list[Permission]:
        with self._session() as session:
            ensure_default_permissions(session)
            statement = select(Permission)
            if subject is not None:
                statement = statement.where(Permission.subject == subject)
            statement = statement.order_by(col(Permission.subject), col(Permission.id))
            return list(session.exec(statement).all())

    def list_permission_groups(self) -> list[PermissionGroupRead]:
        return group_permissions_by_subject(self.list_permissions())

    def create_permission(self, payload: PermissionCreate) -> Permission:
        perm_id = payload.id.strip()
        if not perm_id or not payload.name.strip() or not payload.subject.strip():
            raise InvalidInputError("permission id, name and subject are required")
        with self._session() as session:
            if session.get(Permission, perm_id) is not None:
                raise ConflictError("permission already exists")
            permission = Permission(
                id=perm_id,
                name=payload.name.strip(),
                subject=payload.subject.strip(),
                description=payload.description,
            )
            session.add(permission)
            session.commit()
            session.refresh(permission)
            return permission

    def update_permission(self, permission_id: str, payload: PermissionUpdate) -> Permission:
        _require_custom_permission(permission_id)
        with self._session() as session:
            permission = session.get(Permission, permission_id)
            if permission is None:
                raise NotFoundError("permission not found")
            if payload.name is not None:
                if not payload.name.strip():
                    raise InvalidInputError("permission name is required")
                permission.name = payload.name.strip()
            if payload.subject is not None:
                if not payload.subject.strip():
                    raise InvalidInputError("permission subject is required")
                permission.subject = payload.subject.strip()
            if payload.description is not None:
                permission.description = payload.description
            session.add(permission)
            session.commit()
            session.refresh(permission)
            return permission

    def delete_permission(self, organization_id: str, permission_id: str) -> None:
        """Delete a custom permission and unbind it from the caller's roles.

        The catalog is shared, so a permission still bound to another
        organization's roles is a conflict.
        """
        _require_custom_permission(permission_id)
        with self._session() as session:
            permission = session.get(Permission, permission_id)
            if permission is None:
                raise NotFoundError("permission not found")
            links = session.exec(
                select(RolePermission, Role)
                .join(Role, col(Role.id) == col(RolePermission.role_id))
                .where(RolePermission.permission_id == permission_id)
            ).all()
            if any(role.organization_id != organization_id for _, role in links):
                raise ConflictError("permission is used by another organization")
            for link, _ in links:
                session.delete(link)
            session.flush()
            session.delete(permission)
            session.commit()

    def create_role(self, organization_id: str, payload: RoleCreate, *, actor_id: str | None = None) -> RoleRead:
        name = payload.name.strip()
        if not name:
            raise InvalidInputError("role name is required")
        if payload.permission_ids is not None:
            if not (payload.description or "").strip():
                raise InvalidInputError("role description is required")
            if not [item for item in payload.permission_ids if item.strip()]:
                raise InvalidInputError("at least one permission is required")

        with self._session() as session:
            ensure_default_permissions(session)
            permission_ids = self._resolve_permission_ids(session, payload.permission_ids or [])
            role = Role(organization_id=organization_id, name=name, description=payload.description)
            session.add(role)
            try:
                session.flush()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("role name already exists in organization") from exc
            for permission_id in permission_ids:
                session.add(RolePermission(role_id=role.id, permission_id=permission_id))
            session.commit()
            session.refresh(role)
            result = self._to_read(session, role)

        event_bus.publish_dict(
            "role.created",
            organization_id,
            {"role_id": result.id, "name": result.name, "permission_ids": permission_ids},
            actor_id=actor_id,
        )
        return result

    def list_roles(self, organization_id: str) -> list[RoleRead]:
        with self._session() as session:
            roles = session.exec(
                select(Role).where(Role.organization_id == organization_id).order_by(col(Role.name))
            ).all()
            return [self._to_read(session, role) for role in roles]

    def get_role(self, organization_id: str, role_id: str) -> RoleRead:
        with self._session() as session:
            role = self._get_scoped_role(session, organization_id, role_id)
            if role is None:
                raise NotFoundError("role not found")
            return self._to_read(session, role)

    def update_role(
        self,
        organization_id: str,
        role_id: str,
        payload: RoleUpdate,
        *,
        actor_id: str | None = None,
    ) -> RoleRead:
        with self._session() as session:
            role = self._get_scoped_role(session, organization_id, role_id)
            if role is None:
                raise NotFoundError("role not found")
            if payload.name is not None:
                if not payload.name.strip():
                    raise InvalidInputError("role name is required")
                role.name = payload.name.strip()
            if payload.description is not None:
                role.description = payload.description
            if payload.permission_ids is not None:
                if role.is_system:
                    raise ConflictError("system role permissions cannot be changed")
                permission_ids = self._resolve_permission_ids(session, payload.permission_ids)
                if not permission_ids:
                    raise InvalidInputError("at least one permission is required")
                self._replace_role_permissions(session, role.id, permission_ids)
            session.add(role)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("role name already exists in organization") from exc
            session.refresh(role)
            result = self._to_read(session, role)

        event_bus.publish_dict(
            "role.updated",
            organization_id,
            {"role_id": result.id, "permission_ids": [item.id for item in result.permissions]},
            actor_id=actor_id,
        )
        return result

    def delete_role(self, organization_id: str, role_id: str, *, actor_id: str | None = None) -> None:
        with self._session() as session:
            role = self._get_scoped_role(session, organization_id, role_id)
            if role is None:
                raise NotFoundError("role not found")
            if role.is_system:
                raise ConflictError("system role cannot be deleted")
            in_use = session.exec(
                select(UserBranchAccess.user_id)
                .where(UserBranchAccess.organization_id == organization_id)
                .where(UserBranchAccess.role_id == role_id)
            ).first()
            if in_use is not None:
                raise ConflictError("role is assigned to branch access")
            for link in session.exec(select(RolePermission).where(RolePermission.role_id == role_id)).all():
                session.delete(link)
            session.delete(role)
            session.commit()

        event_bus.publish_dict("role.deleted", organization_id, {"role_id": role_id}, actor_id=actor_id)

    def bind_role_permission(self, organization_id: str, role_id: str, permission_id: str) -> None:
        with self._session() as session:
            role = self._get_scoped_role(session, organization_id, role_id)
            permission = session.get(Permission, permission_id)
            if role is None or permission is None:
                raise NotFoundError("role or permission not found")
            if role.is_system:
                raise ConflictError("system role permissions cannot be changed")
            if session.get(RolePermission, (role_id, permission_id)) is None:
                session.add(RolePermission(role_id=role_id, permission_id=permission_id))
                session.commit()

    def unbind_role_permission(self, organization_id: str, role_id: str, permission_id: str) -> None:
        with self._session() as session:
            role = self._get_scoped_role(session, organization_id, role_id)
            if role is None:
                raise NotFoundError("role not found")
            if role.is_system:
                raise ConflictError("system role permissions cannot be changed")
            link = session.get(RolePermission, (role_id, permission_id))
            if link is None:
                return
            session.delete(link)
            session.commit()

    def list_role_templates(self) -> list[dict[str, Any]]:
        return [
            {
                "key": str(item["key"]),
                "name": str(item["name"]),
                "description": str(item["description"]),
                "permissions": list(item["permissions"]),
            }
            for item in self.ROLE_TEMPLATES
        ]

    def create_role_from_template(
        self,
        *,
        organization_id: str,
        template_key: str,
        name: str | None = None,
        actor_id: str | None = None,
    ) -> RoleRead:
        template = next((item for item in self.ROLE_TEMPLATES if item["key"] == template_key), None)
        if template is None:
            raise NotFoundError("role template not found")
        payload = RoleCreate(
            name=name or str(template["name"]),
            description=str(template["description"]),
            permission_ids=list(template["permissions"]),
        )
        return self.create_role(organization_id, payload, actor_id=actor_id)
