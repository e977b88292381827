from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from churchhub.domain.models import (
    Branch,
    BranchAccessEntry,
    BranchCreate,
    BranchUpdate,
    Organization,
    Role,
    RolePermission,
    SmallGroup,
    SmallGroupMember,
    User,
    UserBranchAccess,
    now_utc,
)
from churchhub.infra.db import get_engine
from churchhub.infra.events import event_bus

logger = logging.getLogger(__name__)


class BranchAccessError(Exception):
    pass


class NotFoundError(BranchAccessError):
    pass


class ConflictError(BranchAccessError):
    pass


class InvalidInputError(BranchAccessError):
    pass


@dataclass(frozen=True)
class BranchPermissions:
    permissions: list[str] = field(default_factory=list)
    branch_permissions: dict[str, list[str]] = field(default_factory=dict)
    home_branch_id: str | None = None


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive timestamps while fresh rows still hold aware ones.
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def drop_group_memberships(
    session: Session,
    organization_id: str,
    branch_ids: list[str],
    user_id: str | None = None,
) -> int:
    """Delete small-group memberships in the given branches, optionally for one user only."""
    if not branch_ids:
        return 0
    statement = (
        select(SmallGroupMember)
        .join(SmallGroup, col(SmallGroup.id) == col(SmallGroupMember.group_id))
        .where(SmallGroup.organization_id == organization_id)
        .where(col(SmallGroup.branch_id).in_(branch_ids))
    )
    if user_id is not None:
        statement = statement.where(SmallGroupMember.user_id == user_id)
    memberships = list(session.exec(statement).all())
    for membership in memberships:
        session.delete(membership)
    return len(memberships)


def _ordered_access(rows: list[UserBranchAccess]) -> list[UserBranchAccess]:
    return sorted(rows, key=lambda item: (not item.is_home_branch, _as_utc(item.created_at), item.branch_id))


def resolve_branch_permissions(session: Session, organization_id: str, user_id: str) -> BranchPermissions:
    """Resolve the permissions a user holds at each of their active branches."""
    rows = list(
        session.exec(
            select(UserBranchAccess)
            .where(UserBranchAccess.organization_id == organization_id)
            .where(UserBranchAccess.user_id == user_id)
        ).all()
    )
    if not rows:
        return BranchPermissions()

    active_branch_ids = set(
        session.exec(
            select(Branch.id)
            .where(Branch.organization_id == organization_id)
            .where(col(Branch.id).in_([row.branch_id for row in rows]))
            .where(Branch.is_active == True)  # noqa: E712
        ).all()
    )
    role_ids = sorted({row.role_id for row in rows})
    role_permissions: dict[str, set[str]] = defaultdict(set)
    for role_id, permission_id in session.exec(
        select(RolePermission.role_id, RolePermission.permission_id).where(col(RolePermission.role_id).in_(role_ids))
    ).all():
        role_permissions[role_id].add(permission_id)

    branch_permissions: dict[str, list[str]] = {}
    flattened: set[str] = set()
    home_branch_id: str | None = None
    for row in rows:
        if row.is_home_branch:
            home_branch_id = row.branch_id
        if row.branch_id not in active_branch_ids:
            continue
        granted = role_permissions.get(row.role_id, set())
        branch_permissions[row.branch_id] = sorted(granted)
        flattened.update(granted)

    return BranchPermissions(
        permissions=sorted(flattened),
        branch_permissions=branch_permissions,
        home_branch_id=home_branch_id,
    )


class BranchAccessService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_scoped_branch(self, session: Session, organization_id: str, branch_id: str) -> Branch | None:
        statement = select(Branch).where(Branch.organization_id == organization_id).where(Branch.id == branch_id)
        return session.exec(statement).first()

    def _require_user(self, session: Session, organization_id: str, user_id: str) -> User:
        user = session.exec(
            select(User).where(User.organization_id == organization_id).where(User.id == user_id)
        ).first()
        if user is None:
            raise NotFoundError("user not found")
        return user

    def _require_role(self, session: Session, organization_id: str, role_id: str) -> Role:
        role = session.exec(
            select(Role).where(Role.organization_id == organization_id).where(Role.id == role_id)
        ).first()
        if role is None:
            raise NotFoundError("role not found")
        return role

    def _user_rows(self, session: Session, organization_id: str, user_id: str) -> list[UserBranchAccess]:
        return list(
            session.exec(
                select(UserBranchAccess)
                .where(UserBranchAccess.organization_id == organization_id)
                .where(UserBranchAccess.user_id == user_id)
            ).all()
        )

    def _clear_home_flags(self, session: Session, rows: list[UserBranchAccess]) -> None:
        # The partial unique index rejects two home rows at any point, so the
        # clear has to reach the database before a new home is written.
        changed = False
        for row in rows:
            if row.is_home_branch:
                row.is_home_branch = False
                row.updated_at = now_utc()
                session.add(row)
                changed = True
        if changed:
            session.flush()

    def _promote_oldest(self, session: Session, rows: list[UserBranchAccess]) -> UserBranchAccess | None:
        if not rows:
            return None
        promoted = sorted(rows, key=lambda item: (_as_utc(item.created_at), item.branch_id))[0]
        promoted.is_home_branch = True
        promoted.updated_at = now_utc()
        session.add(promoted)
        return promoted

    # Branches

    def create_branch(self, organization_id: str, payload: BranchCreate) -> Branch:
        if not payload.name.strip():
            raise InvalidInputError("branch name is required")
        with self._session() as session:
            if session.get(Organization, organization_id) is None:
                raise NotFoundError("organization not found")
            branch = Branch(
                organization_id=organization_id,
                name=payload.name.strip(),
                location=payload.location,
                region=payload.region,
                is_active=payload.is_active,
            )
            session.add(branch)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("branch name already exists in organization") from exc
            session.refresh(branch)
            return branch

    def list_branches(
        self,
        organization_id: str,
        *,
        region: str | None = None,
        is_active: bool | None = None,
    ) -> list[Branch]:
        with self._session() as session:
            statement = select(Branch).where(Branch.organization_id == organization_id)
            if region is not None:
                statement = statement.where(Branch.region == region)
            if is_active is not None:
                statement = statement.where(Branch.is_active == is_active)
            return list(session.exec(statement.order_by(col(Branch.name))).all())

    def get_branch(self, organization_id: str, branch_id: str) -> Branch:
        with self._session() as session:
            branch = self._get_scoped_branch(session, organization_id, branch_id)
            if branch is None:
                raise NotFoundError("branch not found")
            return branch

    def update_branch(self, organization_id: str, branch_id: str, payload: BranchUpdate) -> Branch:
        with self._session() as session:
            branch = self._get_scoped_branch(session, organization_id, branch_id)
            if branch is None:
                raise NotFoundError("branch not found")
            if "name" in payload.model_fields_set and payload.name is not None:
                if not payload.name.strip():
                    raise InvalidInputError("branch name is required")
                branch.name = payload.name.strip()
            if "location" in payload.model_fields_set:
                branch.location = payload.location
            if "region" in payload.model_fields_set:
                branch.region = payload.region
            if "is_active" in payload.model_fields_set and payload.is_active is not None:
                branch.is_active = payload.is_active
            session.add(branch)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("branch name already exists in organization") from exc
            session.refresh(branch)
            return branch

    def delete_branch(self, organization_id: str, branch_id: str, *, actor_id: str | None = None) -> None:
        with self._session() as session:
            branch = self._get_scoped_branch(session, organization_id, branch_id)
            if branch is None:
                raise NotFoundError("branch not found")
            access_rows = list(
                session.exec(
                    select(UserBranchAccess)
                    .where(UserBranchAccess.organization_id == organization_id)
                    .where(UserBranchAccess.branch_id == branch_id)
                ).all()
            )
            orphaned_home_users = [row.user_id for row in access_rows if row.is_home_branch]
            drop_group_memberships(session, organization_id, [branch_id])
            session.flush()
            for group in session.exec(select(SmallGroup).where(SmallGroup.branch_id == branch_id)).all():
                session.delete(group)
            for row in access_rows:
                session.delete(row)
            session.flush()
            for user_id in orphaned_home_users:
                self._promote_oldest(session, self._user_rows(session, organization_id, user_id))
            session.delete(branch)
            session.commit()

        logger.info("deleted branch %s, rehomed %d users", branch_id, len(orphaned_home_users))
        event_bus.publish_dict(
            "branch.deleted",
            organization_id,
            {"branch_id": branch_id, "rehomed_user_ids": orphaned_home_users},
            actor_id=actor_id,
        )

    # Branch access

    def list_user_branch_access(self, organization_id: str, user_id: str) -> list[UserBranchAccess]:
        with self._session() as session:
            self._require_user(session, organization_id, user_id)
            return _ordered_access(self._user_rows(session, organization_id, user_id))

    def list_branch_users(self, organization_id: str, branch_id: str) -> list[UserBranchAccess]:
        with self._session() as session:
            if self._get_scoped_branch(session, organization_id, branch_id) is None:
                raise NotFoundError("branch not found")
            rows = session.exec(
                select(UserBranchAccess)
                .where(UserBranchAccess.organization_id == organization_id)
                .where(UserBranchAccess.branch_id == branch_id)
                .order_by(col(UserBranchAccess.created_at))
            ).all()
            return list(rows)

    def grant_branch_access(
        self,
        organization_id: str,
        user_id: str,
        entry: BranchAccessEntry,
        *,
        actor_id: str | None = None,
    ) -> UserBranchAccess:
        with self._session() as session:
            self._require_user(session, organization_id, user_id)
            branch = self._get_scoped_branch(session, organization_id, entry.branch_id)
            if branch is None:
                raise NotFoundError("branch not found")
            if not branch.is_active:
                raise ConflictError("branch is inactive")
            self._require_role(session, organization_id, entry.role_id)

            rows = self._user_rows(session, organization_id, user_id)
            if any(row.branch_id == entry.branch_id for row in rows):
                raise ConflictError("user already has access to branch")

            make_home = entry.is_home_branch or not rows
            if make_home:
                self._clear_home_flags(session, rows)
            access = UserBranchAccess(
                organization_id=organization_id,
                user_id=user_id,
                branch_id=entry.branch_id,
                role_id=entry.role_id,
                is_home_branch=make_home,
            )
            session.add(access)
            session.commit()
            session.refresh(access)

        event_bus.publish_dict(
            "branch_access.granted",
            organization_id,
            {
                "user_id": user_id,
                "branch_id": access.branch_id,
                "role_id": access.role_id,
                "is_home_branch": access.is_home_branch,
            },
            actor_id=actor_id,
        )
        return access

    def replace_user_branch_access(
        self,
        organization_id: str,
        user_id: str,
        entries: list[BranchAccessEntry],
        *,
        actor_id: str | None = None,
    ) -> list[UserBranchAccess]:
        if not entries:
            raise InvalidInputError("at least one branch access entry is required")
        branch_ids = [item.branch_id for item in entries]
        if len(set(branch_ids)) != len(branch_ids):
            raise InvalidInputError("duplicate branch in access list")
        home_entries = [item for item in entries if item.is_home_branch]
        if len(home_entries) > 1:
            raise InvalidInputError("only one home branch is allowed")
        home_branch_id = home_entries[0].branch_id if home_entries else entries[0].branch_id

        with self._session() as session:
            self._require_user(session, organization_id, user_id)
            branches = {
                item.id: item
                for item in session.exec(
                    select(Branch)
                    .where(Branch.organization_id == organization_id)
                    .where(col(Branch.id).in_(branch_ids))
                ).all()
            }
            missing = [item for item in branch_ids if item not in branches]
            if missing:
                raise NotFoundError(f"branch not found: {', '.join(missing)}")
            for role_id in sorted({item.role_id for item in entries}):
                self._require_role(session, organization_id, role_id)

            existing = {row.branch_id: row for row in self._user_rows(session, organization_id, user_id)}
            for branch_id in branch_ids:
                if branch_id not in existing and not branches[branch_id].is_active:
                    raise ConflictError("branch is inactive")

            self._clear_home_flags(session, list(existing.values()))
            removed = [branch_id for branch_id in existing if branch_id not in branch_ids]
            drop_group_memberships(session, organization_id, removed, user_id)
            for branch_id in removed:
                session.delete(existing[branch_id])
            session.flush()

            for entry in entries:
                row = existing.get(entry.branch_id)
                if row is None:
                    row = UserBranchAccess(
                        organization_id=organization_id,
                        user_id=user_id,
                        branch_id=entry.branch_id,
                        role_id=entry.role_id,
                    )
                row.role_id = entry.role_id
                row.is_home_branch = entry.branch_id == home_branch_id
                row.updated_at = now_utc()
                session.add(row)
            session.commit()
            result = _ordered_access(self._user_rows(session, organization_id, user_id))

        event_bus.publish_dict(
            "branch_access.replaced",
            organization_id,
            {
                "user_id": user_id,
                "home_branch_id": home_branch_id,
                "entries": [
                    {"branch_id": row.branch_id, "role_id": row.role_id, "is_home_branch": row.is_home_branch}
                    for row in result
                ],
            },
            actor_id=actor_id,
        )
        return result

    def update_branch_role(
        self,
        organization_id: str,
        user_id: str,
        branch_id: str,
        role_id: str,
        *,
        actor_id: str | None = None,
    ) -> UserBranchAccess:
        with self._session() as session:
            self._require_user(session, organization_id, user_id)
            self._require_role(session, organization_id, role_id)
            access = session.get(UserBranchAccess, (organization_id, user_id, branch_id))
            if access is None:
                raise NotFoundError("branch access not found")
            previous_role_id = access.role_id
            access.role_id = role_id
            access.updated_at = now_utc()
            session.add(access)
            session.commit()
            session.refresh(access)

        event_bus.publish_dict(
            "branch_access.role_changed",
            organization_id,
            {
                "user_id": user_id,
                "branch_id": branch_id,
                "previous_role_id": previous_role_id,
                "role_id": role_id,
            },
            actor_id=actor_id,
        )
        return access

    def set_home_branch(
        self,
        organization_id: str,
        user_id: str,
        branch_id: str,
        *,
        actor_id: str | None = None,
    ) -> list[UserBranchAccess]:
        with self._session() as session:
            self._require_user(session, organization_id, user_id)
            rows = self._user_rows(session, organization_id, user_id)
            target = next((row for row in rows if row.branch_id == branch_id), None)
            if target is None:
                raise NotFoundError("branch access not found")
            if not target.is_home_branch:
                self._clear_home_flags(session, rows)
                target.is_home_branch = True
                target.updated_at = now_utc()
                session.add(target)
                session.commit()
            result = _ordered_access(self._user_rows(session, organization_id, user_id))

        event_bus.publish_dict(
            "branch_access.home_changed",
            organization_id,
            {"user_id": user_id, "home_branch_id": branch_id},
            actor_id=actor_id,
        )
        return result

    def revoke_branch_access(
        self,
        organization_id: str,
        user_id: str,
        branch_id: str,
        *,
        actor_id: str | None = None,
    ) -> list[UserBranchAccess]:
        with self._session() as session:
            self._require_user(session, organization_id, user_id)
            rows = self._user_rows(session, organization_id, user_id)
            target = next((row for row in rows if row.branch_id == branch_id), None)
            if target is None:
                raise NotFoundError("branch access not found")
            if len(rows) == 1:
                raise ConflictError("cannot remove the last branch access")

            was_home = target.is_home_branch
            dropped = drop_group_memberships(session, organization_id, [branch_id], user_id)
            session.delete(target)
            session.flush()
            promoted = None
            if was_home:
                remaining = [row for row in rows if row.branch_id != branch_id]
                promoted = self._promote_oldest(session, remaining)
            session.commit()
            result = _ordered_access(self._user_rows(session, organization_id, user_id))

        event_bus.publish_dict(
            "branch_access.revoked",
            organization_id,
            {
                "user_id": user_id,
                "branch_id": branch_id,
                "promoted_home_branch_id": promoted.branch_id if promoted is not None else None,
                "dropped_group_memberships": dropped,
            },
            actor_id=actor_id,
        )
        return result

    def effective_permissions(self, organization_id: str, user_id: str) -> BranchPermissions:
        with self._session() as session:
            self._require_user(session, organization_id, user_id)
            return resolve_branch_permissions(session, organization_id, user_id)
