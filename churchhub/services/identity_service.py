from __future__ import annotations

import hashlib
import logging
import os

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from churchhub.domain.models import (
    BootstrapAdminRequest,
    Branch,
    DataSharingPolicy,
    Organization,
    OrganizationCreate,
    OrganizationUpdate,
    Role,
    RolePermission,
    SmallGroupMember,
    User,
    UserBranchAccess,
    UserCreate,
    UserUpdate,
)
from churchhub.domain.permissions import PERM_WILDCARD
from churchhub.infra.db import get_engine
from churchhub.infra.events import event_bus
from churchhub.services.branch_access_service import BranchPermissions, resolve_branch_permissions
from churchhub.services.role_service import ensure_default_permissions

logger = logging.getLogger(__name__)

SUPER_ADMIN_ROLE_NAME = "super_admin"


class IdentityError(Exception):
    pass


class NotFoundError(IdentityError):
    pass


class ConflictError(IdentityError):
    pass


class AuthError(IdentityError):
    pass


class IdentityService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _hash_password(self, raw_password: str) -> str:
        salt = os.getenv("PASSWORD_SALT", "churchhub-dev-salt")
        return hashlib.sha256(f"{salt}:{raw_password}".encode()).hexdigest()

    def _get_scoped_user(self, session: Session, organization_id: str, user_id: str) -> User | None:
        statement = select(User).where(User.organization_id == organization_id).where(User.id == user_id)
        return session.exec(statement).first()

    def create_organization(self, payload: OrganizationCreate) -> Organization:
        with self._session() as session:
            organization = Organization(name=payload.name)
            session.add(organization)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("organization name already exists") from exc
            session.refresh(organization)
            logger.info("created organization %s", organization.id)
            return organization

    def get_organization(self, organization_id: str) -> Organization:
        with self._session() as session:
            organization = session.get(Organization, organization_id)
            if organization is None:
                raise NotFoundError("organization not found")
            return organization

    def update_organization(self, organization_id: str, payload: OrganizationUpdate) -> Organization:
        with self._session() as session:
            organization = session.get(Organization, organization_id)
            if organization is None:
                raise NotFoundError("organization not found")
            organization.name = payload.name
            session.add(organization)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("organization name already exists") from exc
            session.refresh(organization)
            return organization

    def delete_organization(self, organization_id: str) -> None:
        with self._session() as session:
            organization = session.get(Organization, organization_id)
            if organization is None:
                raise NotFoundError("organization not found")
            has_users = session.exec(select(User.id).where(User.organization_id == organization_id)).first()
            has_branches = session.exec(
                select(Branch.id).where(Branch.organization_id == organization_id)
            ).first()
            if has_users is not None or has_branches is not None:
                raise ConflictError("organization still has users or branches")
            role_ids = list(session.exec(select(Role.id).where(Role.organization_id == organization_id)).all())
            if role_ids:
                for link in session.exec(
                    select(RolePermission).where(col(RolePermission.role_id).in_(role_ids))
                ).all():
                    session.delete(link)
            for role in session.exec(select(Role).where(Role.organization_id == organization_id)).all():
                session.delete(role)
            for policy in session.exec(
                select(DataSharingPolicy).where(DataSharingPolicy.organization_id == organization_id)
            ).all():
                session.delete(policy)
            session.flush()
            session.delete(organization)
            session.commit()

    def bootstrap_admin(self, payload: BootstrapAdminRequest) -> User:
        with self._session() as session:
            organization = session.get(Organization, payload.organization_id)
            if organization is None:
                raise NotFoundError("organization not found")
            existing_user = session.exec(
                select(User.id).where(User.organization_id == payload.organization_id)
            ).first()
            if existing_user is not None:
                raise ConflictError("organization already initialized")

            ensure_default_permissions(session)
            branch = Branch(
                organization_id=payload.organization_id,
                name=payload.branch_name,
                location=payload.branch_location,
            )
            admin_role = Role(
                organization_id=payload.organization_id,
                name=SUPER_ADMIN_ROLE_NAME,
                description="bootstrap super admin role",
                is_system=True,
            )
            admin_user = User(
                organization_id=payload.organization_id,
                username=payload.username,
                password_hash=self._hash_password(payload.password),
                is_active=True,
            )
            session.add(branch)
            session.add(admin_role)
            session.add(admin_user)
            session.flush()

            session.add(RolePermission(role_id=admin_role.id, permission_id=PERM_WILDCARD))
            session.add(
                UserBranchAccess(
                    organization_id=payload.organization_id,
                    user_id=admin_user.id,
                    branch_id=branch.id,
                    role_id=admin_role.id,
                    is_home_branch=True,
                )
            )
            session.commit()
            session.refresh(admin_user)

        logger.info("bootstrapped organization %s with admin %s", payload.organization_id, admin_user.id)
        event_bus.publish_dict(
            "organization.bootstrapped",
            payload.organization_id,
            {"admin_user_id": admin_user.id, "branch_id": branch.id, "role_id": admin_role.id},
            actor_id=admin_user.id,
        )
        return admin_user

    def dev_login(self, organization_id: str, username: str, password: str) -> tuple[User, BranchPermissions]:
        with self._session() as session:
            user = session.exec(
                select(User).where(User.organization_id == organization_id).where(User.username == username)
            ).first()
            if user is None or user.password_hash != self._hash_password(password):
                raise AuthError("invalid credentials")
            if not user.is_active:
                raise AuthError("user is inactive")
            resolved = resolve_branch_permissions(session, organization_id, user.id)
            return user, resolved

    def count_users(self, organization_id: str) -> int:
        with self._session() as session:
            statement = select(func.count()).select_from(User).where(User.organization_id == organization_id)
            return int(session.exec(statement).one())

    def create_user(self, organization_id: str, payload: UserCreate) -> User:
        with self._session() as session:
            if session.get(Organization, organization_id) is None:
                raise NotFoundError("organization not found")
            user = User(
                organization_id=organization_id,
                username=payload.username,
                email=payload.email,
                first_name=payload.first_name,
                last_name=payload.last_name,
                password_hash=self._hash_password(payload.password),
                is_active=payload.is_active,
            )
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("username already exists in organization") from exc
            session.refresh(user)
            return user

    def list_users(
        self,
        organization_id: str,
        *,
        search: str | None = None,
        is_active: bool | None = None,
    ) -> list[User]:
        with self._session() as session:
            statement = select(User).where(User.organization_id == organization_id)
            if is_active is not None:
                statement = statement.where(User.is_active == is_active)
            term = (search or "").strip().lower()
            if term:
                pattern = f"%{term}%"
                statement = statement.where(
                    or_(
                        func.lower(User.username).like(pattern),
                        func.lower(func.coalesce(User.email, "")).like(pattern),
                        func.lower(func.coalesce(User.first_name, "")).like(pattern),
                        func.lower(func.coalesce(User.last_name, "")).like(pattern),
                    )
                )
            statement = statement.order_by(col(User.username))
            return list(session.exec(statement).all())

    def get_user(self, organization_id: str, user_id: str) -> User:
        with self._session() as session:
            user = self._get_scoped_user(session, organization_id, user_id)
            if user is None:
                raise NotFoundError("user not found")
            return user

    def update_user(self, organization_id: str, user_id: str, payload: UserUpdate) -> User:
        with self._session() as session:
            user = self._get_scoped_user(session, organization_id, user_id)
            if user is None:
                raise NotFoundError("user not found")
            if payload.password is not None:
                user.password_hash = self._hash_password(payload.password)
            if payload.email is not None:
                user.email = payload.email
            if payload.first_name is not None:
                user.first_name = payload.first_name
            if payload.last_name is not None:
                user.last_name = payload.last_name
            if payload.is_active is not None:
                user.is_active = payload.is_active
            session.add(user)
            session.commit()
            session.refresh(user)
            return user

    def delete_user(self, organization_id: str, user_id: str) -> None:
        with self._session() as session:
            user = self._get_scoped_user(session, organization_id, user_id)
            if user is None:
                raise NotFoundError("user not found")
            for membership in session.exec(select(SmallGroupMember).where(SmallGroupMember.user_id == user_id)).all():
                session.delete(membership)
            for access in session.exec(
                select(UserBranchAccess)
                .where(UserBranchAccess.organization_id == organization_id)
                .where(UserBranchAccess.user_id == user_id)
            ).all():
                session.delete(access)
            session.flush()
            session.delete(user)
            session.commit()
        logger.info("deleted user %s from organization %s", user_id, organization_id)
