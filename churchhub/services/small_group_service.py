from __future__ import annotations

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from churchhub.domain.models import (
    Branch,
    SmallGroup,
    SmallGroupCreate,
    SmallGroupMember,
    SmallGroupMemberRole,
    SmallGroupMemberUpsert,
    SmallGroupUpdate,
    User,
    UserBranchAccess,
)
from churchhub.infra.db import get_engine
from churchhub.infra.events import event_bus


class SmallGroupError(Exception):
    pass


class NotFoundError(SmallGroupError):
    pass


class ConflictError(SmallGroupError):
    pass


class InvalidInputError(SmallGroupError):
    pass


class SmallGroupService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_scoped_group(self, session: Session, organization_id: str, group_id: str) -> SmallGroup:
        group = session.exec(
            select(SmallGroup)
            .where(SmallGroup.organization_id == organization_id)
            .where(SmallGroup.id == group_id)
        ).first()
        if group is None:
            raise NotFoundError("small group not found")
        return group

    def get_group_branch_id(self, organization_id: str, group_id: str) -> str:
        with self._session() as session:
            return self._get_scoped_group(session, organization_id, group_id).branch_id

    def create_group(self, organization_id: str, payload: SmallGroupCreate) -> SmallGroup:
        name = payload.name.strip()
        if not name:
            raise InvalidInputError("group name is required")
        with self._session() as session:
            branch = session.exec(
                select(Branch)
                .where(Branch.organization_id == organization_id)
                .where(Branch.id == payload.branch_id)
            ).first()
            if branch is None:
                raise NotFoundError("branch not found")
            group = SmallGroup(
                organization_id=organization_id,
                branch_id=payload.branch_id,
                name=name,
                group_type=payload.group_type,
                description=payload.description,
                meeting_schedule=payload.meeting_schedule,
                is_active=payload.is_active,
            )
            session.add(group)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("group name already exists in branch") from exc
            session.refresh(group)
            return group

    def list_groups(
        self,
        organization_id: str,
        *,
        branch_id: str | None = None,
        group_type: str | None = None,
        is_active: bool | None = None,
    ) -> list[SmallGroup]:
        with self._session() as session:
            statement = select(SmallGroup).where(SmallGroup.organization_id == organization_id)
            if branch_id is not None:
                statement = statement.where(SmallGroup.branch_id == branch_id)
            if group_type is not None:
                statement = statement.where(SmallGroup.group_type == group_type)
            if is_active is not None:
                statement = statement.where(SmallGroup.is_active == is_active)
            return list(session.exec(statement.order_by(col(SmallGroup.name))).all())

    def get_group(self, organization_id: str, group_id: str) -> SmallGroup:
        with self._session() as session:
            return self._get_scoped_group(session, organization_id, group_id)

    def update_group(self, organization_id: str, group_id: str, payload: SmallGroupUpdate) -> SmallGroup:
        with self._session() as session:
            group = self._get_scoped_group(session, organization_id, group_id)
            if payload.name is not None:
                if not payload.name.strip():
                    raise InvalidInputError("group name is required")
                group.name = payload.name.strip()
            if payload.group_type is not None:
                group.group_type = payload.group_type
            if payload.description is not None:
                group.description = payload.description
            if payload.meeting_schedule is not None:
                group.meeting_schedule = payload.meeting_schedule
            if payload.is_active is not None:
                group.is_active = payload.is_active
            session.add(group)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("group name already exists in branch") from exc
            session.refresh(group)
            return group

    def delete_group(self, organization_id: str, group_id: str) -> None:
        with self._session() as session:
            group = self._get_scoped_group(session, organization_id, group_id)
            for member in session.exec(select(SmallGroupMember).where(SmallGroupMember.group_id == group_id)).all():
                session.delete(member)
            session.delete(group)
            session.commit()

    def upsert_member(
        self,
        organization_id: str,
        group_id: str,
        user_id: str,
        payload: SmallGroupMemberUpsert,
        *,
        actor_id: str | None = None,
    ) -> SmallGroupMember:
        with self._session() as session:
            group = self._get_scoped_group(session, organization_id, group_id)
            user = session.exec(
                select(User).where(User.organization_id == organization_id).where(User.id == user_id)
            ).first()
            if user is None:
                raise NotFoundError("user not found")
            access = session.get(UserBranchAccess, (organization_id, user_id, group.branch_id))
            if access is None:
                raise ConflictError("user has no access to the group's branch")

            member = session.get(SmallGroupMember, (group_id, user_id))
            if member is None:
                member = SmallGroupMember(group_id=group_id, user_id=user_id)
            member.member_role = payload.member_role
            member.position = payload.position
            session.add(member)
            session.commit()
            session.refresh(member)

        event_bus.publish_dict(
            "small_group.member_upserted",
            organization_id,
            {"group_id": group_id, "user_id": user_id, "member_role": str(member.member_role)},
            actor_id=actor_id,
        )
        return member

    def list_members(self, organization_id: str, group_id: str) -> list[SmallGroupMember]:
        with self._session() as session:
            self._get_scoped_group(session, organization_id, group_id)
            members = session.exec(select(SmallGroupMember).where(SmallGroupMember.group_id == group_id)).all()
            return sorted(members, key=lambda item: (item.member_role != SmallGroupMemberRole.EXECUTIVE, item.user_id))

    def remove_member(self, organization_id: str, group_id: str, user_id: str) -> None:
        with self._session() as session:
            self._get_scoped_group(session, organization_id, group_id)
            member = session.get(SmallGroupMember, (group_id, user_id))
            if member is None:
                raise NotFoundError("group member not found")
            session.delete(member)
            session.commit()
