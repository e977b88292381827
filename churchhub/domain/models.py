from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, ForeignKeyConstraint, Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel


def now_utc() -> datetime:
    return datetime.now(UTC)


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    organization_id: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    organization_id: str = Field(index=True)
    actor_id: str | None = Field(default=None, index=True)
    branch_id: str | None = Field(default=None, index=True)
    action: str = Field(index=True)
    resource: str = Field(index=True)
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Organization(SQLModel, table=True):
    __tablename__ = "organizations"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Branch(SQLModel, table=True):
    __tablename__ = "branches"
    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_branches_org_name"),
        UniqueConstraint("organization_id", "id", name="uq_branches_org_id_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    organization_id: str = Field(foreign_key="organizations.id", index=True)
    name: str = Field(index=True)
    location: str | None = None
    region: str | None = Field(default=None, index=True)
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class User(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("organization_id", "username", name="uq_users_org_username"),
        UniqueConstraint("organization_id", "id", name="uq_users_org_id_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    organization_id: str = Field(foreign_key="organizations.id", index=True)
    username: str = Field(index=True)
    email: str | None = Field(default=None, index=True)
    first_name: str | None = None
    last_name: str | None = None
    password_hash: str
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Role(SQLModel, table=True):
    __tablename__ = "roles"
    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_roles_org_name"),
        UniqueConstraint("organization_id", "id", name="uq_roles_org_id_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    organization_id: str = Field(foreign_key="organizations.id", index=True)
    name: str = Field(index=True)
    description: str | None = None
    is_system: bool = Field(default=False)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Permission(SQLModel, table=True):
    __tablename__ = "permissions"

    id: str = Field(primary_key=True)
    name: str
    subject: str = Field(index=True)
    description: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class RolePermission(SQLModel, table=True):
    __tablename__ = "role_permissions"
    __table_args__ = (
        ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
        ForeignKeyConstraint(["permission_id"], ["permissions.id"], ondelete="CASCADE"),
    )

    role_id: str = Field(primary_key=True)
    permission_id: str = Field(primary_key=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class UserBranchAccess(SQLModel, table=True):
    __tablename__ = "user_branch_access"
    __table_args__ = (
        ForeignKeyConstraint(
            ["organization_id", "user_id"],
            ["users.organization_id", "users.id"],
            ondelete="CASCADE",
        ),
        ForeignKeyConstraint(
            ["organization_id", "branch_id"],
            ["branches.organization_id", "branches.id"],
            ondelete="CASCADE",
        ),
        ForeignKeyConstraint(
            ["organization_id", "role_id"],
            ["roles.organization_id", "roles.id"],
        ),
        Index("ix_user_branch_access_org_user", "organization_id", "user_id"),
        Index("ix_user_branch_access_org_branch", "organization_id", "branch_id"),
        Index(
            "uq_user_branch_access_home",
            "user_id",
            unique=True,
            sqlite_where=text("is_home_branch"),
            postgresql_where=text("is_home_branch"),
        ),
    )

    organization_id: str = Field(primary_key=True)
    user_id: str = Field(primary_key=True)
    branch_id: str = Field(primary_key=True)
    role_id: str = Field(index=True)
    is_home_branch: bool = Field(default=False)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class SharingEntityType(StrEnum):
    BRANCH = "branch"
    MINISTRY = "ministry"
    ROLE = "role"


class SharingResourceType(StrEnum):
    MEMBER_DATA = "member_data"
    FINANCIAL_DATA = "financial_data"
    EVENT_DATA = "event_data"
    MINISTRY_DATA = "ministry_data"
    ATTENDANCE_DATA = "attendance_data"
    VOLUNTEER_DATA = "volunteer_data"
    ALL = "all"


class SharingPermission(StrEnum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


SHARING_ANY_ID = "all"


class DataSharingPolicy(SQLModel, table=True):
    __tablename__ = "data_sharing_policies"
    __table_args__ = (
        Index("ix_data_sharing_policies_org_source", "organization_id", "source_type", "source_id"),
        Index("ix_data_sharing_policies_org_target", "organization_id", "target_type", "target_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    organization_id: str = Field(foreign_key="organizations.id", index=True)
    name: str
    description: str | None = None
    source_type: SharingEntityType = Field(index=True)
    source_id: str
    target_type: SharingEntityType = Field(index=True)
    target_id: str
    resource_type: SharingResourceType = Field(index=True)
    permissions: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    active: bool = Field(default=True, index=True)
    created_by: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class SmallGroupMemberRole(StrEnum):
    MEMBER = "member"
    EXECUTIVE = "executive"


class SmallGroup(SQLModel, table=True):
    __tablename__ = "small_groups"
    __table_args__ = (
        ForeignKeyConstraint(
            ["organization_id", "branch_id"],
            ["branches.organization_id", "branches.id"],
            ondelete="CASCADE",
        ),
        UniqueConstraint("branch_id", "name", name="uq_small_groups_branch_name"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    organization_id: str = Field(index=True)
    branch_id: str = Field(index=True)
    name: str = Field(index=True)
    group_type: str = Field(default="bible_study", index=True)
    description: str | None = None
    meeting_schedule: str | None = None
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class SmallGroupMember(SQLModel, table=True):
    __tablename__ = "small_group_members"
    __table_args__ = (
        ForeignKeyConstraint(["group_id"], ["small_groups.id"], ondelete="CASCADE"),
        ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )

    group_id: str = Field(primary_key=True)
    user_id: str = Field(primary_key=True)
    member_role: SmallGroupMemberRole = Field(default=SmallGroupMemberRole.MEMBER, index=True)
    position: str | None = None
    joined_at: datetime = Field(default_factory=now_utc, index=True)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    organization_id: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class OrganizationCreate(BaseModel):
    name: str


class OrganizationUpdate(BaseModel):
    name: str


class OrganizationRead(ORMReadModel):
    id: str
    name: str
    created_at: datetime


class BranchCreate(BaseModel):
    name: str
    location: str | None = None
    region: str | None = None
    is_active: bool = True


class BranchUpdate(BaseModel):
    name: str | None = None
    location: str | None = None
    region: str | None = None
    is_active: bool | None = None


class BranchRead(ORMReadModel):
    id: str
    organization_id: str
    name: str
    location: str | None = None
    region: str | None = None
    is_active: bool
    created_at: datetime


class UserCreate(BaseModel):
    username: str
    password: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    is_active: bool = True


class UserUpdate(BaseModel):
    password: str | None = None
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    is_active: bool | None = None


class UserRead(ORMReadModel):
    id: str
    organization_id: str
    username: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    is_active: bool
    created_at: datetime


class PermissionCreate(BaseModel):
    id: str
    name: str
    subject: str
    description: str | None = None


class PermissionUpdate(BaseModel):
    name: str | None = None
    subject: str | None = None
    description: str | None = None


class PermissionRead(ORMReadModel):
    id: str
    name: str
    subject: str
    description: str | None = None


class PermissionGroupRead(BaseModel):
    subject: str
    permissions: list[PermissionRead]


class RoleCreate(BaseModel):
    name: str
    description: str | None = None
    permission_ids: list[str] | None = None


class RoleUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    permission_ids: list[str] | None = None


class RoleRead(BaseModel):
    id: str
    organization_id: str
    name: str
    description: str | None = None
    is_system: bool
    permissions: list[PermissionRead] = PydanticField(default_factory=list)
    created_at: datetime


class RoleTemplateRead(BaseModel):
    key: str
    name: str
    description: str
    permissions: list[str]


class RoleFromTemplateCreateRequest(BaseModel):
    template_key: str
    name: str | None = None


class BranchAccessEntry(BaseModel):
    branch_id: str
    role_id: str
    is_home_branch: bool = False


class BranchAccessReplaceRequest(BaseModel):
    entries: list[BranchAccessEntry]


class BranchAccessRoleUpdate(BaseModel):
    role_id: str


class UserBranchAccessRead(ORMReadModel):
    user_id: str
    branch_id: str
    role_id: str
    is_home_branch: bool
    created_at: datetime
    updated_at: datetime


class DataSharingPolicyCreate(BaseModel):
    name: str
    description: str | None = None
    source_type: SharingEntityType
    source_id: str
    target_type: SharingEntityType
    target_id: str
    resource_type: SharingResourceType
    permissions: list[SharingPermission]
    active: bool = True


class DataSharingPolicyUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    source_type: SharingEntityType | None = None
    source_id: str | None = None
    target_type: SharingEntityType | None = None
    target_id: str | None = None
    resource_type: SharingResourceType | None = None
    permissions: list[SharingPermission] | None = None
    active: bool | None = None


class DataSharingPolicyActiveUpdate(BaseModel):
    active: bool


class DataSharingPolicyRead(ORMReadModel):
    id: str
    organization_id: str
    name: str
    description: str | None = None
    source_type: SharingEntityType
    source_id: str
    target_type: SharingEntityType
    target_id: str
    resource_type: SharingResourceType
    permissions: list[str]
    active: bool
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime


class DataSharingEvaluateRequest(BaseModel):
    source_type: SharingEntityType
    source_id: str
    target_type: SharingEntityType
    target_id: str
    resource_type: SharingResourceType
    permission: SharingPermission = SharingPermission.READ


class DataSharingEvaluateRead(BaseModel):
    allowed: bool
    matched_policy_ids: list[str]


class SmallGroupCreate(BaseModel):
    branch_id: str
    name: str
    group_type: str = "bible_study"
    description: str | None = None
    meeting_schedule: str | None = None
    is_active: bool = True


class SmallGroupUpdate(BaseModel):
    name: str | None = None
    group_type: str | None = None
    description: str | None = None
    meeting_schedule: str | None = None
    is_active: bool | None = None


class SmallGroupRead(ORMReadModel):
    id: str
    organization_id: str
    branch_id: str
    name: str
    group_type: str
    description: str | None = None
    meeting_schedule: str | None = None
    is_active: bool
    created_at: datetime


class SmallGroupMemberUpsert(BaseModel):
    member_role: SmallGroupMemberRole = SmallGroupMemberRole.MEMBER
    position: str | None = None


class SmallGroupMemberRead(ORMReadModel):
    group_id: str
    user_id: str
    member_role: SmallGroupMemberRole
    position: str | None = None
    joined_at: datetime


class AuditLogRead(ORMReadModel):
    id: str
    organization_id: str
    actor_id: str | None = None
    branch_id: str | None = None
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime
    detail: dict[str, Any]


class DevLoginRequest(BaseModel):
    organization_id: str
    username: str
    password: str


class BootstrapAdminRequest(BaseModel):
    organization_id: str
    username: str
    password: str
    branch_name: str = "Main Campus"
    branch_location: str | None = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    permissions: list[str]
    home_branch_id: str | None = None
    branch_permissions: dict[str, list[str]] = PydanticField(default_factory=dict)


class EffectivePermissionsRead(BaseModel):
    user_id: str
    permissions: list[str]
    home_branch_id: str | None = None
    branch_permissions: dict[str, list[str]]
