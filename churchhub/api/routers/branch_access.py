from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from churchhub.api.deps import get_current_claims, require_branch_perm, require_perm
from churchhub.domain.models import (
    BranchAccessEntry,
    BranchAccessReplaceRequest,
    BranchAccessRoleUpdate,
    EffectivePermissionsRead,
    UserBranchAccessRead,
)
from churchhub.domain.permissions import PERM_ADMIN_MANAGE_USERS, PERM_BRANCHES_MANAGE_STAFF, has_permission
from churchhub.infra.audit import set_audit_context
from churchhub.services.branch_access_service import (
    BranchAccessService,
    ConflictError,
    InvalidInputError,
    NotFoundError,
)

router = APIRouter()


def get_branch_access_service() -> BranchAccessService:
    return BranchAccessService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[BranchAccessService, Depends(get_branch_access_service)]


def _handle_access_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, InvalidInputError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    raise exc


def _to_reads(rows: list[Any]) -> list[UserBranchAccessRead]:
    return [UserBranchAccessRead.model_validate(item) for item in rows]


@router.get(
    "/users/{user_id}/branch-access",
    response_model=list[UserBranchAccessRead],
    dependencies=[Depends(require_perm(PERM_ADMIN_MANAGE_USERS))],
)
def list_user_branch_access(user_id: str, claims: Claims, service: Service) -> list[UserBranchAccessRead]:
    try:
        return _to_reads(service.list_user_branch_access(claims["organization_id"], user_id))
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_access_error(exc)
        raise


@router.put(
    "/users/{user_id}/branch-access",
    response_model=list[UserBranchAccessRead],
    dependencies=[Depends(require_perm(PERM_ADMIN_MANAGE_USERS))],
)
def replace_user_branch_access(
    user_id: str,
    payload: BranchAccessReplaceRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> list[UserBranchAccessRead]:
    set_audit_context(
        request,
        action="grant_access",
        resource="user",
        detail={"what": {"target_user_id": user_id, "entries": [item.model_dump() for item in payload.entries]}},
    )
    try:
        rows = service.replace_user_branch_access(
            claims["organization_id"],
            user_id,
            payload.entries,
            actor_id=claims.get("sub"),
        )
        return _to_reads(rows)
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_access_error(exc)
        raise


@router.post(
    "/users/{user_id}/branch-access",
    response_model=UserBranchAccessRead,
    status_code=status.HTTP_201_CREATED,
)
def grant_branch_access(
    user_id: str,
    payload: BranchAccessEntry,
    request: Request,
    claims: Claims,
    service: Service,
) -> UserBranchAccessRead:
    if not has_permission(claims, PERM_BRANCHES_MANAGE_STAFF, payload.branch_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Missing permission at branch: {PERM_BRANCHES_MANAGE_STAFF}",
        )
    set_audit_context(
        request,
        action="grant_access",
        resource="user",
        branch_id=payload.branch_id,
        detail={"what": {"target_user_id": user_id, "role_id": payload.role_id}},
    )
    try:
        access = service.grant_branch_access(
            claims["organization_id"],
            user_id,
            payload,
            actor_id=claims.get("sub"),
        )
        return UserBranchAccessRead.model_validate(access)
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_access_error(exc)
        raise


@router.patch(
    "/users/{user_id}/branch-access/{branch_id}",
    response_model=UserBranchAccessRead,
    dependencies=[Depends(require_branch_perm(PERM_BRANCHES_MANAGE_STAFF))],
)
def update_branch_role(
    user_id: str,
    branch_id: str,
    payload: BranchAccessRoleUpdate,
    request: Request,
    claims: Claims,
    service: Service,
) -> UserBranchAccessRead:
    set_audit_context(
        request,
        action="change_role",
        resource="user",
        branch_id=branch_id,
        detail={"what": {"target_user_id": user_id, "role_id": payload.role_id}},
    )
    try:
        access = service.update_branch_role(
            claims["organization_id"],
            user_id,
            branch_id,
            payload.role_id,
            actor_id=claims.get("sub"),
        )
        return UserBranchAccessRead.model_validate(access)
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_access_error(exc)
        raise


@router.post(
    "/users/{user_id}/branch-access/{branch_id}/home",
    response_model=list[UserBranchAccessRead],
    dependencies=[Depends(require_branch_perm(PERM_BRANCHES_MANAGE_STAFF))],
)
def set_home_branch(
    user_id: str,
    branch_id: str,
    request: Request,
    claims: Claims,
    service: Service,
) -> list[UserBranchAccessRead]:
    set_audit_context(request, action="set_home_branch", resource="user", branch_id=branch_id)
    try:
        rows = service.set_home_branch(claims["organization_id"], user_id, branch_id, actor_id=claims.get("sub"))
        return _to_reads(rows)
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_access_error(exc)
        raise


@router.delete(
    "/users/{user_id}/branch-access/{branch_id}",
    response_model=list[UserBranchAccessRead],
    dependencies=[Depends(require_branch_perm(PERM_BRANCHES_MANAGE_STAFF))],
)
def revoke_branch_access(
    user_id: str,
    branch_id: str,
    request: Request,
    claims: Claims,
    service: Service,
) -> list[UserBranchAccessRead]:
    set_audit_context(
        request,
        action="revoke_access",
        resource="user",
        branch_id=branch_id,
        detail={"what": {"target_user_id": user_id}},
    )
    try:
        rows = service.revoke_branch_access(
            claims["organization_id"],
            user_id,
            branch_id,
            actor_id=claims.get("sub"),
        )
        return _to_reads(rows)
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_access_error(exc)
        raise


@router.get(
    "/users/{user_id}/effective-permissions",
    response_model=EffectivePermissionsRead,
    dependencies=[Depends(require_perm(PERM_ADMIN_MANAGE_USERS))],
)
def get_effective_permissions(user_id: str, claims: Claims, service: Service) -> EffectivePermissionsRead:
    try:
        resolved = service.effective_permissions(claims["organization_id"], user_id)
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_access_error(exc)
        raise
    return EffectivePermissionsRead(
        user_id=user_id,
        permissions=resolved.permissions,
        home_branch_id=resolved.home_branch_id,
        branch_permissions=resolved.branch_permissions,
    )
