from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from churchhub.api.deps import ensure_branch_perm, get_current_claims, require_perm
from churchhub.domain.models import (
    SmallGroupCreate,
    SmallGroupMemberRead,
    SmallGroupMemberUpsert,
    SmallGroupRead,
    SmallGroupUpdate,
)
from churchhub.domain.permissions import PERM_GROUPS_MANAGE, PERM_GROUPS_VIEW
from churchhub.infra.audit import set_audit_context
from churchhub.services.small_group_service import (
    ConflictError,
    InvalidInputError,
    NotFoundError,
    SmallGroupService,
)

router = APIRouter()


def get_small_group_service() -> SmallGroupService:
    return SmallGroupService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[SmallGroupService, Depends(get_small_group_service)]


def _handle_group_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, InvalidInputError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    raise exc


def _ensure_group_manager(claims: dict[str, Any], service: SmallGroupService, group_id: str) -> str:
    try:
        branch_id = service.get_group_branch_id(claims["organization_id"], group_id)
    except NotFoundError as exc:
        _handle_group_error(exc)
        raise
    ensure_branch_perm(claims, PERM_GROUPS_MANAGE, branch_id)
    return branch_id


@router.post("", response_model=SmallGroupRead, status_code=status.HTTP_201_CREATED)
def create_group(
    payload: SmallGroupCreate,
    request: Request,
    claims: Claims,
    service: Service,
) -> SmallGroupRead:
    ensure_branch_perm(claims, PERM_GROUPS_MANAGE, payload.branch_id)
    set_audit_context(
        request,
        action="create",
        resource="small_group",
        branch_id=payload.branch_id,
        detail={"what": {"name": payload.name}},
    )
    try:
        return SmallGroupRead.model_validate(service.create_group(claims["organization_id"], payload))
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_group_error(exc)
        raise


@router.get(
    "",
    response_model=list[SmallGroupRead],
    dependencies=[Depends(require_perm(PERM_GROUPS_VIEW))],
)
def list_groups(
    claims: Claims,
    service: Service,
    branch_id: Annotated[str | None, Query()] = None,
    group_type: Annotated[str | None, Query()] = None,
    is_active: Annotated[bool | None, Query()] = None,
) -> list[SmallGroupRead]:
    rows = service.list_groups(
        claims["organization_id"],
        branch_id=branch_id,
        group_type=group_type,
        is_active=is_active,
    )
    return [SmallGroupRead.model_validate(item) for item in rows]


@router.get(
    "/{group_id}",
    response_model=SmallGroupRead,
    dependencies=[Depends(require_perm(PERM_GROUPS_VIEW))],
)
def get_group(group_id: str, claims: Claims, service: Service) -> SmallGroupRead:
    try:
        return SmallGroupRead.model_validate(service.get_group(claims["organization_id"], group_id))
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_group_error(exc)
        raise


@router.patch("/{group_id}", response_model=SmallGroupRead)
def update_group(
    group_id: str,
    payload: SmallGroupUpdate,
    request: Request,
    claims: Claims,
    service: Service,
) -> SmallGroupRead:
    branch_id = _ensure_group_manager(claims, service, group_id)
    set_audit_context(request, action="update", resource="small_group", branch_id=branch_id)
    try:
        return SmallGroupRead.model_validate(service.update_group(claims["organization_id"], group_id, payload))
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_group_error(exc)
        raise


@router.delete("/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_group(group_id: str, request: Request, claims: Claims, service: Service) -> Response:
    branch_id = _ensure_group_manager(claims, service, group_id)
    set_audit_context(request, action="delete", resource="small_group", branch_id=branch_id)
    try:
        service.delete_group(claims["organization_id"], group_id)
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_group_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/{group_id}/members",
    response_model=list[SmallGroupMemberRead],
    dependencies=[Depends(require_perm(PERM_GROUPS_VIEW))],
)
def list_members(group_id: str, claims: Claims, service: Service) -> list[SmallGroupMemberRead]:
    try:
        rows = service.list_members(claims["organization_id"], group_id)
        return [SmallGroupMemberRead.model_validate(item) for item in rows]
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_group_error(exc)
        raise


@router.put("/{group_id}/members/{user_id}", response_model=SmallGroupMemberRead)
def upsert_member(
    group_id: str,
    user_id: str,
    payload: SmallGroupMemberUpsert,
    request: Request,
    claims: Claims,
    service: Service,
) -> SmallGroupMemberRead:
    branch_id = _ensure_group_manager(claims, service, group_id)
    set_audit_context(
        request,
        action="add_member",
        resource="small_group",
        branch_id=branch_id,
        detail={"what": {"user_id": user_id, "member_role": str(payload.member_role)}},
    )
    try:
        member = service.upsert_member(
            claims["organization_id"],
            group_id,
            user_id,
            payload,
            actor_id=claims.get("sub"),
        )
        return SmallGroupMemberRead.model_validate(member)
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_group_error(exc)
        raise


@router.delete("/{group_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_member(
    group_id: str,
    user_id: str,
    request: Request,
    claims: Claims,
    service: Service,
) -> Response:
    branch_id = _ensure_group_manager(claims, service, group_id)
    set_audit_context(
        request,
        action="remove_member",
        resource="small_group",
        branch_id=branch_id,
        detail={"what": {"user_id": user_id}},
    )
    try:
        service.remove_member(claims["organization_id"], group_id, user_id)
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_group_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
