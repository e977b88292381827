from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from churchhub.api.deps import get_current_claims, require_branch_perm, require_perm
from churchhub.domain.models import (
    BranchCreate,
    BranchRead,
    BranchUpdate,
    UserBranchAccessRead,
)
from churchhub.domain.permissions import (
    PERM_BRANCHES_CREATE,
    PERM_BRANCHES_DELETE,
    PERM_BRANCHES_EDIT,
    PERM_BRANCHES_MANAGE_STAFF,
    PERM_BRANCHES_VIEW,
)
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


def _handle_branch_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, InvalidInputError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    raise exc


@router.post(
    "",
    response_model=BranchRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_BRANCHES_CREATE))],
)
def create_branch(payload: BranchCreate, claims: Claims, service: Service) -> BranchRead:
    try:
        branch = service.create_branch(claims["organization_id"], payload)
        return BranchRead.model_validate(branch)
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_branch_error(exc)
        raise


@router.get(
    "",
    response_model=list[BranchRead],
    dependencies=[Depends(require_perm(PERM_BRANCHES_VIEW))],
)
def list_branches(
    claims: Claims,
    service: Service,
    region: Annotated[str | None, Query()] = None,
    is_active: Annotated[bool | None, Query()] = None,
) -> list[BranchRead]:
    branches = service.list_branches(claims["organization_id"], region=region, is_active=is_active)
    return [BranchRead.model_validate(item) for item in branches]


@router.get(
    "/{branch_id}",
    response_model=BranchRead,
    dependencies=[Depends(require_perm(PERM_BRANCHES_VIEW))],
)
def get_branch(branch_id: str, claims: Claims, service: Service) -> BranchRead:
    try:
        branch = service.get_branch(claims["organization_id"], branch_id)
        return BranchRead.model_validate(branch)
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_branch_error(exc)
        raise


@router.patch(
    "/{branch_id}",
    response_model=BranchRead,
    dependencies=[Depends(require_branch_perm(PERM_BRANCHES_EDIT))],
)
def update_branch(
    branch_id: str,
    payload: BranchUpdate,
    request: Request,
    claims: Claims,
    service: Service,
) -> BranchRead:
    set_audit_context(request, action="update", resource="branch", branch_id=branch_id)
    try:
        branch = service.update_branch(claims["organization_id"], branch_id, payload)
        return BranchRead.model_validate(branch)
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_branch_error(exc)
        raise


@router.delete(
    "/{branch_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_BRANCHES_DELETE))],
)
def delete_branch(branch_id: str, request: Request, claims: Claims, service: Service) -> Response:
    set_audit_context(request, action="delete", resource="branch", branch_id=branch_id)
    try:
        service.delete_branch(claims["organization_id"], branch_id, actor_id=claims.get("sub"))
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_branch_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/{branch_id}/users",
    response_model=list[UserBranchAccessRead],
    dependencies=[Depends(require_branch_perm(PERM_BRANCHES_MANAGE_STAFF))],
)
def list_branch_users(branch_id: str, claims: Claims, service: Service) -> list[UserBranchAccessRead]:
    try:
        rows = service.list_branch_users(claims["organization_id"], branch_id)
        return [UserBranchAccessRead.model_validate(item) for item in rows]
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_branch_error(exc)
        raise
