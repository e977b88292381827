from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from churchhub.api.deps import get_current_claims, require_perm
from churchhub.domain.models import (
    PermissionCreate,
    PermissionGroupRead,
    PermissionRead,
    PermissionUpdate,
    RoleCreate,
    RoleFromTemplateCreateRequest,
    RoleRead,
    RoleTemplateRead,
    RoleUpdate,
)
from churchhub.domain.permissions import PERM_ADMIN_MANAGE_ROLES
from churchhub.infra.audit import set_audit_context
from churchhub.services.role_service import ConflictError, InvalidInputError, NotFoundError, RoleService

router = APIRouter()


def get_role_service() -> RoleService:
    return RoleService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[RoleService, Depends(get_role_service)]


def _handle_role_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, InvalidInputError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    raise exc


@router.get(
    "/permissions",
    response_model=list[PermissionRead],
    dependencies=[Depends(require_perm(PERM_ADMIN_MANAGE_ROLES))],
)
def list_permissions(
    service: Service,
    subject: Annotated[str | None, Query()] = None,
) -> list[PermissionRead]:
    return [PermissionRead.model_validate(item) for item in service.list_permissions(subject)]


@router.get(
    "/permissions/grouped",
    response_model=list[PermissionGroupRead],
    dependencies=[Depends(require_perm(PERM_ADMIN_MANAGE_ROLES))],
)
def list_permission_groups(service: Service) -> list[PermissionGroupRead]:
    return service.list_permission_groups()


@router.post(
    "/permissions",
    response_model=PermissionRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_ADMIN_MANAGE_ROLES))],
)
def create_permission(payload: PermissionCreate, service: Service) -> PermissionRead:
    try:
        return PermissionRead.model_validate(service.create_permission(payload))
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_role_error(exc)
        raise


@router.patch(
    "/permissions/{permission_id}",
    response_model=PermissionRead,
    dependencies=[Depends(require_perm(PERM_ADMIN_MANAGE_ROLES))],
)
def update_permission(permission_id: str, payload: PermissionUpdate, service: Service) -> PermissionRead:
    try:
        return PermissionRead.model_validate(service.update_permission(permission_id, payload))
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_role_error(exc)
        raise


@router.delete(
    "/permissions/{permission_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_ADMIN_MANAGE_ROLES))],
)
def delete_permission(permission_id: str, claims: Claims, service: Service) -> Response:
    try:
        service.delete_permission(claims["organization_id"], permission_id)
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_role_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/role-templates",
    response_model=list[RoleTemplateRead],
    dependencies=[Depends(require_perm(PERM_ADMIN_MANAGE_ROLES))],
)
def list_role_templates(service: Service) -> list[RoleTemplateRead]:
    return [RoleTemplateRead.model_validate(item) for item in service.list_role_templates()]


@router.post(
    "/roles",
    response_model=RoleRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_ADMIN_MANAGE_ROLES))],
)
def create_role(payload: RoleCreate, request: Request, claims: Claims, service: Service) -> RoleRead:
    set_audit_context(request, action="create", resource="role", detail={"what": {"name": payload.name}})
    try:
        return service.create_role(claims["organization_id"], payload, actor_id=claims.get("sub"))
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_role_error(exc)
        raise


@router.post(
    "/roles:from-template",
    response_model=RoleRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_ADMIN_MANAGE_ROLES))],
)
def create_role_from_template(
    payload: RoleFromTemplateCreateRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> RoleRead:
    set_audit_context(
        request,
        action="create",
        resource="role",
        detail={"what": {"template_key": payload.template_key}},
    )
    try:
        return service.create_role_from_template(
            organization_id=claims["organization_id"],
            template_key=payload.template_key,
            name=payload.name,
            actor_id=claims.get("sub"),
        )
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_role_error(exc)
        raise


@router.get(
    "/roles",
    response_model=list[RoleRead],
    dependencies=[Depends(require_perm(PERM_ADMIN_MANAGE_ROLES))],
)
def list_roles(claims: Claims, service: Service) -> list[RoleRead]:
    return service.list_roles(claims["organization_id"])


@router.get(
    "/roles/{role_id}",
    response_model=RoleRead,
    dependencies=[Depends(require_perm(PERM_ADMIN_MANAGE_ROLES))],
)
def get_role(role_id: str, claims: Claims, service: Service) -> RoleRead:
    try:
        return service.get_role(claims["organization_id"], role_id)
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_role_error(exc)
        raise


@router.patch(
    "/roles/{role_id}",
    response_model=RoleRead,
    dependencies=[Depends(require_perm(PERM_ADMIN_MANAGE_ROLES))],
)
def update_role(
    role_id: str,
    payload: RoleUpdate,
    request: Request,
    claims: Claims,
    service: Service,
) -> RoleRead:
    set_audit_context(request, action="update", resource="role", detail={"what": {"role_id": role_id}})
    try:
        return service.update_role(claims["organization_id"], role_id, payload, actor_id=claims.get("sub"))
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_role_error(exc)
        raise


@router.delete(
    "/roles/{role_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_ADMIN_MANAGE_ROLES))],
)
def delete_role(role_id: str, request: Request, claims: Claims, service: Service) -> Response:
    set_audit_context(request, action="delete", resource="role", detail={"what": {"role_id": role_id}})
    try:
        service.delete_role(claims["organization_id"], role_id, actor_id=claims.get("sub"))
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_role_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/roles/{role_id}/permissions/{permission_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_ADMIN_MANAGE_ROLES))],
)
def bind_role_permission(role_id: str, permission_id: str, claims: Claims, service: Service) -> Response:
    try:
        service.bind_role_permission(claims["organization_id"], role_id, permission_id)
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_role_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete(
    "/roles/{role_id}/permissions/{permission_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_ADMIN_MANAGE_ROLES))],
)
def unbind_role_permission(role_id: str, permission_id: str, claims: Claims, service: Service) -> Response:
    try:
        service.unbind_role_permission(claims["organization_id"], role_id, permission_id)
    except (NotFoundError, ConflictError, InvalidInputError) as exc:
        _handle_role_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
