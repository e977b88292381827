from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from churchhub.api.deps import get_current_claims, require_perm
from churchhub.domain.models import (
    BootstrapAdminRequest,
    DevLoginRequest,
    OrganizationCreate,
    OrganizationRead,
    OrganizationUpdate,
    TokenResponse,
    UserCreate,
    UserRead,
    UserUpdate,
)
from churchhub.domain.permissions import PERM_ADMIN_MANAGE_USERS, PERM_ADMIN_SYSTEM_SETTINGS
from churchhub.infra.auth import create_access_token
from churchhub.services.identity_service import AuthError, ConflictError, IdentityService, NotFoundError

router = APIRouter()


def get_identity_service() -> IdentityService:
    return IdentityService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[IdentityService, Depends(get_identity_service)]


def _handle_identity_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, AuthError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    raise exc


def _ensure_own_organization(claims: dict[str, Any], organization_id: str) -> None:
    if claims["organization_id"] != organization_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="organization not found")


@router.post("/organizations", response_model=OrganizationRead, status_code=status.HTTP_201_CREATED)
def create_organization(payload: OrganizationCreate, service: Service) -> OrganizationRead:
    try:
        organization = service.create_organization(payload)
        return OrganizationRead.model_validate(organization)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.get("/organizations/{organization_id}", response_model=OrganizationRead)
def get_organization(organization_id: str, claims: Claims, service: Service) -> OrganizationRead:
    _ensure_own_organization(claims, organization_id)
    try:
        organization = service.get_organization(organization_id)
        return OrganizationRead.model_validate(organization)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.patch(
    "/organizations/{organization_id}",
    response_model=OrganizationRead,
    dependencies=[Depends(require_perm(PERM_ADMIN_SYSTEM_SETTINGS))],
)
def update_organization(
    organization_id: str,
    payload: OrganizationUpdate,
    claims: Claims,
    service: Service,
) -> OrganizationRead:
    _ensure_own_organization(claims, organization_id)
    try:
        organization = service.update_organization(organization_id, payload)
        return OrganizationRead.model_validate(organization)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.delete(
    "/organizations/{organization_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_ADMIN_SYSTEM_SETTINGS))],
)
def delete_organization(organization_id: str, claims: Claims, service: Service) -> Response:
    _ensure_own_organization(claims, organization_id)
    try:
        service.delete_organization(organization_id)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/bootstrap-admin", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def bootstrap_admin(payload: BootstrapAdminRequest, service: Service) -> UserRead:
    try:
        user = service.bootstrap_admin(payload)
        return UserRead.model_validate(user)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.post("/dev-login", response_model=TokenResponse)
def dev_login(payload: DevLoginRequest, service: Service) -> TokenResponse:
    try:
        user, resolved = service.dev_login(payload.organization_id, payload.username, payload.password)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise
    token = create_access_token(
        user_id=user.id,
        organization_id=user.organization_id,
        permissions=resolved.permissions,
        branch_permissions=resolved.branch_permissions,
        home_branch_id=resolved.home_branch_id,
    )
    return TokenResponse(
        access_token=token,
        permissions=resolved.permissions,
        home_branch_id=resolved.home_branch_id,
        branch_permissions=resolved.branch_permissions,
    )


@router.get("/me", response_model=UserRead)
def get_me(claims: Claims, service: Service) -> UserRead:
    try:
        user = service.get_user(claims["organization_id"], claims["sub"])
        return UserRead.model_validate(user)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.post(
    "/users",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_ADMIN_MANAGE_USERS))],
)
def create_user(payload: UserCreate, claims: Claims, service: Service) -> UserRead:
    try:
        user = service.create_user(claims["organization_id"], payload)
        return UserRead.model_validate(user)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.get(
    "/users",
    response_model=list[UserRead],
    dependencies=[Depends(require_perm(PERM_ADMIN_MANAGE_USERS))],
)
def list_users(
    claims: Claims,
    service: Service,
    search: Annotated[str | None, Query()] = None,
    is_active: Annotated[bool | None, Query()] = None,
) -> list[UserRead]:
    users = service.list_users(claims["organization_id"], search=search, is_active=is_active)
    return [UserRead.model_validate(item) for item in users]


@router.get(
    "/users/{user_id}",
    response_model=UserRead,
    dependencies=[Depends(require_perm(PERM_ADMIN_MANAGE_USERS))],
)
def get_user(user_id: str, claims: Claims, service: Service) -> UserRead:
    try:
        user = service.get_user(claims["organization_id"], user_id)
        return UserRead.model_validate(user)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.patch(
    "/users/{user_id}",
    response_model=UserRead,
    dependencies=[Depends(require_perm(PERM_ADMIN_MANAGE_USERS))],
)
def update_user(user_id: str, payload: UserUpdate, claims: Claims, service: Service) -> UserRead:
    try:
        user = service.update_user(claims["organization_id"], user_id, payload)
        return UserRead.model_validate(user)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.delete(
    "/users/{user_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_ADMIN_MANAGE_USERS))],
)
def delete_user(user_id: str, claims: Claims, service: Service) -> Response:
    try:
        service.delete_user(claims["organization_id"], user_id)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
