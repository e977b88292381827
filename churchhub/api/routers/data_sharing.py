from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from churchhub.api.deps import get_current_claims, require_any_perm, require_perm
from churchhub.domain.models import (
    DataSharingEvaluateRead,
    DataSharingEvaluateRequest,
    DataSharingPolicyActiveUpdate,
    DataSharingPolicyCreate,
    DataSharingPolicyRead,
    DataSharingPolicyUpdate,
    SharingEntityType,
    SharingResourceType,
)
from churchhub.domain.permissions import PERM_ADMIN_RESOURCE_APPROVAL, PERM_ADMIN_SYSTEM_SETTINGS
from churchhub.infra.audit import set_audit_context
from churchhub.services.data_sharing_service import (
    DataSharingFilter,
    DataSharingService,
    InvalidInputError,
    NotFoundError,
)

router = APIRouter()


def get_data_sharing_service() -> DataSharingService:
    return DataSharingService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[DataSharingService, Depends(get_data_sharing_service)]

can_read_policies = require_any_perm(PERM_ADMIN_RESOURCE_APPROVAL, PERM_ADMIN_SYSTEM_SETTINGS)
can_write_policies = require_perm(PERM_ADMIN_RESOURCE_APPROVAL)


def _handle_sharing_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, InvalidInputError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    raise exc


@router.post(
    "/policies",
    response_model=DataSharingPolicyRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(can_write_policies)],
)
def create_policy(
    payload: DataSharingPolicyCreate,
    request: Request,
    claims: Claims,
    service: Service,
) -> DataSharingPolicyRead:
    set_audit_context(
        request,
        action="create",
        resource="data_sharing_policy",
        detail={"what": {"name": payload.name, "resource_type": str(payload.resource_type)}},
    )
    try:
        policy = service.create_policy(claims["organization_id"], payload, actor_id=claims.get("sub"))
        return DataSharingPolicyRead.model_validate(policy)
    except (NotFoundError, InvalidInputError) as exc:
        _handle_sharing_error(exc)
        raise


@router.get(
    "/policies",
    response_model=list[DataSharingPolicyRead],
    dependencies=[Depends(can_read_policies)],
)
def list_policies(
    claims: Claims,
    service: Service,
    active: Annotated[bool | None, Query()] = None,
    resource_type: Annotated[SharingResourceType | None, Query()] = None,
    source_type: Annotated[SharingEntityType | None, Query()] = None,
    source_id: Annotated[str | None, Query()] = None,
    target_type: Annotated[SharingEntityType | None, Query()] = None,
    target_id: Annotated[str | None, Query()] = None,
) -> list[DataSharingPolicyRead]:
    filters = DataSharingFilter(
        active=active,
        resource_type=resource_type,
        source_type=source_type,
        source_id=source_id,
        target_type=target_type,
        target_id=target_id,
    )
    rows = service.list_policies(claims["organization_id"], filters)
    return [DataSharingPolicyRead.model_validate(item) for item in rows]


@router.get(
    "/policies/{policy_id}",
    response_model=DataSharingPolicyRead,
    dependencies=[Depends(can_read_policies)],
)
def get_policy(policy_id: str, claims: Claims, service: Service) -> DataSharingPolicyRead:
    try:
        return DataSharingPolicyRead.model_validate(service.get_policy(claims["organization_id"], policy_id))
    except (NotFoundError, InvalidInputError) as exc:
        _handle_sharing_error(exc)
        raise


@router.patch(
    "/policies/{policy_id}",
    response_model=DataSharingPolicyRead,
    dependencies=[Depends(can_write_policies)],
)
def update_policy(
    policy_id: str,
    payload: DataSharingPolicyUpdate,
    request: Request,
    claims: Claims,
    service: Service,
) -> DataSharingPolicyRead:
    set_audit_context(request, action="update", resource="data_sharing_policy", detail={"what": {"id": policy_id}})
    try:
        policy = service.update_policy(claims["organization_id"], policy_id, payload, actor_id=claims.get("sub"))
        return DataSharingPolicyRead.model_validate(policy)
    except (NotFoundError, InvalidInputError) as exc:
        _handle_sharing_error(exc)
        raise


@router.patch(
    "/policies/{policy_id}/active",
    response_model=DataSharingPolicyRead,
    dependencies=[Depends(can_write_policies)],
)
def set_policy_active(
    policy_id: str,
    payload: DataSharingPolicyActiveUpdate,
    request: Request,
    claims: Claims,
    service: Service,
) -> DataSharingPolicyRead:
    set_audit_context(
        request,
        action="update",
        resource="data_sharing_policy",
        detail={"what": {"id": policy_id, "active": payload.active}},
    )
    try:
        policy = service.set_policy_active(
            claims["organization_id"],
            policy_id,
            payload.active,
            actor_id=claims.get("sub"),
        )
        return DataSharingPolicyRead.model_validate(policy)
    except (NotFoundError, InvalidInputError) as exc:
        _handle_sharing_error(exc)
        raise


@router.post(
    "/policies/{policy_id}/toggle",
    response_model=DataSharingPolicyRead,
    dependencies=[Depends(can_write_policies)],
)
def toggle_policy(policy_id: str, request: Request, claims: Claims, service: Service) -> DataSharingPolicyRead:
    set_audit_context(request, action="toggle", resource="data_sharing_policy", detail={"what": {"id": policy_id}})
    try:
        policy = service.toggle_policy(claims["organization_id"], policy_id, actor_id=claims.get("sub"))
        return DataSharingPolicyRead.model_validate(policy)
    except (NotFoundError, InvalidInputError) as exc:
        _handle_sharing_error(exc)
        raise


@router.delete(
    "/policies/{policy_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(can_write_policies)],
)
def delete_policy(policy_id: str, request: Request, claims: Claims, service: Service) -> Response:
    set_audit_context(request, action="delete", resource="data_sharing_policy", detail={"what": {"id": policy_id}})
    try:
        service.delete_policy(claims["organization_id"], policy_id, actor_id=claims.get("sub"))
    except (NotFoundError, InvalidInputError) as exc:
        _handle_sharing_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/evaluate",
    response_model=DataSharingEvaluateRead,
    dependencies=[Depends(can_read_policies)],
)
def evaluate(payload: DataSharingEvaluateRequest, claims: Claims, service: Service) -> DataSharingEvaluateRead:
    decision = service.evaluate(claims["organization_id"], payload)
    return DataSharingEvaluateRead(allowed=decision.allowed, matched_policy_ids=list(decision.matched_policy_ids))
