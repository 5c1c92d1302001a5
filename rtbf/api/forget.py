"""Forget request API endpoints.

POST /api/v1/forget/requests          - Start a request for the calling user
POST /api/v1/forget/confirm/{token}   - Confirm a request from the emailed link
GET  /api/v1/forget/queue             - All requests, newest first (ADMIN only)
GET  /api/v1/forget/queue/{id}        - One request with per-shard status (ADMIN only)
"""

from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from rtbf.api.auth import AuthenticatedUser, get_container, get_current_user, require_admin
from rtbf.errors import (
    AlreadyPendingError,
    ExpiredTokenError,
    ForgetError,
    IdentityMismatchError,
    InvalidTokenError,
    NotificationError,
    RenameFailedError,
    RequestNotFoundError,
    UserNotFoundError,
)
from rtbf.models.request import ForgetRequest, ShardTarget
from rtbf.services.orchestrator import status_label
from rtbf.wiring import ForgetContainer

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/forget", tags=["forget"])

ERROR_STATUS: dict[type[ForgetError], int] = {
    AlreadyPendingError: status.HTTP_409_CONFLICT,
    InvalidTokenError: status.HTTP_400_BAD_REQUEST,
    ExpiredTokenError: status.HTTP_400_BAD_REQUEST,
    IdentityMismatchError: status.HTTP_403_FORBIDDEN,
    UserNotFoundError: status.HTTP_404_NOT_FOUND,
    RequestNotFoundError: status.HTTP_404_NOT_FOUND,
    NotificationError: status.HTTP_502_BAD_GATEWAY,
    RenameFailedError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def status_for(exc: ForgetError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# ------------------------------------------------------------------ #
# Response models
# ------------------------------------------------------------------ #


class ForgetRequestResponse(BaseModel):
    id: int
    user_id: int
    status: int
    status_label: str
    source: str
    created_at: datetime
    completed_at: datetime | None

    @classmethod
    def from_request(cls, request: ForgetRequest) -> ForgetRequestResponse:
        return cls(
            id=request.id,
            user_id=request.user_id,
            status=int(request.status),
            status_label=status_label(request.status),
            source=str(request.source),
            created_at=request.created_at,
            completed_at=request.completed_at,
        )


class AdminRequestResponse(ForgetRequestResponse):
    original_name: str
    target_name: str

    @classmethod
    def from_request(cls, request: ForgetRequest) -> AdminRequestResponse:
        base = ForgetRequestResponse.from_request(request).model_dump()
        return cls(
            **base,
            original_name=request.original_name,
            target_name=request.target_name,
        )


class ShardTargetResponse(BaseModel):
    shard_id: str
    status: int
    status_label: str
    error_message: str | None
    updated_at: datetime

    @classmethod
    def from_target(cls, target: ShardTarget) -> ShardTargetResponse:
        return cls(
            shard_id=target.shard_id,
            status=int(target.status),
            status_label=status_label(target.status),
            error_message=target.error_message,
            updated_at=target.updated_at,
        )


class RequestDetailResponse(BaseModel):
    request: AdminRequestResponse
    # None when no shard target rows exist for the request
    targets: list[ShardTargetResponse] | None


# ------------------------------------------------------------------ #
# User endpoints
# ------------------------------------------------------------------ #


@router.post(
    "/requests",
    response_model=ForgetRequestResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def initiate_request(
    user: AuthenticatedUser = Depends(get_current_user),
    container: ForgetContainer = Depends(get_container),
) -> ForgetRequestResponse:
    request = await container.service.initiate_request(user.identity)
    return ForgetRequestResponse.from_request(request)


@router.post("/confirm/{token}", response_model=ForgetRequestResponse)
async def confirm_request(
    token: str,
    user: AuthenticatedUser = Depends(get_current_user),
    container: ForgetContainer = Depends(get_container),
) -> ForgetRequestResponse:
    request = await container.service.confirm_and_execute(token, user.identity)
    return ForgetRequestResponse.from_request(request)


# ------------------------------------------------------------------ #
# Admin endpoints
# ------------------------------------------------------------------ #


@router.get("/queue", response_model=list[AdminRequestResponse])
async def list_requests(
    _admin: AuthenticatedUser = Depends(require_admin),
    container: ForgetContainer = Depends(get_container),
) -> list[AdminRequestResponse]:
    requests = await container.service.list_requests()
    return [AdminRequestResponse.from_request(r) for r in requests]


@router.get("/queue/{request_id}", response_model=RequestDetailResponse)
async def get_request(
    request_id: int,
    _admin: AuthenticatedUser = Depends(require_admin),
    container: ForgetContainer = Depends(get_container),
) -> RequestDetailResponse:
    request = await container.service.load_request(request_id)
    if request is None:
        raise RequestNotFoundError(f"Request {request_id} not found")
    targets = await container.service.load_targets(request_id)
    return RequestDetailResponse(
        request=AdminRequestResponse.from_request(request),
        targets=[ShardTargetResponse.from_target(t) for t in targets]
        if targets is not None
        else None,
    )
