"""Workload and rollout control endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError

from ..controlplane import ControlPlane
from ..errors import (
    InvalidRevisionError,
    NoActiveRolloutError,
    OwnershipConflictError,
    RolloutError,
    WorkloadNotFoundError,
)
from ..models import DesiredSpec, RolloutStatus, TemplateSpec, compute_template_hash
from ..rollback import RollbackRecord
from .schemas import RollbackRequest, RollbackResponse, WorkloadSpecRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workloads", tags=["workloads"])

ERROR_STATUS = {
    WorkloadNotFoundError: status.HTTP_404_NOT_FOUND,
    NoActiveRolloutError: status.HTTP_409_CONFLICT,
    OwnershipConflictError: status.HTTP_409_CONFLICT,
    InvalidRevisionError: 422,
}


def get_control_plane(request: Request) -> ControlPlane:
    """Control plane attached to the application."""
    return request.app.state.control_plane


def _http_error(error: RolloutError) -> HTTPException:
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    logger.error(f"Control operation failed: {error}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))


def _rollback_response(record: RollbackRecord) -> RollbackResponse:
    return RollbackResponse.model_validate(record, from_attributes=True)


@router.get("", response_model=list[str])
async def list_workloads(plane: ControlPlane = Depends(get_control_plane)) -> list[str]:
    """List workload keys."""
    return await plane.store.list_workloads()


@router.put("/{workload}", response_model=DesiredSpec)
async def put_workload(
    workload: str,
    request: WorkloadSpecRequest,
    plane: ControlPlane = Depends(get_control_plane),
) -> DesiredSpec:
    """
    Declare the desired state of a workload.

    A template change starts a rollout; the controller converges
    asynchronously.
    """
    try:
        spec = DesiredSpec(
            workload=workload,
            replicas=request.replicas,
            template=TemplateSpec(
                hash=request.template_hash or compute_template_hash(request.template),
                payload=request.template,
            ),
            policy=request.policy,
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    try:
        return await plane.put_spec(spec, manager=request.manager, force=request.force)
    except RolloutError as e:
        raise _http_error(e) from e


@router.delete("/{workload}")
async def delete_workload(
    workload: str, plane: ControlPlane = Depends(get_control_plane)
) -> dict[str, str]:
    """Delete a workload; its instances are torn down."""
    try:
        await plane.delete_spec(workload)
    except RolloutError as e:
        raise _http_error(e) from e
    return {"workload": workload, "status": "deleted"}


@router.get("/{workload}/status", response_model=RolloutStatus)
async def get_status(
    workload: str, plane: ControlPlane = Depends(get_control_plane)
) -> RolloutStatus:
    """Get rollout status."""
    try:
        return await plane.status(workload)
    except RolloutError as e:
        raise _http_error(e) from e


@router.post("/{workload}/pause", response_model=RolloutStatus)
async def pause_rollout(
    workload: str, plane: ControlPlane = Depends(get_control_plane)
) -> RolloutStatus:
    """Pause the in-flight rollout."""
    try:
        return await plane.pause(workload)
    except RolloutError as e:
        raise _http_error(e) from e


@router.post("/{workload}/resume", response_model=RolloutStatus)
async def resume_rollout(
    workload: str, plane: ControlPlane = Depends(get_control_plane)
) -> RolloutStatus:
    """Resume a paused rollout or roll a halted one forward."""
    try:
        return await plane.resume(workload)
    except RolloutError as e:
        raise _http_error(e) from e


@router.post("/{workload}/promote", response_model=RolloutStatus)
async def promote_rollout(
    workload: str, plane: ControlPlane = Depends(get_control_plane)
) -> RolloutStatus:
    """Skip remaining canary steps and promote."""
    try:
        return await plane.promote(workload)
    except RolloutError as e:
        raise _http_error(e) from e


@router.post("/{workload}/rollback", response_model=RollbackResponse)
async def rollback_workload(
    workload: str,
    request: Optional[RollbackRequest] = None,
    plane: ControlPlane = Depends(get_control_plane),
) -> RollbackResponse:
    """
    Roll back to an earlier revision.

    Defaults to the previous revision.
    """
    ref = request.revision if request else "previous"
    try:
        record = await plane.rollback(workload, ref)
    except RolloutError as e:
        raise _http_error(e) from e
    return _rollback_response(record)


@router.get("/{workload}/rollbacks", response_model=list[RollbackResponse])
async def list_rollbacks(
    workload: str, plane: ControlPlane = Depends(get_control_plane)
) -> list[RollbackResponse]:
    """List rollbacks of a workload, newest first."""
    return [_rollback_response(r) for r in plane.rollbacks.list_rollbacks(workload)]
