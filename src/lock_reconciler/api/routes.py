"""API routes for the lock reconciler."""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from lock_reconciler.core.manager import ReconciliationManager
from lock_reconciler.errors import (
    LeaseUnavailableError,
    RunAlreadyActiveError,
    RunNotFoundError,
    RunNotRunningError,
)

router = APIRouter()

# Dependency to get the manager instance
_manager: Optional[ReconciliationManager] = None


def get_manager() -> ReconciliationManager:
    if _manager is None:
        raise HTTPException(status_code=500, detail="Manager not initialized")
    return _manager


def set_manager(manager: Optional[ReconciliationManager]) -> None:
    global _manager
    _manager = manager


# Request models


class RetryRequest(BaseModel):
    ids: Optional[list[int]] = None


class DeleteFailuresRequest(BaseModel):
    ids: list[int] = Field(min_length=1)


class PasscodeRequest(BaseModel):
    code: str
    start_date: date
    end_date: date
    reservation_id: Optional[str] = None
    skip_upstream: bool = False


class ConfigUpdateRequest(BaseModel):
    values: dict[str, str]


@router.get("/health")
async def health_check(manager: ReconciliationManager = Depends(get_manager)):
    """Check the health of all components."""
    return await manager.health_check()


# Run endpoints


@router.get("/runs")
async def list_runs(
    limit: int = Query(20, ge=1, le=200),
    manager: ReconciliationManager = Depends(get_manager),
):
    """Get the most recent reconciliation runs."""
    return {
        "runs": await manager.get_runs(limit),
        "statistics": await manager.get_statistics(),
    }


@router.get("/runs/{run_id}")
async def get_run(run_id: int, manager: ReconciliationManager = Depends(get_manager)):
    """Get a run with its success and failure records."""
    run = await manager.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return run


@router.post("/runs", status_code=202)
async def trigger_run(manager: ReconciliationManager = Depends(get_manager)):
    """Start a reconciliation run in the background."""
    try:
        run_id = await manager.trigger_run(trigger="manual")
    except RunAlreadyActiveError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"run_id": run_id, "status": "running"}


@router.post("/runs/{run_id}/kill")
async def kill_run(run_id: int, manager: ReconciliationManager = Depends(get_manager)):
    """Mark a running run as killed."""
    try:
        return await manager.kill_run(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RunNotRunningError as e:
        raise HTTPException(status_code=400, detail=str(e))


# Failure endpoints


@router.get("/failures")
async def list_failures(
    include_resolved: bool = False,
    manager: ReconciliationManager = Depends(get_manager),
):
    """Get failed lock updates."""
    return {"failures": await manager.get_failures(include_resolved=include_resolved)}


@router.post("/failures/retry")
async def retry_failures(
    request: Optional[RetryRequest] = None,
    manager: ReconciliationManager = Depends(get_manager),
):
    """Retry all unresolved failures, or the given ids."""
    ids = request.ids if request else None
    summary = await manager.retry_failures(ids)
    return summary.to_dict()


@router.post("/failures/delete")
async def delete_failures(
    request: DeleteFailuresRequest,
    manager: ReconciliationManager = Depends(get_manager),
):
    """Delete failure records."""
    try:
        deleted = await manager.delete_failures(request.ids)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"deleted": deleted}


# Lock endpoints


@router.get("/locks")
async def list_locks(manager: ReconciliationManager = Depends(get_manager)):
    """Get lock profiles and their passcode slots."""
    return {"locks": await manager.get_locks()}


@router.post("/locks/refresh")
async def refresh_locks(manager: ReconciliationManager = Depends(get_manager)):
    """Refresh lock profiles and slots from the lock vendor."""
    result = await manager.refresh_locks()
    return result.to_dict()


@router.post("/locks/{lock_id}/passcode")
async def set_passcode(
    lock_id: str,
    request: PasscodeRequest,
    manager: ReconciliationManager = Depends(get_manager),
):
    """Issue a chosen guest passcode on a lock."""
    try:
        result = await manager.manual_update(
            lock_id,
            request.code,
            request.start_date,
            request.end_date,
            reservation_id=request.reservation_id,
            skip_upstream=request.skip_upstream,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LeaseUnavailableError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if not result.success:
        raise HTTPException(
            status_code=502,
            detail={"error_kind": result.kind.value, "error": result.message},
        )
    return {
        "lock_id": result.lock_id,
        "passcode_id": result.passcode_id,
        "code": result.code,
        "start": result.window_start.isoformat(),
        "end": result.window_end.isoformat(),
        "upstream_patched": result.upstream_patched,
        "upstream_error": result.upstream_error,
    }


# Configuration endpoints


@router.get("/config")
async def get_config(manager: ReconciliationManager = Depends(get_manager)):
    """Get which credentials are configured (values are not returned)."""
    return await manager.get_config()


@router.put("/config")
async def update_config(
    request: ConfigUpdateRequest,
    manager: ReconciliationManager = Depends(get_manager),
):
    """Update credential values."""
    try:
        return await manager.set_config(request.values)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
