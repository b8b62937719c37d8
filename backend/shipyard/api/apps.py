"""App endpoints: registered apps, redeploy, service control and delete."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query

from .state import get_lifecycle
from ..core.auth import require_operator
from ..schemas.app import AppResponse, DeleteAppResponse, ServiceLogsResponse
from ..schemas.deployment import DomainSpec, EnqueueResponse
from ..services.lifecycle import (
    ACTION_RESTART,
    ACTION_START,
    ACTION_STOP,
    LifecycleCoordinator,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/apps", tags=["apps"])


@router.get("", response_model=List[AppResponse])
def list_apps(lifecycle: LifecycleCoordinator = Depends(get_lifecycle)):
    """Every registered app with its derived state."""
    return lifecycle.list_apps()


@router.get("/{app_name}", response_model=AppResponse)
def get_app(app_name: str, lifecycle: LifecycleCoordinator = Depends(get_lifecycle)):
    """Stored configuration, service state and app state (absent/provisioning/running/failed)."""
    return lifecycle.describe(app_name)


@router.post("/{app_name}/redeploy", response_model=EnqueueResponse, status_code=202)
def redeploy_app(
    app_name: str,
    domains: Optional[List[DomainSpec]] = Body(None, embed=True),
    lifecycle: LifecycleCoordinator = Depends(get_lifecycle),
    operator: str = Depends(require_operator),
):
    """Rebuild from the stored configuration (latest branch tip for git apps).

    Optional ``domains`` are routed in addition to the existing ones.
    """
    return lifecycle.redeploy(app_name, domains=domains)


@router.post("/{app_name}/start", response_model=AppResponse)
async def start_app(
    app_name: str,
    lifecycle: LifecycleCoordinator = Depends(get_lifecycle),
    operator: str = Depends(require_operator),
):
    """Start the app's process from its current release. No-op when already running."""
    return await lifecycle.control(app_name, ACTION_START)


@router.post("/{app_name}/stop", response_model=AppResponse)
async def stop_app(
    app_name: str,
    lifecycle: LifecycleCoordinator = Depends(get_lifecycle),
    operator: str = Depends(require_operator),
):
    """Stop the app's process. It stays stopped across host reboots until started."""
    return await lifecycle.control(app_name, ACTION_STOP)


@router.post("/{app_name}/restart", response_model=AppResponse)
async def restart_app(
    app_name: str,
    lifecycle: LifecycleCoordinator = Depends(get_lifecycle),
    operator: str = Depends(require_operator),
):
    return await lifecycle.control(app_name, ACTION_RESTART)


@router.get("/{app_name}/logs", response_model=ServiceLogsResponse)
async def app_logs(
    app_name: str,
    lines: int = Query(100, ge=1, le=5000),
    lifecycle: LifecycleCoordinator = Depends(get_lifecycle),
):
    """Recent output of the running app (not build logs; see /api/deployments)."""
    return await lifecycle.service_logs(app_name, lines)


@router.delete("/{app_name}", response_model=DeleteAppResponse)
async def delete_app(
    app_name: str,
    lifecycle: LifecycleCoordinator = Depends(get_lifecycle),
    operator: str = Depends(require_operator),
):
    """Tear down service, routes, record and workspace. Safe to repeat."""
    removed = await lifecycle.delete(app_name)
    message = f"Deleted {app_name}" if removed else f"Nothing to delete for {app_name}"
    return DeleteAppResponse(app_name=app_name, message=message, removed=removed)
