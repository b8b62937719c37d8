"""Deployment endpoints: enqueue, job status and live log streaming.

Endpoints are thin; the QueueManager validates and owns every job.
"""

import asyncio
import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from fastapi.responses import StreamingResponse

from .state import get_queue
from ..core.auth import require_operator
from ..core.config import settings
from ..exceptions import ValidationError
from ..schemas.deployment import (
    DeployRequest,
    DomainSpec,
    EnqueueResponse,
    GitDeployRequest,
    JobResponse,
    JobSummary,
    parse_env_vars,
)
from ..services.log_broker import LogChunk, StreamEnd
from ..services.queue_manager import QueueManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/deployments", tags=["deployments"])


@router.post("/git", response_model=EnqueueResponse, status_code=202)
def deploy_from_git(
    body: GitDeployRequest,
    queue: QueueManager = Depends(get_queue),
    operator: str = Depends(require_operator),
):
    """Queue a new app built from a Git repository.

    Returns as soon as the job is queued; follow progress on
    ``/api/deployments/{job_id}/logs``.
    """
    return queue.enqueue(body.to_deploy_request())


@router.post("/file", response_model=EnqueueResponse, status_code=202)
def deploy_from_archive(
    app_name: str = Form(...),
    start_command: str = Form(""),
    runtime: str = Form("node"),
    install_command: str = Form(""),
    build_command: str = Form(""),
    env_vars: str = Form("", description="JSON object or KEY=VALUE lines"),
    domains: str = Form("", description="Comma-separated domains"),
    ssl_enabled: bool = Form(True),
    file: UploadFile = File(..., description="Zip archive of the app source"),
    queue: QueueManager = Depends(get_queue),
    operator: str = Depends(require_operator),
):
    """Queue a new app built from an uploaded zip archive."""
    try:
        env = parse_env_vars(env_vars)
    except ValueError as e:
        raise ValidationError(str(e), field="env_vars") from e
    if runtime not in ("node", "python", "bun"):
        raise ValidationError(f"Unsupported runtime: {runtime}", field="runtime")

    limit = settings.max_upload_mb * 1024 * 1024
    data = file.file.read(limit + 1)
    if len(data) > limit:
        raise ValidationError(f"Archive exceeds {settings.max_upload_mb} MB", field="file")

    request = DeployRequest(
        app_name=app_name,
        source_type="file",
        runtime=runtime,
        install_command=install_command,
        build_command=build_command,
        start_command=start_command,
        env_vars=env,
        domains=[
            DomainSpec(domain=d, ssl_enabled=ssl_enabled)
            for d in domains.split(",") if d.strip()
        ],
    )
    logger.info(f"Archive upload for {app_name}: {file.filename} ({len(data)} bytes)")
    return queue.enqueue_upload(request, data)


@router.get("", response_model=List[JobSummary])
def list_deployments(
    app_name: Optional[str] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    queue: QueueManager = Depends(get_queue),
):
    """All deployment jobs, newest first."""
    return queue.list_all(limit=limit, app_name=app_name)


@router.get("/{job_id}", response_model=JobResponse)
def get_deployment(
    job_id: int,
    queue: QueueManager = Depends(get_queue),
):
    """Point-in-time status of one job, including the log so far."""
    return queue.status(job_id)


def _sse(event: str, data: dict, event_id: Optional[int] = None) -> str:
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event}")
    lines.append(f"data: {json.dumps(data)}")
    return "\n".join(lines) + "\n\n"


@router.get("/{job_id}/logs")
async def stream_deployment_logs(
    job_id: int,
    request: Request,
    queue: QueueManager = Depends(get_queue),
):
    """Server-Sent Events stream of a job's output.

    Replays everything produced so far, then streams live chunks:

    ```
    event: log
    data: {"seq": 0, "text": "==> fetch ..."}

    event: end
    data: {"status": "completed", "error_message": null}
    ```

    The stream closes after the ``end`` event. Jobs that already finished
    replay their stored log followed by ``end``.
    """
    subscription = queue.subscribe(job_id)
    heartbeat = settings.sse_heartbeat_seconds

    async def generate():
        try:
            while True:
                try:
                    item = await subscription.get(timeout=heartbeat)
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        break
                    yield ": heartbeat\n\n"
                    continue
                if item is None:
                    break
                if isinstance(item, LogChunk):
                    yield _sse("log", {"seq": item.seq, "text": item.text}, event_id=item.seq)
                elif isinstance(item, StreamEnd):
                    yield _sse("end", {"status": item.status, "error_message": item.error_message})
                    break
            if subscription.dropped:
                logger.warning(
                    f"Log stream for job {job_id} dropped {subscription.dropped} chunk(s) for a slow reader",
                    extra={"job_id": job_id},
                )
        finally:
            queue.unsubscribe(job_id, subscription)

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
