"""Dependencies that hand the engine objects built at startup to endpoints."""

from fastapi import Request

from ..services.lifecycle import LifecycleCoordinator
from ..services.queue_manager import QueueManager


def get_queue(request: Request) -> QueueManager:
    return request.app.state.queue


def get_lifecycle(request: Request) -> LifecycleCoordinator:
    return request.app.state.lifecycle
