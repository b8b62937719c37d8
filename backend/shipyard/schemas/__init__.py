"""Pydantic schemas for API requests and responses."""

from .deployment import (
    DeployRequest,
    DomainSpec,
    EnqueueResponse,
    GitDeployRequest,
    JobResponse,
    JobSummary,
    parse_env_vars,
)
from .app import AppResponse, DeleteAppResponse, DomainResponse

__all__ = [
    "DeployRequest",
    "DomainSpec",
    "EnqueueResponse",
    "GitDeployRequest",
    "JobResponse",
    "JobSummary",
    "parse_env_vars",
    "AppResponse",
    "DeleteAppResponse",
    "DomainResponse",
]
