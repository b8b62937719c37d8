"""Deployment request and job schemas."""

import json
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


Runtime = Literal["node", "python", "bun"]
SourceType = Literal["git", "file"]


class DomainSpec(BaseModel):
    """A public domain to route to the app."""
    domain: str
    ssl_enabled: bool = True

    @field_validator("domain")
    @classmethod
    def normalize_domain(cls, v: str) -> str:
        return v.strip().lower().rstrip(".")


class DeployRequest(BaseModel):
    """Everything the queue needs to create a job.

    Field presence is checked by the queue manager, not here, so that
    missing source fields surface as a single validation error with the
    offending field name instead of a schema dump.
    """
    app_name: str = ""
    source_type: SourceType = "git"

    # git source
    repository: Optional[str] = None
    branch: Optional[str] = None

    # file source: path of the stored upload
    archive_path: Optional[str] = None

    runtime: Runtime = "node"
    install_command: Optional[str] = None
    build_command: Optional[str] = None
    start_command: Optional[str] = None
    env_vars: Dict[str, str] = Field(default_factory=dict)
    domains: List[DomainSpec] = Field(default_factory=list)


class GitDeployRequest(BaseModel):
    """JSON body for ``POST /api/deployments/git``."""
    app_name: str
    repository: Optional[str] = None
    branch: Optional[str] = None
    runtime: Runtime = "node"
    install_command: Optional[str] = None
    build_command: Optional[str] = None
    start_command: Optional[str] = None
    env_vars: Dict[str, str] = Field(default_factory=dict)
    domains: List[DomainSpec] = Field(default_factory=list)

    def to_deploy_request(self) -> DeployRequest:
        return DeployRequest(source_type="git", **self.model_dump())


class EnqueueResponse(BaseModel):
    """Returned as soon as a job is queued."""
    job_id: int
    app_name: str
    status: str
    message: str


class JobSummary(BaseModel):
    """Job row as listed on the dashboard (without logs)."""
    id: int
    app_name: str
    source_type: str
    kind: str
    status: str
    error_message: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class JobResponse(JobSummary):
    """Point-in-time snapshot of a deployment job, logs included."""
    logs: str = ""


def parse_env_vars(raw: Optional[str]) -> Dict[str, str]:
    """Parse env vars given either as a JSON object or as KEY=VALUE lines.

    Blank lines and ``#`` comments are ignored in the line format.

    Raises:
        ValueError: if the text is neither valid JSON object nor KEY=VALUE lines.
    """
    if not raw or not raw.strip():
        return {}

    text = raw.strip()
    if text.startswith("{"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid env vars JSON: {e.msg}") from e
        if not isinstance(data, dict):
            raise ValueError("Env vars JSON must be an object")
        return {str(k): str(v) for k, v in data.items()}

    env: Dict[str, str] = {}
    for lineno, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid env var on line {lineno}: expected KEY=VALUE")
        env[key.strip()] = value.strip()
    return env
