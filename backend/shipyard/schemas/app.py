"""App record schemas."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel


class DomainResponse(BaseModel):
    id: int
    domain: str
    is_primary: bool
    ssl_enabled: bool
    port: int

    class Config:
        from_attributes = True


class AppResponse(BaseModel):
    """Stored configuration of an app plus its live state."""
    name: str
    source_type: str
    repository_url: Optional[str] = None
    branch: str
    runtime: str
    install_command: str
    build_command: Optional[str] = None
    start_command: str
    env_vars: Dict[str, str]
    domains: List[DomainResponse]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # absent | provisioning | running | failed
    state: str
    # supervisor view: active | inactive | failed | unknown
    service_state: str
    last_job_id: Optional[int] = None


class DeleteAppResponse(BaseModel):
    app_name: str
    message: str
    removed: List[str]


class ServiceLogsResponse(BaseModel):
    """Recent output of an app's running process."""
    app_name: str
    lines: List[str]
