from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class WorkspaceStorageSnapshot:
    workspace_id: str
    provider: str
    config: dict[str, Any]
    config_fingerprint: str
    active_job_id: str | None
    created_at: datetime
    updated_at: datetime
