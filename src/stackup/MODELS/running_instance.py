"""
Runtime state of a started service.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class InstanceState(str, Enum):
    """Lifecycle state of a service container."""

    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    EXITED = "exited"
    FAILED = "failed"


@dataclass
class RunningInstance:
    """A container created for one service, tracked by the orchestrator."""

    service_name: str
    container_id: Optional[str] = None
    state: InstanceState = InstanceState.CREATED
    started_at: Optional[str] = None
    exit_code: Optional[int] = None
    restart_count: int = 0
    stopped_by_operator: bool = False
    error: Optional[str] = None

    def mark_started(self) -> None:
        """Record the moment the instance reached the running state."""
        self.state = InstanceState.RUNNING
        self.exit_code = None
        self.started_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

    @property
    def short_id(self) -> str:
        return (self.container_id or "")[:12]
