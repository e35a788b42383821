# control/session.py

import copy
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from shared_libs.hardware_core.errors import SessionStateError


class SessionStatus(str, enum.Enum):
    IDLE = "idle"
    LOADED = "loaded"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.STOPPED})

# Allowed lifecycle moves. PAUSED -> FAILED covers a timed actuator that fails
# to switch off while the session is paused.
TRANSITIONS: Dict[SessionStatus, frozenset] = {
    SessionStatus.IDLE: frozenset({SessionStatus.LOADED}),
    SessionStatus.LOADED: frozenset({SessionStatus.RUNNING}),
    SessionStatus.RUNNING: frozenset({
        SessionStatus.PAUSED,
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.STOPPED,
    }),
    SessionStatus.PAUSED: frozenset({SessionStatus.RUNNING, SessionStatus.STOPPED, SessionStatus.FAILED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.STOPPED: frozenset(),
}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass
class SessionError:
    block_id: Optional[str]
    error_type: str
    message: str
    severity: str = "error"  # "error" | "critical"
    attempts: int = 1
    timestamp: datetime = field(default_factory=_now)


@dataclass
class SessionLog:
    level: str
    message: str
    block_id: Optional[str] = None
    timestamp: datetime = field(default_factory=_now)


@dataclass
class ExecutionSession:
    id: str
    flow_id: str
    status: SessionStatus = SessionStatus.IDLE
    current_block_id: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    step_count: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    errors: List[SessionError] = field(default_factory=list)
    logs: List[SessionLog] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition(self, new_status: SessionStatus) -> bool:
        return new_status in TRANSITIONS[self.status]

    def transition(self, new_status: SessionStatus) -> SessionStatus:
        """Move to `new_status`, returning the previous one."""
        if not self.can_transition(new_status):
            raise SessionStateError(
                f"Session '{self.id}' cannot go from {self.status.value} to {new_status.value}"
            )
        previous = self.status
        self.status = new_status
        if new_status == SessionStatus.RUNNING and self.start_time is None:
            self.start_time = _now()
        if new_status in TERMINAL_STATUSES:
            self.end_time = _now()
        return previous

    def snapshot(self) -> "ExecutionSession":
        return copy.deepcopy(self)
