"""Automation definitions and run history models.

Both are persisted as JSON lists in the key/value store rather than as
tables: the automation list under ``automations`` and each automation's run
history under ``runs:<automation id>``.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel


class MissedRunPolicy(str, Enum):
    IGNORE = "ignore"
    RUN_ONCE = "run-once"
    RUN_ALL = "run-all"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def generate_automation_id() -> str:
    return f"auto_{uuid.uuid4().hex[:12]}"


class DispatchOptions(SQLModel):
    model: Optional[str] = None
    orchestrator: Optional[str] = None
    free_agent_mode: Optional[bool] = None


class Automation(SQLModel):
    id: str = Field(default_factory=generate_automation_id)
    name: str = "New Automation"
    cron_expression: str = "0 * * * *"  # Standard cron: "0 7 * * *" = daily at 7am
    model: str = ""
    orchestrator: str = ""
    free_agent_mode: bool = False
    prompt: str = ""  # The instruction to send to the agent
    enabled: bool = False
    missed_run_policy: MissedRunPolicy = MissedRunPolicy.IGNORE
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_run_at: Optional[datetime] = None

    def dispatch_options(self) -> DispatchOptions:
        # Empty strings and a false flag mean "use the dispatcher default"
        return DispatchOptions(
            model=self.model or None,
            orchestrator=self.orchestrator or None,
            free_agent_mode=self.free_agent_mode or None,
        )


class RunRecord(SQLModel):
    agent_id: str
    automation_id: str
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: RunStatus = RunStatus.RUNNING
    summary: Optional[str] = None
    exit_code: Optional[int] = None
    completed_at: Optional[datetime] = None
