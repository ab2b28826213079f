"""Bounded, persisted run history per automation."""

import logging
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from automations.core.store import UNCHANGED, PersistentStore, runs_key
from automations.models.automation import RunRecord, RunStatus

logger = logging.getLogger(__name__)

MAX_RUNS = 50


def _load_runs(raw: Any) -> list[RunRecord]:
    if not isinstance(raw, list):
        return []
    runs = []
    for item in raw:
        try:
            runs.append(RunRecord.model_validate(item))
        except ValidationError as e:
            logger.warning(f"Skipping malformed run record: {e}")
    return runs


def _dump_runs(runs: list[RunRecord]) -> list[dict]:
    return [r.model_dump(mode="json") for r in runs]


class RunRecorder:
    """Reads, prepends, finalizes and truncates ``runs:<automation id>`` lists.

    Every mutation runs as one locked read-modify-write on the store.
    """

    def __init__(self, store: PersistentStore, max_runs: int = MAX_RUNS):
        self.store = store
        self.max_runs = max_runs

    async def list_runs(self, automation_id: str) -> list[RunRecord]:
        return _load_runs(await self.store.read(runs_key(automation_id)))

    async def record_start(
        self, automation_id: str, agent_id: str, started_at: datetime
    ) -> RunRecord:
        record = RunRecord(
            agent_id=agent_id,
            automation_id=automation_id,
            started_at=started_at,
            status=RunStatus.RUNNING,
        )

        def mutate(raw: Any) -> list[dict]:
            runs = _load_runs(raw)
            runs.insert(0, record)
            return _dump_runs(runs[: self.max_runs])

        await self.store.update(runs_key(automation_id), mutate)
        return record

    async def finalize(
        self,
        automation_id: str,
        agent_id: str,
        status: RunStatus,
        summary: str | None,
        exit_code: int | None,
        completed_at: datetime,
    ) -> RunRecord | None:
        """Close the run for ``agent_id``. Returns None if no record matches."""
        finalized: RunRecord | None = None

        def mutate(raw: Any):
            nonlocal finalized
            runs = _load_runs(raw)
            for run in runs:
                if run.agent_id == agent_id:
                    run.status = status
                    run.summary = summary
                    run.exit_code = exit_code
                    run.completed_at = completed_at
                    finalized = run
                    return _dump_runs(runs)
            return UNCHANGED

        await self.store.update(runs_key(automation_id), mutate)
        if finalized is None:
            logger.warning(
                f"No run record for agent {agent_id} in automation {automation_id}"
            )
        return finalized

    async def delete_run(self, automation_id: str, agent_id: str) -> bool:
        removed = False

        def mutate(raw: Any):
            nonlocal removed
            runs = _load_runs(raw)
            remaining = [r for r in runs if r.agent_id != agent_id]
            removed = len(remaining) != len(runs)
            return _dump_runs(remaining) if removed else UNCHANGED

        await self.store.update(runs_key(automation_id), mutate)
        return removed

    async def delete_history(self, automation_id: str) -> None:
        key = runs_key(automation_id)
        async with self.store.locked(key):
            await self.store.delete(key)
