"""CRUD over the persisted automation list."""

import logging
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from automations.core.store import AUTOMATIONS_KEY, UNCHANGED, PersistentStore
from automations.models.automation import Automation
from automations.services.scheduler.cron import validate_cron_expression
from automations.services.scheduler.runs import RunRecorder

logger = logging.getLogger(__name__)

# Fields the API may change; last_run_at is owned by the scheduler
EDITABLE_FIELDS = {
    "name",
    "cron_expression",
    "model",
    "orchestrator",
    "free_agent_mode",
    "prompt",
    "enabled",
    "missed_run_policy",
}


class InvalidCronExpression(ValueError):
    """Raised when a cron expression fails validation on save."""


def _load_automations(raw: Any) -> list[Automation]:
    if not isinstance(raw, list):
        return []
    automations = []
    for item in raw:
        try:
            automations.append(Automation.model_validate(item))
        except ValidationError as e:
            logger.warning(f"Skipping malformed automation: {e}")
    return automations


def _check_cron(expression: str) -> None:
    error = validate_cron_expression(expression)
    if error:
        raise InvalidCronExpression(error)


class AutomationRepository:
    def __init__(self, store: PersistentStore, recorder: RunRecorder | None = None):
        self.store = store
        self.recorder = recorder or RunRecorder(store)

    async def list_all(self) -> list[Automation]:
        return _load_automations(await self.store.read(AUTOMATIONS_KEY))

    async def get(self, automation_id: str) -> Automation | None:
        for automation in await self.list_all():
            if automation.id == automation_id:
                return automation
        return None

    async def create(self, automation: Automation) -> Automation:
        """Append a new automation. Raises InvalidCronExpression."""
        _check_cron(automation.cron_expression)

        def mutate(raw: Any) -> list:
            items = raw if isinstance(raw, list) else []
            return [*items, automation.model_dump(mode="json")]

        await self.store.update(AUTOMATIONS_KEY, mutate)
        logger.info(f"Created automation '{automation.name}' ({automation.id})")
        return automation

    async def update(self, automation_id: str, changes: dict[str, Any]) -> Automation | None:
        """Apply editable field changes. Raises InvalidCronExpression."""
        changes = {k: v for k, v in changes.items() if k in EDITABLE_FIELDS}
        if "cron_expression" in changes:
            _check_cron(changes["cron_expression"])

        updated: Automation | None = None

        def mutate(raw: Any):
            nonlocal updated
            items = raw if isinstance(raw, list) else []
            for i, item in enumerate(items):
                if isinstance(item, dict) and item.get("id") == automation_id:
                    current = Automation.model_validate(item)
                    updated = Automation.model_validate(
                        {**current.model_dump(), **changes}
                    )
                    items[i] = updated.model_dump(mode="json")
                    return items
            return UNCHANGED

        await self.store.update(AUTOMATIONS_KEY, mutate)
        return updated

    async def delete(self, automation_id: str) -> bool:
        """Remove an automation and cascade-delete its run history."""
        removed = False

        def mutate(raw: Any):
            nonlocal removed
            items = raw if isinstance(raw, list) else []
            remaining = [
                item
                for item in items
                if not (isinstance(item, dict) and item.get("id") == automation_id)
            ]
            removed = len(remaining) != len(items)
            return remaining if removed else UNCHANGED

        await self.store.update(AUTOMATIONS_KEY, mutate)
        if removed:
            await self.recorder.delete_history(automation_id)
            logger.info(f"Deleted automation {automation_id}")
        return removed

    async def set_last_run(self, automation_id: str, at: datetime) -> bool:
        """Set ``last_run_at`` without touching any other stored field."""
        found = False

        def mutate(raw: Any):
            nonlocal found
            if not isinstance(raw, list):
                return UNCHANGED
            for item in raw:
                if isinstance(item, dict) and item.get("id") == automation_id:
                    item["last_run_at"] = at.isoformat()
                    found = True
                    return raw
            return UNCHANGED

        await self.store.update(AUTOMATIONS_KEY, mutate)
        return found
