"""REST API for managing automations and their run history."""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from automations.models.automation import Automation, MissedRunPolicy
from automations.services.scheduler.cron import PRESETS, validate_cron_expression
from automations.services.scheduler.repository import InvalidCronExpression
from automations.services.scheduler.scheduler import AutomationScheduler

logger = logging.getLogger(__name__)

router = APIRouter()


class AutomationCreate(BaseModel):
    name: str = "New Automation"
    cron_expression: str = "0 * * * *"
    prompt: str = ""
    model: str = ""
    orchestrator: str = ""
    free_agent_mode: bool = False
    enabled: bool = False
    missed_run_policy: MissedRunPolicy = MissedRunPolicy.IGNORE


class AutomationUpdate(BaseModel):
    name: str | None = None
    cron_expression: str | None = None
    prompt: str | None = None
    model: str | None = None
    orchestrator: str | None = None
    free_agent_mode: bool | None = None
    enabled: bool | None = None
    missed_run_policy: MissedRunPolicy | None = None


class CronCheck(BaseModel):
    cron_expression: str


def get_scheduler(request: Request) -> AutomationScheduler:
    return request.app.state.scheduler


async def _get_or_404(scheduler: AutomationScheduler, automation_id: str) -> Automation:
    automation = await scheduler.repository.get(automation_id)
    if not automation:
        raise HTTPException(status_code=404, detail="Automation not found")
    return automation


# --- Static routes (declared before /{automation_id}) ---


@router.get("/templates")
async def list_templates():
    """Return built-in schedule presets."""
    return PRESETS


@router.post("/validate")
async def validate_cron(body: CronCheck):
    error = validate_cron_expression(body.cron_expression)
    return {"valid": error is None, "error": error}


@router.post("/refresh")
async def refresh(scheduler: AutomationScheduler = Depends(get_scheduler)):
    scheduler.broadcaster.publish("requested")
    return {"status": "ok", "subscribers": scheduler.broadcaster.subscriber_count}


@router.websocket("/ws")
async def refresh_websocket(websocket: WebSocket):
    """Push refresh notifications so UIs can re-render."""
    await websocket.accept()
    broadcaster = websocket.app.state.scheduler.broadcaster
    queue = broadcaster.subscribe()
    await websocket.send_json({"type": "ready"})

    async def drain_client():
        # Only used to notice disconnects; client messages are ignored
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass

    reader = asyncio.create_task(drain_client())
    try:
        while True:
            getter = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait({getter, reader}, return_when=asyncio.FIRST_COMPLETED)
            if reader in done:
                getter.cancel()
                break
            await websocket.send_json(getter.result())
    except WebSocketDisconnect:
        pass
    finally:
        reader.cancel()
        broadcaster.unsubscribe(queue)
        logger.info("Refresh WebSocket disconnected")


# --- Automations ---


@router.get("/")
async def list_automations(scheduler: AutomationScheduler = Depends(get_scheduler)):
    automations = await scheduler.repository.list_all()
    return [a.model_dump(mode="json") for a in automations]


@router.post("/")
async def create_automation(
    body: AutomationCreate, scheduler: AutomationScheduler = Depends(get_scheduler)
):
    try:
        automation = await scheduler.repository.create(Automation(**body.model_dump()))
    except InvalidCronExpression as e:
        raise HTTPException(status_code=422, detail=str(e))
    scheduler.broadcaster.publish("created", automation_id=automation.id)
    return automation.model_dump(mode="json")


@router.get("/{automation_id}")
async def get_automation(
    automation_id: str, scheduler: AutomationScheduler = Depends(get_scheduler)
):
    automation = await _get_or_404(scheduler, automation_id)
    return automation.model_dump(mode="json")


@router.patch("/{automation_id}")
async def update_automation(
    automation_id: str,
    body: AutomationUpdate,
    scheduler: AutomationScheduler = Depends(get_scheduler),
):
    try:
        automation = await scheduler.repository.update(
            automation_id, body.model_dump(exclude_none=True)
        )
    except InvalidCronExpression as e:
        raise HTTPException(status_code=422, detail=str(e))
    if not automation:
        raise HTTPException(status_code=404, detail="Automation not found")
    scheduler.broadcaster.publish("updated", automation_id=automation_id)
    return automation.model_dump(mode="json")


@router.delete("/{automation_id}")
async def delete_automation(
    automation_id: str, scheduler: AutomationScheduler = Depends(get_scheduler)
):
    if not await scheduler.repository.delete(automation_id):
        raise HTTPException(status_code=404, detail="Automation not found")
    scheduler.broadcaster.publish("deleted", automation_id=automation_id)
    return {"status": "deleted"}


@router.post("/{automation_id}/run")
async def run_now(automation_id: str, scheduler: AutomationScheduler = Depends(get_scheduler)):
    await _get_or_404(scheduler, automation_id)
    agent_id = await scheduler.run_now(automation_id)
    if agent_id is None:
        raise HTTPException(status_code=502, detail="Failed to dispatch agent")
    return {"status": "started", "agent_id": agent_id}


# --- Run history ---


@router.get("/{automation_id}/runs")
async def list_runs(
    automation_id: str,
    limit: int = Query(50, ge=1, le=50),
    scheduler: AutomationScheduler = Depends(get_scheduler),
):
    runs = await scheduler.recorder.list_runs(automation_id)
    return [r.model_dump(mode="json") for r in runs[:limit]]


@router.delete("/{automation_id}/runs/{agent_id}")
async def delete_run(
    automation_id: str, agent_id: str, scheduler: AutomationScheduler = Depends(get_scheduler)
):
    if not await scheduler.recorder.delete_run(automation_id, agent_id):
        raise HTTPException(status_code=404, detail="Run not found")
    scheduler.broadcaster.publish("run-deleted", automation_id=automation_id, agent_id=agent_id)
    return {"status": "deleted"}


@router.post("/{automation_id}/runs/{agent_id}/kill")
async def kill_run(
    automation_id: str, agent_id: str, scheduler: AutomationScheduler = Depends(get_scheduler)
):
    if scheduler.pending_runs.get(agent_id) != automation_id:
        raise HTTPException(status_code=404, detail="Run is not in flight")
    if not scheduler.dispatcher.kill(agent_id):
        raise HTTPException(status_code=409, detail="Run could not be killed")
    return {"status": "killing", "agent_id": agent_id}
