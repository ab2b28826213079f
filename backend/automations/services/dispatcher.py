"""Agent dispatch - starts quick agent runs and reports their status changes.

The scheduler only depends on the ``AgentDispatcher`` protocol. The bundled
``QuickAgentDispatcher`` runs each quick agent as an asyncio task in this
process.
"""

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, Protocol

from automations.core.config import settings
from automations.models.automation import DispatchOptions
from automations.services.agent import Agent

logger = logging.getLogger(__name__)


class AgentStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    SLEEPING = "sleeping"  # finished successfully
    ERROR = "error"


# (agent_id, status, prev_status)
StatusChangeHandler = Callable[[str, str, str], None]


@dataclass
class CompletedAgentInfo:
    id: str
    summary: str | None
    exit_code: int | None


class Subscription:
    """Handle returned by ``on_status_change``; call ``dispose`` to unsubscribe."""

    def __init__(self, dispose: Callable[[], None]):
        self._dispose = dispose
        self.disposed = False

    def dispose(self) -> None:
        if not self.disposed:
            self.disposed = True
            self._dispose()


class AgentDispatcher(Protocol):
    async def run_quick(self, prompt: str, options: DispatchOptions) -> str: ...

    def on_status_change(self, handler: StatusChangeHandler) -> Subscription: ...

    def list_completed(self) -> list[CompletedAgentInfo]: ...

    def kill(self, agent_id: str) -> bool: ...


class QuickAgent(Protocol):
    def run(self, prompt: str) -> AsyncIterator[str]: ...


AgentFactory = Callable[[DispatchOptions], QuickAgent]


def _gemini_agent(options: DispatchOptions) -> QuickAgent:
    return Agent(model=options.model, free_agent_mode=bool(options.free_agent_mode))


class QuickAgentDispatcher:
    """In-process dispatcher backed by asyncio tasks."""

    def __init__(
        self,
        orchestrators: dict[str, AgentFactory] | None = None,
        default_orchestrator: str | None = None,
        completed_limit: int | None = None,
        summary_max_chars: int | None = None,
    ):
        self._orchestrators = orchestrators or {"gemini": _gemini_agent}
        self._default_orchestrator = default_orchestrator or settings.default_orchestrator
        self._summary_max_chars = summary_max_chars or settings.summary_max_chars
        self._completed: deque[CompletedAgentInfo] = deque(
            maxlen=completed_limit or settings.completed_agents_limit
        )
        self._handlers: list[StatusChangeHandler] = []
        self._tasks: dict[str, asyncio.Task] = {}
        self._statuses: dict[str, AgentStatus] = {}

    async def run_quick(self, prompt: str, options: DispatchOptions | None = None) -> str:
        options = options or DispatchOptions()
        orchestrator = options.orchestrator or self._default_orchestrator
        factory = self._orchestrators.get(orchestrator)
        if factory is None:
            raise ValueError(f"Unknown orchestrator: {orchestrator}")

        agent = factory(options)
        agent_id = f"quick_{uuid.uuid4().hex[:12]}"
        self._set_status(agent_id, AgentStatus.RUNNING)
        task = asyncio.create_task(self._run(agent_id, agent, prompt))
        task.add_done_callback(lambda t: self._on_task_done(agent_id, t))
        self._tasks[agent_id] = task
        logger.info(f"Dispatched quick agent {agent_id} (orchestrator={orchestrator})")
        return agent_id

    def on_status_change(self, handler: StatusChangeHandler) -> Subscription:
        self._handlers.append(handler)

        def dispose() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return Subscription(dispose)

    def list_completed(self) -> list[CompletedAgentInfo]:
        return list(self._completed)

    def kill(self, agent_id: str) -> bool:
        task = self._tasks.get(agent_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def _run(self, agent_id: str, agent: QuickAgent, prompt: str) -> None:
        try:
            full_response = ""
            async for token in agent.run(prompt):
                full_response += token
            self._completed.append(
                CompletedAgentInfo(
                    id=agent_id,
                    summary=full_response[: self._summary_max_chars] or None,
                    exit_code=0,
                )
            )
            self._set_status(agent_id, AgentStatus.SLEEPING)
        except Exception as e:
            logger.error(f"Quick agent {agent_id} failed: {e}")
            self._completed.append(
                CompletedAgentInfo(id=agent_id, summary=str(e)[:1000], exit_code=1)
            )
            self._set_status(agent_id, AgentStatus.ERROR)

    def _on_task_done(self, agent_id: str, task: asyncio.Task) -> None:
        """Report kills, including tasks cancelled before their first step."""
        self._tasks.pop(agent_id, None)
        if not task.cancelled():
            return
        logger.info(f"Quick agent {agent_id} killed")
        self._completed.append(CompletedAgentInfo(id=agent_id, summary="Killed", exit_code=1))
        self._set_status(agent_id, AgentStatus.ERROR)

    def _set_status(self, agent_id: str, status: AgentStatus) -> None:
        prev = self._statuses.get(agent_id, AgentStatus.STARTING)
        self._statuses[agent_id] = status
        for handler in list(self._handlers):
            try:
                handler(agent_id, status.value, prev.value)
            except Exception:
                logger.exception(f"Status change handler failed for {agent_id}")
        if status in (AgentStatus.SLEEPING, AgentStatus.ERROR):
            self._statuses.pop(agent_id, None)
