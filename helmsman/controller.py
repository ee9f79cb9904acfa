"""Owns the single active task: start, resume, cancel, answer prompts."""

import asyncio
from pathlib import Path
from typing import Callable

from helmsman.config import Config, get_config
from helmsman.exceptions import (
    StreamInterruptedError,
    TaskCreationError,
    TaskIdCollisionError,
)
from helmsman.llm import LLMProvider, create_provider
from helmsman.logging import get_logger
from helmsman.message_bus import ApprovalSurface, AskResponseType
from helmsman.storage import TaskStore
from helmsman.task import Task, TaskStatus
from helmsman.tools import create_default_registry
from helmsman.tools.registry import ToolRegistry

log = get_logger(__name__)

RegistryFactory = Callable[[Config], ToolRegistry]


class TaskController:
    """Runs at most one task at a time and routes operator answers to it.

    A transport failure inside a turn ends the running ``Task`` instance; the
    controller then reloads the same task id from the store and resumes it.
    """

    def __init__(
        self,
        provider: LLMProvider | None = None,
        store: TaskStore | None = None,
        surface: ApprovalSurface | None = None,
        config: Config | None = None,
        cwd: Path | str | None = None,
        registry_factory: RegistryFactory | None = None,
    ):
        self.config = config or get_config()
        self.provider = provider or create_provider(self.config)
        self.store = store or TaskStore(self.config.storage.path)
        self.surface = surface
        self.cwd = Path(cwd or Path.cwd())
        self.registry_factory = registry_factory or create_default_registry
        self._task: Task | None = None
        self._runner: asyncio.Task[TaskStatus] | None = None

    @property
    def task(self) -> Task | None:
        return self._task

    def _new_task(self, **kwargs) -> Task:
        return Task(
            self.provider,
            self.registry_factory(self.config),
            config=self.config,
            cwd=self.cwd,
            store=self.store,
            surface=self.surface,
            **kwargs,
        )

    async def _check_collision(self, task_id: str, stored_ok: bool) -> None:
        if self._task is not None and self._task.id == task_id and self._task.status == TaskStatus.ACTIVE:
            raise TaskIdCollisionError(task_id)
        if not stored_ok and await self.store.task_exists(task_id):
            raise TaskIdCollisionError(task_id)

    async def start_task(
        self,
        text: str | None,
        images: list[str] | None = None,
        task_id: str | None = None,
    ) -> Task:
        """Create a task and start driving it in the background.

        Raises:
            TaskCreationError: no request text or images
            TaskIdCollisionError: ``task_id`` is already in use
        """
        if not (text and text.strip()) and not images:
            raise TaskCreationError("A task needs a request text or images")
        if task_id is not None:
            await self._check_collision(task_id, stored_ok=False)

        await self.cancel()
        task = self._new_task(task_id=task_id)
        await self.store.create_task(task.id, (text or "").strip()[:200])
        self._task = task
        self._runner = asyncio.create_task(self._drive(task, task.start(text, images)))
        return task

    async def resume_task(self, task_id: str) -> Task:
        """Reload a stored task and resume it in the background.

        Raises:
            TaskCreationError: nothing stored under ``task_id``
            TaskIdCollisionError: that task is already running
        """
        await self._check_collision(task_id, stored_ok=True)
        records = await self.store.load_history(task_id)
        if records is None:
            raise TaskCreationError(f"No stored task with id {task_id}")
        messages = await self.store.load_messages(task_id)

        await self.cancel()
        task = self._new_task(task_id=task_id, records=records, messages=messages)
        await self.store.set_status(task_id, TaskStatus.ACTIVE.value)
        self._task = task
        self._runner = asyncio.create_task(self._drive(task, task.resume()))
        return task

    async def _drive(self, task: Task, run) -> TaskStatus:
        try:
            return await run
        except StreamInterruptedError as e:
            log.warning("Task interrupted by provider failure; reloading", task_id=task.id, error=str(e))
            await task.abort()
            if self._task is task:
                self._task = None
                self._runner = None
                await self.resume_task(task.id)
            return TaskStatus.ABORTED
        except Exception as e:
            log.error("Task failed", task_id=task.id, error=str(e))
            await task.abort()
            raise

    async def wait(self) -> TaskStatus | None:
        """Wait for the current task, following reloads after provider failures."""
        while self._runner is not None:
            runner = self._runner
            status = await runner
            if self._runner is runner:
                return status
        return None

    def respond(
        self,
        response: AskResponseType,
        text: str | None = None,
        images: list[str] | None = None,
        token: int | None = None,
    ) -> bool:
        """Answer the active task's prompt ``token`` (default: the newest one)."""
        if self._task is None:
            return False
        bus = self._task.bus
        if token is None:
            pending = bus.pending_tokens
            if not pending:
                return False
            token = pending[-1]
        return bus.respond(token, response, text, images)

    async def cancel(self) -> None:
        """Abort the active task and stop its runner."""
        task, runner = self._task, self._runner
        self._task = None
        self._runner = None
        if task is not None:
            await task.abort()
        if runner is not None and not runner.done():
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass
            except Exception as e:
                log.debug("Runner ended with error after cancel", error=str(e))

    async def close(self) -> None:
        await self.cancel()
        await self.provider.close()
        await self.store.close()
