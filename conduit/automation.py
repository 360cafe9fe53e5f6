"""Pipeline automations: ordered steps that share a variable table per run."""
import asyncio
import functools
import logging
import re
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .config import AppSettings
from .db import Database, utc_now
from .errors import PipelineStepError
from .events import EventBus
from .scheduler import Scheduler
from .schemas import (
    AgentActionStep,
    Automation,
    AutomationProgress,
    AutomationRun,
    ChatMessage,
    ConditionStep,
    IntegrationActionStep,
    SaveToVaultStep,
    WaitStep,
)
from .tool_loop import ToolCallLoop
from .tools import ToolExecutor
from .vault import VaultWriter


logger = logging.getLogger("uvicorn.error")

PLACEHOLDER_RE = re.compile(r"\{\{\s*([\w.-]+)\s*\}\}")
INTEGER_RE = re.compile(r"^\s*-?\d+\s*$")
NUMERIC_ARGS = ("count", "limit")
LAST_OUTPUT = "last_output"


def resolve_placeholders(text: str, variables: Dict[str, str]) -> str:
    """Replace ``{{name}}`` with the variable value; unknown names stay as written."""

    def replace(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name in variables:
            return variables[name]
        if name == LAST_OUTPUT:
            return ""
        return match.group(0)

    return PLACEHOLDER_RE.sub(replace, text or "")


def _step_label(step: Any, index: int) -> str:
    return step.id or f"#{index + 1}"


class AutomationEngine:
    def __init__(
        self,
        store: Database,
        loop_factory: Callable[[], ToolCallLoop],
        executor: ToolExecutor,
        vault: VaultWriter,
        scheduler: Scheduler,
        settings: AppSettings,
        bus: Optional[EventBus] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.loop_factory = loop_factory
        self.executor = executor
        self.vault = vault
        self.scheduler = scheduler
        self.settings = settings
        self.bus = bus
        self._sleep = sleep
        self._running: Set[str] = set()
        self._lock = asyncio.Lock()
        self._background: Set[asyncio.Task] = set()

    def is_running(self, automation_id: str) -> bool:
        return automation_id in self._running

    def running_automations(self) -> List[str]:
        return sorted(self._running)

    def run_in_background(self, automation_id: str) -> asyncio.Task:
        task = asyncio.create_task(self.run_now(automation_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def shutdown(self) -> None:
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _emit(self, event_type: str, payload: dict) -> None:
        if self.bus is not None:
            await self.bus.emit(event_type, payload)

    async def _set_progress(self, automation_id: str, current: int, total: int) -> None:
        await self.store.set_progress(automation_id, AutomationProgress(current=current, total=total))
        await self._emit("automation_progress", {"automation_id": automation_id, "current": current, "total": total})

    @staticmethod
    def _log(run: AutomationRun, message: str) -> None:
        run.logs.append(f"[{utc_now()}] {message}")

    async def run_now(self, automation_id: str) -> Optional[AutomationRun]:
        automation = await self.store.get_automation(automation_id)
        if automation is None:
            logger.error("Automation %s not found", automation_id)
            return None
        async with self._lock:
            if automation_id in self._running:
                logger.warning("Automation %s is already running; skipping", automation_id)
                return None
            self._running.add(automation_id)
        try:
            return await self._execute(automation)
        finally:
            async with self._lock:
                self._running.discard(automation_id)

    async def _execute(self, automation: Automation) -> AutomationRun:
        run = AutomationRun(
            run_id=uuid.uuid4().hex,
            automation_id=automation.id,
            status="running",
            started_at=utc_now(),
        )
        await self.store.create_run(run)
        total = len(automation.pipeline)
        await self._set_progress(automation.id, 0, total)
        await self._emit("automation_started", {"automation_id": automation.id, "run_id": run.run_id})
        self._log(run, f"Starting automation: {automation.name or automation.id}")
        logger.info("Automation %s started (run %s, %s steps)", automation.id, run.run_id, total)
        try:
            for index, step in enumerate(automation.pipeline):
                await self._set_progress(automation.id, index + 1, total)
                self._log(run, f"Step {index + 1}/{total}: {step.type} ({_step_label(step, index)})")
                try:
                    await self._run_step(step, index, run)
                except PipelineStepError:
                    raise
                except Exception as exc:
                    raise PipelineStepError(
                        step.id, step.type, f"Step {_step_label(step, index)} ({step.type}) failed: {exc}"
                    ) from exc
        except PipelineStepError as exc:
            return await self._fail(automation, run, str(exc))
        except asyncio.CancelledError:
            await self._fail(automation, run, "Run cancelled")
            raise
        run.status = "success"
        run.finished_at = utc_now()
        self._log(run, "Automation completed successfully")
        await self.store.finish_run(run)
        await self.store.update_automation(automation.id, last_run_at=run.finished_at)
        await self._emit("automation_completed", {"automation_id": automation.id, "run_id": run.run_id})
        logger.info("Automation %s completed (run %s)", automation.id, run.run_id)
        return run

    async def _fail(self, automation: Automation, run: AutomationRun, error: str) -> AutomationRun:
        run.status = "failed"
        run.error = error
        run.finished_at = utc_now()
        self._log(run, f"[ERROR] {error}")
        logger.error("Automation %s failed (run %s): %s", automation.id, run.run_id, error)
        await self.store.finish_run(run)
        await self._emit(
            "automation_failed", {"automation_id": automation.id, "run_id": run.run_id, "error": error}
        )
        return run

    def _store_output(self, step: Any, run: AutomationRun, output: str) -> None:
        if step.output_variable:
            run.variables[step.output_variable] = output
        run.variables[LAST_OUTPUT] = output

    async def _run_step(self, step: Any, index: int, run: AutomationRun) -> None:
        label = _step_label(step, index)
        if isinstance(step, AgentActionStep):
            await self._agent_action(step, label, run)
        elif isinstance(step, IntegrationActionStep):
            await self._integration_action(step, label, run)
        elif isinstance(step, SaveToVaultStep):
            await self._save_to_vault(step, label, run)
        elif isinstance(step, WaitStep):
            self._log(run, f"Waiting {step.wait_duration}ms")
            await self._sleep(step.wait_duration / 1000)
        elif isinstance(step, ConditionStep):
            self._log(run, "[SKIP] Conditional steps not yet implemented")
        else:
            step_type = getattr(step, "type", type(step).__name__)
            raise PipelineStepError(getattr(step, "id", ""), step_type, f"Step {label}: unknown step type {step_type}")

    async def _agent_action(self, step: AgentActionStep, label: str, run: AutomationRun) -> None:
        if not step.agent_id or not step.prompt:
            raise PipelineStepError(step.id, step.type, f"Step {label}: agent_action requires agent_id and prompt")
        agent = await self.store.get_agent(step.agent_id)
        if agent is None:
            raise PipelineStepError(step.id, step.type, f"Step {label}: agent {step.agent_id} not found")
        prompt = resolve_placeholders(step.prompt, run.variables).strip()
        if not prompt:
            raise PipelineStepError(step.id, step.type, f"Step {label}: prompt is empty after resolving variables")
        model_id = agent.preferred_model_id or self.settings.preferred_model_id
        messages = [
            ChatMessage(role="system", content=agent.system_prompt),
            ChatMessage(role="user", content=prompt),
        ]
        self._log(run, f"Agent {agent.name or agent.id} running with {model_id}")
        output = await self.loop_factory().run_stream(messages, lambda _chunk: None, model_id)
        self._store_output(step, run, output)
        self._log(run, f"Agent produced {len(output)} characters")

    async def _integration_action(self, step: IntegrationActionStep, label: str, run: AutomationRun) -> None:
        if not step.integration_id or not step.integration_action:
            raise PipelineStepError(
                step.id, step.type, f"Step {label}: integration_action requires integration_id and integration_action"
            )
        args: Dict[str, Any] = {}
        for key, value in (step.integration_args or {}).items():
            args[key] = resolve_placeholders(value, run.variables) if isinstance(value, str) else value
        args["operation"] = step.integration_action
        for key in NUMERIC_ARGS:
            value = args.get(key)
            if isinstance(value, str) and INTEGER_RE.match(value):
                args[key] = int(value)
        self._log(run, f"Calling {step.integration_id}.{step.integration_action}")
        result = await self.executor.execute(step.integration_id, args)
        if result.is_error:
            raise PipelineStepError(
                step.id, step.type, f"Step {label}: {step.integration_id} failed: {result.result}"
            )
        self._store_output(step, run, result.result)

    async def _save_to_vault(self, step: SaveToVaultStep, label: str, run: AutomationRun) -> None:
        if not step.vault_path:
            raise PipelineStepError(step.id, step.type, f"Step {label}: save_to_vault requires vault_path")
        variables = run.variables
        if step.source_variable:
            content = variables.get(step.source_variable, "")
        else:
            content = variables.get(LAST_OUTPUT, "") or "\n\n".join(value for value in variables.values() if value)
        if not content:
            raise PipelineStepError(step.id, step.type, "No content to save")
        path = resolve_placeholders(step.vault_path, variables)
        await self.vault.write(path, content, step.write_mode)
        self._log(run, f"Saved {len(content)} characters to vault: {path} ({step.write_mode})")

    async def start_automation(self, automation_id: str) -> Optional[Automation]:
        automation = await self.store.update_automation(automation_id, is_active=True)
        if automation is None:
            logger.error("Automation %s not found", automation_id)
            return None
        if automation.trigger.type == "schedule":
            await self.scheduler.schedule_job(
                automation_id, automation.trigger, functools.partial(self.run_now, automation_id)
            )
        await self._emit("automation_activated", {"automation_id": automation_id})
        return automation

    async def stop_automation(self, automation_id: str) -> Optional[Automation]:
        automation = await self.store.update_automation(automation_id, is_active=False)
        await self.scheduler.cancel_job(automation_id)
        if automation is None:
            logger.error("Automation %s not found", automation_id)
            return None
        await self._emit("automation_deactivated", {"automation_id": automation_id})
        return automation

    async def restore_active(self) -> int:
        restored = 0
        for automation in await self.store.list_automations(active_only=True):
            if automation.trigger.type != "schedule":
                continue
            await self.scheduler.schedule_job(
                automation.id, automation.trigger, functools.partial(self.run_now, automation.id)
            )
            restored += 1
        if restored:
            logger.info("Restored %s scheduled automations", restored)
        return restored

    async def status(self, automation_id: str) -> Dict[str, Any]:
        progress = await self.store.get_progress(automation_id)
        latest = await self.store.latest_run(automation_id)
        job = self.scheduler.get_job(automation_id)
        return {
            "automation_id": automation_id,
            "running": self.is_running(automation_id),
            "progress": (progress or AutomationProgress()).model_dump(),
            "next_run": job.next_run.isoformat() if job else None,
            "last_run": latest.model_dump() if latest else None,
        }
