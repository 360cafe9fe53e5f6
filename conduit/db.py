import json
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

import aiosqlite

from .schemas import Agent, Automation, AutomationProgress, AutomationRun


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Database:
    """Agents, automations, run history and progress in one SQLite file."""

    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS agents(
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    system_prompt TEXT,
                    preferred_model_id TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS automations(
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    trigger_json TEXT,
                    pipeline_json TEXT,
                    is_active INTEGER DEFAULT 0,
                    last_run_at TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS automation_runs(
                    run_id TEXT PRIMARY KEY,
                    automation_id TEXT,
                    status TEXT,
                    started_at TEXT,
                    finished_at TEXT,
                    error TEXT,
                    logs_json TEXT,
                    variables_json TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_automation_runs_automation
                    ON automation_runs(automation_id, started_at);
                CREATE TABLE IF NOT EXISTS automation_progress(
                    automation_id TEXT PRIMARY KEY,
                    current INTEGER,
                    total INTEGER,
                    updated_at TEXT
                );
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    # Agents

    async def upsert_agent(self, agent: Agent) -> Agent:
        await self.execute(
            "INSERT INTO agents(id, name, system_prompt, preferred_model_id, updated_at) VALUES (?,?,?,?,?) "
            "ON CONFLICT(id) DO UPDATE SET name=excluded.name, system_prompt=excluded.system_prompt, "
            "preferred_model_id=excluded.preferred_model_id, updated_at=excluded.updated_at",
            (agent.id, agent.name, agent.system_prompt, agent.preferred_model_id, utc_now()),
        )
        return agent

    @staticmethod
    def _agent_from_row(row: aiosqlite.Row) -> Agent:
        return Agent(
            id=row["id"],
            name=row["name"] or "",
            system_prompt=row["system_prompt"] or "",
            preferred_model_id=row["preferred_model_id"],
        )

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        row = await self.fetchone(
            "SELECT id, name, system_prompt, preferred_model_id FROM agents WHERE id=?", (agent_id,)
        )
        return self._agent_from_row(row) if row else None

    async def list_agents(self) -> List[Agent]:
        rows = await self.fetchall("SELECT id, name, system_prompt, preferred_model_id FROM agents ORDER BY name ASC")
        return [self._agent_from_row(row) for row in rows]

    # Automations

    async def upsert_automation(self, automation: Automation) -> Automation:
        now = utc_now()
        trigger_json = automation.trigger.model_dump_json(by_alias=True)
        pipeline_json = json.dumps([step.model_dump(by_alias=True) for step in automation.pipeline])
        await self.execute(
            "INSERT INTO automations(id, name, trigger_json, pipeline_json, is_active, last_run_at, created_at, updated_at) "
            "VALUES (?,?,?,?,?,?,?,?) "
            "ON CONFLICT(id) DO UPDATE SET name=excluded.name, trigger_json=excluded.trigger_json, "
            "pipeline_json=excluded.pipeline_json, is_active=excluded.is_active, "
            "last_run_at=excluded.last_run_at, updated_at=excluded.updated_at",
            (
                automation.id,
                automation.name,
                trigger_json,
                pipeline_json,
                1 if automation.is_active else 0,
                automation.last_run_at,
                now,
                now,
            ),
        )
        return automation

    @staticmethod
    def _automation_from_row(row: aiosqlite.Row) -> Automation:
        return Automation.model_validate(
            {
                "id": row["id"],
                "name": row["name"] or "",
                "trigger": json.loads(row["trigger_json"] or "{}"),
                "pipeline": json.loads(row["pipeline_json"] or "[]"),
                "is_active": bool(row["is_active"]),
                "last_run_at": row["last_run_at"],
            }
        )

    async def get_automation(self, automation_id: str) -> Optional[Automation]:
        row = await self.fetchone(
            "SELECT id, name, trigger_json, pipeline_json, is_active, last_run_at FROM automations WHERE id=?",
            (automation_id,),
        )
        return self._automation_from_row(row) if row else None

    async def list_automations(self, active_only: bool = False) -> List[Automation]:
        where = "WHERE is_active=1" if active_only else ""
        rows = await self.fetchall(
            "SELECT id, name, trigger_json, pipeline_json, is_active, last_run_at "
            f"FROM automations {where} ORDER BY created_at ASC"
        )
        return [self._automation_from_row(row) for row in rows]

    async def update_automation(
        self,
        automation_id: str,
        is_active: Optional[bool] = None,
        last_run_at: Optional[str] = None,
    ) -> Optional[Automation]:
        current = await self.get_automation(automation_id)
        if current is None:
            return None
        next_active = current.is_active if is_active is None else is_active
        next_last_run = last_run_at if last_run_at is not None else current.last_run_at
        await self.execute(
            "UPDATE automations SET is_active=?, last_run_at=?, updated_at=? WHERE id=?",
            (1 if next_active else 0, next_last_run, utc_now(), automation_id),
        )
        return current.model_copy(update={"is_active": next_active, "last_run_at": next_last_run})

    async def delete_automation(self, automation_id: str) -> bool:
        existing = await self.fetchone("SELECT id FROM automations WHERE id=?", (automation_id,))
        if not existing:
            return False
        async with aiosqlite.connect(self.path) as db:
            await db.execute("DELETE FROM automations WHERE id=?", (automation_id,))
            await db.execute("DELETE FROM automation_progress WHERE automation_id=?", (automation_id,))
            await db.execute("DELETE FROM automation_runs WHERE automation_id=?", (automation_id,))
            await db.commit()
        return True

    # Progress

    async def set_progress(self, automation_id: str, progress: AutomationProgress) -> None:
        await self.execute(
            "INSERT INTO automation_progress(automation_id, current, total, updated_at) VALUES (?,?,?,?) "
            "ON CONFLICT(automation_id) DO UPDATE SET current=excluded.current, total=excluded.total, "
            "updated_at=excluded.updated_at",
            (automation_id, progress.current, progress.total, utc_now()),
        )

    async def get_progress(self, automation_id: str) -> Optional[AutomationProgress]:
        row = await self.fetchone(
            "SELECT current, total FROM automation_progress WHERE automation_id=?", (automation_id,)
        )
        if not row:
            return None
        return AutomationProgress(current=row["current"] or 0, total=row["total"] or 0)

    # Runs

    async def create_run(self, run: AutomationRun) -> AutomationRun:
        await self.execute(
            "INSERT INTO automation_runs(run_id, automation_id, status, started_at, finished_at, error, logs_json, variables_json) "
            "VALUES (?,?,?,?,?,?,?,?)",
            (
                run.run_id,
                run.automation_id,
                run.status,
                run.started_at,
                run.finished_at,
                run.error,
                json.dumps(run.logs),
                json.dumps(run.variables),
            ),
        )
        return run

    async def finish_run(self, run: AutomationRun) -> AutomationRun:
        await self.execute(
            "UPDATE automation_runs SET status=?, finished_at=?, error=?, logs_json=?, variables_json=? WHERE run_id=?",
            (
                run.status,
                run.finished_at,
                run.error,
                json.dumps(run.logs),
                json.dumps(run.variables),
                run.run_id,
            ),
        )
        return run

    @staticmethod
    def _run_from_row(row: aiosqlite.Row) -> AutomationRun:
        return AutomationRun(
            run_id=row["run_id"],
            automation_id=row["automation_id"],
            status=row["status"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            error=row["error"],
            logs=json.loads(row["logs_json"] or "[]"),
            variables=json.loads(row["variables_json"] or "{}"),
        )

    async def get_run(self, run_id: str) -> Optional[AutomationRun]:
        row = await self.fetchone(
            "SELECT run_id, automation_id, status, started_at, finished_at, error, logs_json, variables_json "
            "FROM automation_runs WHERE run_id=?",
            (run_id,),
        )
        return self._run_from_row(row) if row else None

    async def list_runs(self, automation_id: str, limit: int = 20) -> List[AutomationRun]:
        rows = await self.fetchall(
            "SELECT run_id, automation_id, status, started_at, finished_at, error, logs_json, variables_json "
            "FROM automation_runs WHERE automation_id=? ORDER BY started_at DESC LIMIT ?",
            (automation_id, limit),
        )
        return [self._run_from_row(row) for row in rows]

    async def latest_run(self, automation_id: str) -> Optional[AutomationRun]:
        runs = await self.list_runs(automation_id, limit=1)
        return runs[0] if runs else None
