import pytest

from conduit.automation import AutomationEngine, resolve_placeholders
from conduit.schemas import Agent, Automation, ToolResult, Trigger
from conduit.vault import VaultWriter
from tests.fakes import FakeLoop, FakeScheduler, FakeToolExecutor


class ProgressRecorder:
    def __init__(self):
        self.seen = []

    async def emit(self, event_type, payload):
        if event_type == "automation_progress":
            self.seen.append((payload["current"], payload["total"]))
        return payload


def build_engine(db, settings, tmp_path, *, loop=None, executor=None, scheduler=None, bus=None):
    slept = []

    async def fake_sleep(seconds):
        slept.append(seconds)

    engine = AutomationEngine(
        db,
        lambda: loop or FakeLoop(),
        executor or FakeToolExecutor(),
        VaultWriter(tmp_path / "vault"),
        scheduler or FakeScheduler(),
        settings,
        bus=bus,
        sleep=fake_sleep,
    )
    engine.slept = slept  # type: ignore[attr-defined]
    return engine


async def save(db, **fields):
    automation = Automation.model_validate({"id": "auto-1", "name": "Digest", **fields})
    await db.upsert_automation(automation)
    return automation


def test_placeholders():
    variables = {"topic": "rust"}
    assert resolve_placeholders("about {{topic}}", variables) == "about rust"
    assert resolve_placeholders("keep {{unknown}}", variables) == "keep {{unknown}}"
    assert resolve_placeholders("summarize {{last_output}}", variables) == "summarize "


@pytest.mark.asyncio
async def test_manual_summarize_with_no_prior_output_fails_as_empty(db, settings, tmp_path):
    await db.upsert_agent(Agent(id="agent-1", name="Writer", system_prompt="write"))
    await save(db, pipeline=[{"type": "agent_action", "id": "s1", "agentId": "agent-1", "prompt": "{{last_output}}"}])
    loop = FakeLoop(["never"])
    engine = build_engine(db, settings, tmp_path, loop=loop)
    run = await engine.run_now("auto-1")
    assert run.status == "failed"
    assert "empty" in run.error
    assert loop.calls == []


@pytest.mark.asyncio
async def test_manual_summarize_scenario_passes_prompt_through(db, settings, tmp_path):
    await db.upsert_agent(Agent(id="agent-1", name="Writer", system_prompt="You summarize.", preferred_model_id="claude-x"))
    await save(db, pipeline=[{"type": "agent_action", "id": "s1", "agentId": "agent-1", "prompt": "summarize {{last_output}}"}])
    loop = FakeLoop(["A summary."])
    engine = build_engine(db, settings, tmp_path, loop=loop)
    run = await engine.run_now("auto-1")
    assert run.status == "success"
    sent = loop.calls[0]["messages"]
    assert [m.role for m in sent] == ["system", "user"]
    assert sent[0].content == "You summarize."
    assert sent[1].content == "summarize"
    assert loop.calls[0]["model_id"] == "claude-x"
    assert run.variables["last_output"] == "A summary."


@pytest.mark.asyncio
async def test_failing_third_step_of_five_stops_the_run(db, settings, tmp_path):
    bus = ProgressRecorder()
    executor = FakeToolExecutor(
        {
            "notion": "page created",
            "github": ToolResult(tool="github", result="rate limited", is_error=True),
        }
    )
    pipeline = [
        {"type": "integration_action", "id": "one", "integrationId": "notion", "integrationAction": "create", "outputVariable": "page"},
        {"type": "wait", "id": "two", "waitDuration": 250},
        {"type": "integration_action", "id": "three", "integrationId": "github", "integrationAction": "list_issues"},
        {"type": "integration_action", "id": "four", "integrationId": "notion", "integrationAction": "create"},
        {"type": "save_to_vault", "id": "five", "vaultPath": "out.md"},
    ]
    await save(db, pipeline=pipeline)
    engine = build_engine(db, settings, tmp_path, executor=executor, bus=bus)
    run = await engine.run_now("auto-1")
    assert run.status == "failed"
    assert "three" in run.error
    assert "rate limited" in run.error
    assert [c["name"] for c in executor.calls] == ["notion", "github"]
    assert engine.slept == [0.25]
    assert bus.seen == [(0, 5), (1, 5), (2, 5), (3, 5)]
    assert (await db.get_progress("auto-1")).current == 3
    assert run.variables == {"page": "page created", "last_output": "page created"}
    stored = await db.get_run(run.run_id)
    assert stored.status == "failed"
    assert any("[ERROR]" in line for line in stored.logs)
    assert (await db.get_automation("auto-1")).last_run_at is None
    assert not (tmp_path / "vault" / "out.md").exists()
    assert not engine.is_running("auto-1")


@pytest.mark.asyncio
async def test_integration_args_are_resolved_and_coerced(db, settings, tmp_path):
    executor = FakeToolExecutor({"github": "3 issues"})
    pipeline = [
        {
            "type": "integration_action",
            "integrationId": "github",
            "integrationAction": "list_issues",
            "integrationArgs": {"repo": "{{repo}}", "limit": "10", "count": "ten", "labels": ["bug"]},
        }
    ]
    await save(db, pipeline=pipeline)
    engine = build_engine(db, settings, tmp_path, executor=executor)
    run = await engine.run_now("auto-1")
    assert run.status == "success"
    assert executor.calls[0]["args"] == {
        "repo": "{{repo}}",
        "limit": 10,
        "count": "ten",
        "labels": ["bug"],
        "operation": "list_issues",
    }


@pytest.mark.asyncio
async def test_save_to_vault_falls_back_to_last_output(db, settings, tmp_path):
    executor = FakeToolExecutor({"notion": "latest text"})
    pipeline = [
        {"type": "integration_action", "integrationId": "notion", "integrationAction": "read"},
        {"type": "save_to_vault", "vaultPath": "/notes/daily.md", "writeMode": "append"},
    ]
    await save(db, pipeline=pipeline)
    (tmp_path / "vault" / "notes").mkdir(parents=True)
    (tmp_path / "vault" / "notes" / "daily.md").write_text("previous")
    engine = build_engine(db, settings, tmp_path, executor=executor)
    run = await engine.run_now("auto-1")
    assert run.status == "success"
    assert (tmp_path / "vault" / "notes" / "daily.md").read_text() == "previous\nlatest text"


@pytest.mark.asyncio
async def test_save_to_vault_prefers_source_variable(db, settings, tmp_path):
    executor = FakeToolExecutor({"a": "first", "b": "second"})
    pipeline = [
        {"type": "integration_action", "integrationId": "a", "integrationAction": "x", "outputVariable": "first"},
        {"type": "integration_action", "integrationId": "b", "integrationAction": "x"},
        {"type": "save_to_vault", "vaultPath": "out.md", "sourceVariable": "first"},
    ]
    await save(db, pipeline=pipeline)
    engine = build_engine(db, settings, tmp_path, executor=executor)
    run = await engine.run_now("auto-1")
    assert run.status == "success"
    assert (tmp_path / "vault" / "out.md").read_text() == "first"


@pytest.mark.asyncio
async def test_save_to_vault_with_nothing_to_save_fails(db, settings, tmp_path):
    await save(db, pipeline=[{"type": "save_to_vault", "vaultPath": "out.md"}])
    engine = build_engine(db, settings, tmp_path)
    run = await engine.run_now("auto-1")
    assert run.status == "failed"
    assert run.error == "No content to save"


@pytest.mark.asyncio
async def test_missing_required_fields_name_the_step(db, settings, tmp_path):
    await save(db, pipeline=[{"type": "agent_action", "id": "draft"}])
    engine = build_engine(db, settings, tmp_path)
    run = await engine.run_now("auto-1")
    assert run.status == "failed"
    assert "draft" in run.error
    assert "agent_id and prompt" in run.error


@pytest.mark.asyncio
async def test_condition_step_is_skipped_and_success_updates_last_run(db, settings, tmp_path):
    await save(db, pipeline=[{"type": "condition", "condition": {"field": "x"}}])
    engine = build_engine(db, settings, tmp_path)
    run = await engine.run_now("auto-1")
    assert run.status == "success"
    assert any("[SKIP] Conditional steps not yet implemented" in line for line in run.logs)
    assert (await db.get_automation("auto-1")).last_run_at == run.finished_at


@pytest.mark.asyncio
async def test_unknown_automation_returns_none(db, settings, tmp_path):
    engine = build_engine(db, settings, tmp_path)
    assert await engine.run_now("missing") is None


@pytest.mark.asyncio
async def test_concurrent_run_is_rejected(db, settings, tmp_path):
    await save(db, pipeline=[{"type": "wait", "waitDuration": 10}])
    engine = build_engine(db, settings, tmp_path)
    engine._running.add("auto-1")
    assert await engine.run_now("auto-1") is None
    engine._running.discard("auto-1")
    run = await engine.run_now("auto-1")
    assert run.status == "success"


@pytest.mark.asyncio
async def test_start_and_stop_register_with_scheduler(db, settings, tmp_path):
    scheduler = FakeScheduler()
    trigger = Trigger.model_validate({"type": "schedule", "scheduleConfig": {"frequency": "daily", "time": "09:00"}})
    await save(db, trigger=trigger.model_dump(by_alias=True), pipeline=[])
    engine = build_engine(db, settings, tmp_path, scheduler=scheduler)

    started = await engine.start_automation("auto-1")
    assert started.is_active is True
    assert "auto-1" in scheduler.jobs
    _, callback = scheduler.jobs["auto-1"]
    run = await callback()
    assert run.status == "success"

    stopped = await engine.stop_automation("auto-1")
    assert stopped.is_active is False
    assert scheduler.cancelled == ["auto-1"]
    assert (await db.get_automation("auto-1")).is_active is False


@pytest.mark.asyncio
async def test_manual_trigger_is_not_scheduled(db, settings, tmp_path):
    scheduler = FakeScheduler()
    await save(db, pipeline=[])
    engine = build_engine(db, settings, tmp_path, scheduler=scheduler)
    await engine.start_automation("auto-1")
    assert scheduler.jobs == {}


@pytest.mark.asyncio
async def test_restore_active_reschedules_only_active_schedules(db, settings, tmp_path):
    scheduler = FakeScheduler()
    schedule = {"type": "schedule", "scheduleConfig": {"frequency": "hourly"}}
    await db.upsert_automation(Automation.model_validate({"id": "on", "trigger": schedule, "isActive": True}))
    await db.upsert_automation(Automation.model_validate({"id": "off", "trigger": schedule, "isActive": False}))
    await db.upsert_automation(Automation.model_validate({"id": "manual", "isActive": True}))
    engine = build_engine(db, settings, tmp_path, scheduler=scheduler)
    assert await engine.restore_active() == 1
    assert list(scheduler.jobs) == ["on"]


@pytest.mark.asyncio
async def test_missing_source_variable_does_not_fall_back(db, settings, tmp_path):
    executor = FakeToolExecutor({"a": "unrelated text"})
    pipeline = [
        {"type": "integration_action", "integrationId": "a", "integrationAction": "x"},
        {"type": "save_to_vault", "vaultPath": "out.md", "sourceVariable": "summary"},
    ]
    await save(db, pipeline=pipeline)
    engine = build_engine(db, settings, tmp_path, executor=executor)
    run = await engine.run_now("auto-1")
    assert run.status == "failed"
    assert run.error == "No content to save"
    assert not (tmp_path / "vault" / "out.md").exists()


@pytest.mark.asyncio
async def test_save_to_vault_joins_variables_when_last_output_is_empty(db, settings, tmp_path):
    executor = FakeToolExecutor({"a": "x", "b": ""})
    pipeline = [
        {"type": "integration_action", "integrationId": "a", "integrationAction": "x", "outputVariable": "a"},
        {"type": "integration_action", "integrationId": "b", "integrationAction": "x"},
        {"type": "save_to_vault", "vaultPath": "out.md"},
    ]
    await save(db, pipeline=pipeline)
    engine = build_engine(db, settings, tmp_path, executor=executor)
    run = await engine.run_now("auto-1")
    assert run.status == "success"
    assert run.variables["last_output"] == ""
    assert (tmp_path / "vault" / "out.md").read_text() == "x"
