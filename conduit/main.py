import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .automation import AutomationEngine
from .config import AppSettings, load_settings
from .db import Database
from .errors import ConduitError, ModelNotFoundError, ProviderConfigurationError
from .events import EventBus
from .gateway import ProviderGateway
from .registry import ModelRegistry
from .scheduler import Scheduler
from .schemas import Agent, Automation, ChatRequest
from .tool_loop import ToolCallLoop
from .tools import ToolRegistry
from .vault import VaultWriter


logger = logging.getLogger("uvicorn.error")


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_registry(request: Request) -> ModelRegistry:
    return request.app.state.registry


def get_gateway(request: Request) -> ProviderGateway:
    return request.app.state.gateway


def get_tools(request: Request) -> ToolRegistry:
    return request.app.state.tools


def get_engine(request: Request) -> AutomationEngine:
    return request.app.state.engine


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def _error_status(exc: ConduitError) -> int:
    if isinstance(exc, ModelNotFoundError):
        return 404
    if isinstance(exc, ProviderConfigurationError):
        return 400
    return 502


router = APIRouter()


@router.get("/api/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.get("/api/models")
async def list_models(type: Optional[str] = None, registry: ModelRegistry = Depends(get_registry)):
    return {"models": [m.model_dump(by_alias=True) for m in registry.all_models(type)]}


@router.post("/api/models/sync")
async def sync_models(
    settings: AppSettings = Depends(get_settings),
    registry: ModelRegistry = Depends(get_registry),
):
    count = await registry.sync_ollama_models(settings.ollama_url)
    return {"ok": True, "local_models": count}


@router.post("/api/models/test")
async def test_model_connection(
    payload: Dict[str, Any] = Body(default={}),
    gateway: ProviderGateway = Depends(get_gateway),
):
    ok, message = await gateway.test_connection(payload.get("model_id"))
    return {"ok": ok, "message": message}


@router.post("/api/chat")
async def chat(
    payload: ChatRequest,
    request: Request,
    settings: AppSettings = Depends(get_settings),
    gateway: ProviderGateway = Depends(get_gateway),
    tools: ToolRegistry = Depends(get_tools),
):
    if not payload.messages:
        raise HTTPException(status_code=400, detail="messages must not be empty")
    loop = ToolCallLoop(gateway, tools, settings)
    try:
        gateway.resolve_model(payload.model_id)
    except ModelNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))

    if not payload.stream:
        try:
            content = await loop.run_send(payload.messages, payload.model_id, use_tools=payload.use_tools)
        except ConduitError as exc:
            raise HTTPException(status_code=_error_status(exc), detail=str(exc))
        return {"content": content}

    queue: asyncio.Queue = asyncio.Queue()
    cancel_event = asyncio.Event()

    async def runner() -> None:
        try:
            content = await loop.run_stream(
                payload.messages,
                lambda chunk: queue.put_nowait({"type": "chunk", "content": chunk}),
                payload.model_id,
                cancel_event,
                use_tools=payload.use_tools,
            )
            await queue.put({"type": "done", "content": content})
        except ConduitError as exc:
            logger.warning("Chat stream failed: %s", exc)
            await queue.put({"type": "error", "error": str(exc)})
        except Exception as exc:
            logger.exception("Chat stream crashed")
            await queue.put({"type": "error", "error": str(exc)})

    async def event_generator():
        task = asyncio.create_task(runner())
        try:
            while True:
                event = await queue.get()
                yield sse_format(event)
                if event["type"] in ("done", "error"):
                    break
        except asyncio.CancelledError:
            pass
        finally:
            cancel_event.set()
            if not task.done():
                try:
                    await asyncio.wait_for(task, timeout=5)
                except asyncio.TimeoutError:
                    logger.warning("Chat stream did not stop within 5s of cancellation")

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/api/agents")
async def list_agents(db: Database = Depends(get_db)):
    agents = await db.list_agents()
    return {"agents": [a.model_dump(by_alias=True) for a in agents]}


@router.post("/api/agents")
async def upsert_agent(agent: Agent, db: Database = Depends(get_db)):
    saved = await db.upsert_agent(agent)
    return saved.model_dump(by_alias=True)


@router.get("/api/automations")
async def list_automations(db: Database = Depends(get_db), engine: AutomationEngine = Depends(get_engine)):
    automations = await db.list_automations()
    return {
        "automations": [
            {**a.model_dump(by_alias=True), "running": engine.is_running(a.id)} for a in automations
        ]
    }


@router.post("/api/automations")
async def upsert_automation(
    automation: Automation,
    db: Database = Depends(get_db),
    engine: AutomationEngine = Depends(get_engine),
):
    saved = await db.upsert_automation(automation)
    # Re-register so trigger edits take effect for active schedules.
    if saved.is_active:
        await engine.start_automation(saved.id)
    return saved.model_dump(by_alias=True)


@router.get("/api/automations/{automation_id}")
async def get_automation(automation_id: str, db: Database = Depends(get_db)):
    automation = await db.get_automation(automation_id)
    if automation is None:
        raise HTTPException(status_code=404, detail="Automation not found")
    return automation.model_dump(by_alias=True)


@router.delete("/api/automations/{automation_id}")
async def delete_automation(
    automation_id: str,
    db: Database = Depends(get_db),
    engine: AutomationEngine = Depends(get_engine),
):
    await engine.stop_automation(automation_id)
    if not await db.delete_automation(automation_id):
        raise HTTPException(status_code=404, detail="Automation not found")
    return {"ok": True}


@router.post("/api/automations/{automation_id}/run")
async def run_automation(
    automation_id: str,
    wait: bool = False,
    db: Database = Depends(get_db),
    engine: AutomationEngine = Depends(get_engine),
):
    if await db.get_automation(automation_id) is None:
        raise HTTPException(status_code=404, detail="Automation not found")
    if engine.is_running(automation_id):
        raise HTTPException(status_code=409, detail="Automation is already running")
    if wait:
        run = await engine.run_now(automation_id)
        if run is None:
            raise HTTPException(status_code=409, detail="Automation is already running")
        return {"ok": True, "status": run.status, "run": run.model_dump()}
    engine.run_in_background(automation_id)
    return {"ok": True, "status": "started"}


@router.post("/api/automations/{automation_id}/start")
async def start_automation(automation_id: str, engine: AutomationEngine = Depends(get_engine)):
    automation = await engine.start_automation(automation_id)
    if automation is None:
        raise HTTPException(status_code=404, detail="Automation not found")
    return {"ok": True, "automation": automation.model_dump(by_alias=True)}


@router.post("/api/automations/{automation_id}/stop")
async def stop_automation(automation_id: str, engine: AutomationEngine = Depends(get_engine)):
    automation = await engine.stop_automation(automation_id)
    if automation is None:
        raise HTTPException(status_code=404, detail="Automation not found")
    return {"ok": True, "automation": automation.model_dump(by_alias=True)}


@router.get("/api/automations/{automation_id}/status")
async def automation_status(
    automation_id: str,
    db: Database = Depends(get_db),
    engine: AutomationEngine = Depends(get_engine),
):
    if await db.get_automation(automation_id) is None:
        raise HTTPException(status_code=404, detail="Automation not found")
    return await engine.status(automation_id)


@router.get("/api/automations/{automation_id}/runs")
async def list_automation_runs(automation_id: str, limit: int = 20, db: Database = Depends(get_db)):
    runs = await db.list_runs(automation_id, limit=limit)
    return {"runs": [r.model_dump() for r in runs]}


@router.get("/events")
async def stream_events(bus: EventBus = Depends(get_event_bus)):
    async def event_generator():
        queue = await bus.subscribe()
        try:
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    registry: Optional[ModelRegistry] = None,
    tools: Optional[ToolRegistry] = None,
    gateway: Optional[ProviderGateway] = None,
    scheduler: Optional[Scheduler] = None,
    vault: Optional[VaultWriter] = None,
    sync_local_models: bool = True,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        if sync_local_models:
            await app.state.registry.sync_ollama_models(app.state.settings.ollama_url)
        app.state.scheduler.start()
        await app.state.engine.restore_active()
        try:
            yield
        finally:
            await app.state.scheduler.shutdown()
            await app.state.engine.shutdown()
            await app.state.gateway.close()

    app = FastAPI(title="Conduit", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.registry = registry or ModelRegistry()
    app.state.tools = tools or ToolRegistry(settings.tools_enabled)
    app.state.gateway = gateway or ProviderGateway(settings, app.state.registry, app.state.tools)
    app.state.scheduler = scheduler or Scheduler()
    app.state.vault = vault or VaultWriter(settings.vault_path)
    app.state.bus = EventBus()
    app.state.engine = AutomationEngine(
        app.state.db,
        lambda: ToolCallLoop(app.state.gateway, app.state.tools, app.state.settings),
        app.state.tools,
        app.state.vault,
        app.state.scheduler,
        settings,
        bus=app.state.bus,
    )

    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("CONDUIT_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "conduit.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
