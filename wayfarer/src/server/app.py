"""
Dashboard transport: FastAPI app with a WebSocket channel.

Inbound messages are ``{"type": ..., "data": {...}}`` with types
``execute_exploration``, ``stop_exploration``, ``user_input_response`` and
``chat_message``. Engine events go out as
``{"type": "exploration_update", "data": {type, timestamp, data}}``, and the
transport acknowledges with ``execution_started``, ``exploration_completed``,
``exploration_stopped`` and ``exploration_error``.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from wayfarer.src.exploration.collaborators import BrowserDriver, ChatDecider, DecisionMaker, GraphEnricher
from wayfarer.src.exploration.engine import ExplorationEngine
from wayfarer.src.exploration.events import ExplorationEvent
from wayfarer.src.exploration.liveness import SessionRegistry
from wayfarer.src.exploration.models import ExplorationConfig, UserInputResponse
from wayfarer.src.storage.session_store import JsonSessionStore
from wayfarer.src.utils.config import CONFIG

logger = logging.getLogger(__name__)


@dataclass
class Collaborators:
    browser: BrowserDriver
    decision_maker: DecisionMaker
    chat_decider: Optional[ChatDecider] = None
    enricher: Optional[GraphEnricher] = None
    close: Optional[Callable[[], Awaitable[None]]] = None


CollaboratorFactory = Callable[[ExplorationConfig], Awaitable[Collaborators]]


async def default_collaborators(config: ExplorationConfig) -> Collaborators:
    """Playwright browser + OpenAI decision/chat/graph client."""
    from wayfarer.src.browser.playwright_browser import PlaywrightBrowser
    from wayfarer.src.llm.openai_client import OpenAIExplorationClient

    llm = OpenAIExplorationClient()
    browser = await PlaywrightBrowser(planner=llm).start()
    return Collaborators(
        browser=browser,
        decision_maker=llm,
        chat_decider=llm,
        enricher=llm,
        close=browser.close,
    )


class ConnectionSink:
    """Per-connection outbound queue drained by a single writer task."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.queue: asyncio.Queue = asyncio.Queue()

    async def publish(self, event: ExplorationEvent) -> None:
        await self.queue.put({"type": "exploration_update", "data": event.to_message()})

    async def send(self, message_type: str, data: Dict[str, Any]) -> None:
        await self.queue.put({"type": message_type, "data": data})

    async def writer(self) -> None:
        while True:
            message = await self.queue.get()
            await self.websocket.send_json(message)


@dataclass
class ActiveExploration:
    engine: ExplorationEngine
    collaborators: Collaborators
    sink: ConnectionSink
    task: Optional[asyncio.Task] = None
    chat_tasks: List[asyncio.Task] = field(default_factory=list)


class ExplorationHub:
    """Tracks one running exploration per user."""

    def __init__(
        self,
        collaborator_factory: CollaboratorFactory = default_collaborators,
        storage_root: Optional[str] = None,
    ):
        self.collaborator_factory = collaborator_factory
        self.storage_root = storage_root or CONFIG.storage.root_dir
        self.registry = SessionRegistry()
        self.active: Dict[str, ActiveExploration] = {}

    async def execute(self, data: Dict[str, Any], sink: ConnectionSink) -> Optional[ActiveExploration]:
        try:
            config = ExplorationConfig.model_validate(data)
        except ValidationError as exc:
            await sink.send("exploration_error", {"userName": data.get("userName"), "error": str(exc)})
            return None

        user_name = config.user_name
        if user_name in self.active:
            await sink.send("exploration_error", {"userName": user_name, "error": "exploration already running"})
            return None

        storage = JsonSessionStore(self.storage_root, user_name)
        if not config.resume_session_id:
            storage.cleanup_user()

        try:
            collaborators = await self.collaborator_factory(config)
        except Exception as exc:
            logger.error("❌ could not start collaborators for %s: %s", user_name, exc)
            await sink.send("exploration_error", {"userName": user_name, "error": str(exc)})
            return None

        self.registry.activate(user_name)
        engine = ExplorationEngine(
            config,
            collaborators.browser,
            collaborators.decision_maker,
            storage,
            self.registry,
            sink=sink,
            chat_decider=collaborators.chat_decider,
            enricher=collaborators.enricher,
        )
        active = ActiveExploration(engine=engine, collaborators=collaborators, sink=sink)
        self.active[user_name] = active
        await sink.send(
            "execution_started",
            {"userName": user_name, "sessionId": engine.session_id, "startUrl": config.start_url},
        )
        active.task = asyncio.create_task(self._drive(user_name, active), name=f"drive:{user_name}")
        return active

    async def _drive(self, user_name: str, active: ActiveExploration) -> None:
        engine = active.engine
        try:
            success = await engine.run_to_end()
            if self.registry.is_active(user_name):
                await active.sink.send(
                    "exploration_completed",
                    {
                        "userName": user_name,
                        "sessionId": engine.session_id,
                        "success": success,
                        "totalPagesDiscovered": engine.session.metadata.total_pages_discovered,
                        "totalActionsExecuted": engine.session.metadata.total_actions_executed,
                    },
                )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("❌ exploration for %s failed: %s", user_name, exc)
            await active.sink.send("exploration_error", {"userName": user_name, "error": str(exc)})
        finally:
            self.registry.deactivate(user_name)
            if self.active.get(user_name) is active:
                del self.active[user_name]
            if active.collaborators.close is not None:
                try:
                    await active.collaborators.close()
                except Exception as exc:
                    logger.warning("⚠️ closing collaborators for %s failed: %s", user_name, exc)

    async def stop(self, user_name: str, sink: Optional[ConnectionSink] = None) -> bool:
        active = self.active.get(user_name)
        self.registry.deactivate(user_name)
        if active is None:
            if sink is not None:
                await sink.send("exploration_error", {"userName": user_name, "error": "no running exploration"})
            return False
        active.engine.stop()
        await active.sink.send("exploration_stopped", {"userName": user_name, "sessionId": active.engine.session_id})
        logger.info("🛑 exploration stopped for %s", user_name)
        return True

    async def submit_input(self, data: Dict[str, Any], sink: ConnectionSink) -> bool:
        user_name = data.get("userName") or data.get("user_name")
        active = self.active.get(user_name)
        if active is None:
            await sink.send("exploration_error", {"userName": user_name, "error": "no running exploration"})
            return False
        try:
            response = UserInputResponse.model_validate(data)
        except ValidationError as exc:
            await sink.send("exploration_error", {"userName": user_name, "error": str(exc)})
            return False
        return active.engine.input_broker.submit(response)

    async def chat(self, data: Dict[str, Any], sink: ConnectionSink) -> Optional[asyncio.Task]:
        user_name = data.get("userName") or data.get("user_name")
        message = str(data.get("message") or "").strip()
        active = self.active.get(user_name)
        if active is None or active.engine.chat is None or not message:
            await sink.send("exploration_error", {"userName": user_name, "error": "chat is not available"})
            return None
        task = asyncio.create_task(active.engine.chat.handle_message(message), name=f"chat:{user_name}")
        active.chat_tasks = [t for t in active.chat_tasks if not t.done()] + [task]
        return task

    async def disconnect(self, sink: ConnectionSink) -> None:
        for user_name, active in list(self.active.items()):
            if active.sink is sink:
                self.registry.deactivate(user_name)
                active.engine.stop()


def create_app(hub: Optional[ExplorationHub] = None) -> FastAPI:
    hub = hub or ExplorationHub()
    app = FastAPI(title="Wayfarer", description="Autonomous web exploration with live dashboard updates")
    app.state.hub = hub

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CONFIG.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "activeExplorations": sorted(hub.active)}

    @app.get("/sessions/{user_name}")
    async def list_sessions(user_name: str) -> Dict[str, Any]:
        return {"userName": user_name, "sessions": JsonSessionStore(hub.storage_root, user_name).list_sessions()}

    @app.websocket("/ws")
    async def exploration_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        sink = ConnectionSink(websocket)
        writer = asyncio.create_task(sink.writer())
        try:
            while True:
                message = await websocket.receive_json()
                if not isinstance(message, dict):
                    message = {}
                message_type = message.get("type")
                data = message.get("data") or {}
                if message_type == "execute_exploration":
                    await hub.execute(data, sink)
                elif message_type == "stop_exploration":
                    await hub.stop(data.get("userName") or data.get("user_name") or "", sink)
                elif message_type == "user_input_response":
                    await hub.submit_input(data, sink)
                elif message_type == "chat_message":
                    await hub.chat(data, sink)
                else:
                    await sink.send("exploration_error", {"error": f"unknown message type: {message_type}"})
        except WebSocketDisconnect:
            logger.info("🔌 dashboard disconnected")
        finally:
            await hub.disconnect(sink)
            writer.cancel()

    return app


app = create_app()
