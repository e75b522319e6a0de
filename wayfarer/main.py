"""Entry point for Wayfarer: dashboard server or a single terminal run."""
from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence, Set

from dotenv import load_dotenv

load_dotenv(Path(__file__).parent.parent / ".env")

from wayfarer.src.exploration.engine import ExplorationEngine
from wayfarer.src.exploration.events import EventType, ExplorationEvent
from wayfarer.src.exploration.input_broker import UserInputBroker
from wayfarer.src.exploration.liveness import SessionRegistry
from wayfarer.src.exploration.models import ExplorationConfig, UserInputResponse
from wayfarer.src.storage.session_store import JsonSessionStore
from wayfarer.src.utils.config import CONFIG

logger = logging.getLogger("wayfarer")


class TerminalSink:
    """Prints progress and answers input requests from stdin."""

    def __init__(self, broker: UserInputBroker):
        self.broker = broker
        self._prompts: Set[asyncio.Task] = set()

    async def publish(self, event: ExplorationEvent) -> None:
        data = event.data
        if event.type == EventType.INPUT_REQUESTED:
            task = asyncio.create_task(self._prompt(data.get("inputs") or []))
            self._prompts.add(task)
            task.add_done_callback(self._prompts.discard)
            return
        if event.type in {EventType.DECISION_MADE, EventType.TOOL_COMPLETED, EventType.PAGE_STARTED,
                          EventType.PAGE_COMPLETED, EventType.URL_DISCOVERED, EventType.SESSION_COMPLETED}:
            summary = {k: v for k, v in data.items() if k not in {"userName", "graph"}}
            print(f"[{event.type.value}] {json.dumps(summary, ensure_ascii=False)[:300]}")

    async def _prompt(self, inputs) -> None:
        values = {}
        for item in inputs:
            label = f"{item.get('prompt') or item.get('key')} (enter to skip): "
            reader = getpass.getpass if item.get("type") in {"password", "otp"} else input
            value = await asyncio.to_thread(reader, label)
            if value:
                values[item["key"]] = value
        if values:
            self.broker.submit(UserInputResponse(values=values))
        else:
            self.broker.submit(UserInputResponse(skipped=True))


async def _run_once(config: ExplorationConfig) -> bool:
    from wayfarer.src.browser.playwright_browser import PlaywrightBrowser
    from wayfarer.src.llm.openai_client import OpenAIExplorationClient

    registry = SessionRegistry()
    registry.activate(config.user_name)
    broker = UserInputBroker()
    storage = JsonSessionStore(CONFIG.storage.root_dir, config.user_name)
    llm = OpenAIExplorationClient()

    async with PlaywrightBrowser(planner=llm) as browser:
        engine = ExplorationEngine(
            config,
            browser,
            llm,
            storage,
            registry,
            sink=TerminalSink(broker),
            enricher=llm,
            input_broker=broker,
        )
        logger.info("🗂️ session %s (storage: %s)", engine.session_id, storage.session_dir(engine.session_id))
        return await engine.run_to_end()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="wayfarer", description="Autonomous web exploration agent.")
    parser.add_argument("--log-level", default="INFO")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the dashboard WebSocket server")
    serve.add_argument("--host", default=CONFIG.server.host)
    serve.add_argument("--port", type=int, default=CONFIG.server.port)

    run = subparsers.add_parser("run", help="Explore one site from the terminal")
    run.add_argument("url")
    run.add_argument("objective")
    run.add_argument("--explore", action="store_true", help="Exploration mode instead of a single task")
    run.add_argument("--max-pages", type=int, default=6)
    run.add_argument("--max-steps", type=int, default=25)
    run.add_argument("--context", help="Additional context for the agent")
    run.add_argument("--can-login", action="store_true")
    run.add_argument("--user", default="cli")
    run.add_argument("--resume", help="Session id to resume")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parsed = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(parsed.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if parsed.command == "serve":
        import uvicorn

        from wayfarer.src.server.app import app

        uvicorn.run(app, host=parsed.host, port=parsed.port)
        return 0

    config = ExplorationConfig(
        user_name=parsed.user,
        objective=parsed.objective,
        start_url=parsed.url,
        is_exploration=parsed.explore,
        max_pages_to_explore=parsed.max_pages,
        max_steps_per_page=parsed.max_steps,
        additional_context=parsed.context,
        can_login=parsed.can_login,
        resume_session_id=parsed.resume,
    )
    achieved = asyncio.run(_run_once(config))
    print("Objective achieved" if achieved else "Objective not achieved")
    return 0 if achieved or config.is_exploration else 1


if __name__ == "__main__":
    sys.exit(main())
