"""Prospector entry point.

Initializes all components and starts the server:
  Settings -> Database -> EventBus -> Stores/Queues -> TaskScheduler
  -> ToolDispatcher -> RunDriver -> Consumers -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import uvicorn
from starlette.applications import Starlette

from prospector.api.assistants import AssistantsClient
from prospector.api.runner import RunDriver
from prospector.api.tools import EMAIL_QUEUE, RESEARCH_QUEUE, ToolDispatcher, register_lead_tools
from prospector.api.web_tools import WebTools, register_web_tools
from prospector.config import Settings
from prospector.errors import AssistantApiError
from prospector.events import EventBus, failure_notifier
from prospector.handlers.email import EmailDispatcher
from prospector.handlers.queue_worker import QueueRegistry
from prospector.handlers.research import ResearchWorker
from prospector.handlers.schedule_parser import ScheduleInterpreter, ScheduleResolver
from prospector.handlers.task_actions import SCHEDULER_USER_ID, create_task_handlers
from prospector.handlers.task_scheduler import TaskScheduler
from prospector.storage.database import Database
from prospector.store import JobStore, LeadStore, NotificationStore, TaskStore, ThreadStore

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.  If any step
    fails, whatever was already started is shut down before re-raising.
    """
    components: dict = {}
    try:
        await _start_components(settings, components)
    except Exception:
        logger.error("Startup failed; releasing %d started component(s)", len(components))
        await shutdown_components(components)
        raise
    return components


async def _start_components(settings: Settings, components: dict) -> None:
    database = Database(settings)
    await database.connect()
    components["database"] = database
    if settings.auto_create_schema:
        await database.create_schema()

    job_store = JobStore(database)
    task_store = TaskStore(database)
    lead_store = LeadStore(database)
    notification_store = NotificationStore(database)
    thread_store = ThreadStore(database)

    bus = None
    if settings.event_bus_enabled:
        bus = EventBus()
        bus.on_failures(failure_notifier(notification_store))
        await bus.start()
    components["bus"] = bus

    queues = QueueRegistry(job_store, poll_interval=settings.queue_poll_interval, bus=bus)
    components["queues"] = queues

    # Handler client: schedule interpreter and email webhook (no API auth headers)
    handler_http = httpx.AsyncClient(
        timeout=httpx.Timeout(connect=10, read=60, write=10, pool=10),
    )
    components["handler_http"] = handler_http

    resolver = ScheduleResolver(
        ScheduleInterpreter(
            handler_http,
            api_key=settings.openai_api_key,
            model=settings.schedule_model,
            base_url=settings.openai_base_url,
        )
    )

    # Custom tasks reach the run driver through the components dict,
    # since the driver is built after the scheduler
    async def send_prompt(prompt: str) -> str:
        return await components["runner"].send_message(SCHEDULER_USER_ID, prompt)

    scheduler = TaskScheduler(
        task_store,
        resolver,
        create_task_handlers(lead_store, queues, notification_store, send_prompt),
        enabled=settings.scheduler_enabled,
        bus=bus,
    )
    components["scheduler"] = scheduler

    # Web tools httpx client (separate from the assistant client)
    web_http = httpx.AsyncClient(
        timeout=httpx.Timeout(connect=10, read=30, write=10, pool=10),
        limits=httpx.Limits(max_connections=5, max_keepalive_connections=2),
    )
    components["web_http"] = web_http
    web = WebTools(settings, web_http)

    dispatcher = ToolDispatcher()
    register_lead_tools(dispatcher, lead_store, queues, scheduler, task_store)
    register_web_tools(dispatcher, web)
    components["dispatcher"] = dispatcher

    assistants = AssistantsClient(settings)
    await assistants.start()
    components["assistants"] = assistants

    runner = RunDriver(assistants, dispatcher, thread_store, settings, bus=bus)
    components["runner"] = runner
    try:
        await runner.start()
    except AssistantApiError as exc:
        # Queues and the scheduler keep working without an assistant
        logger.error("Assistant unavailable, /chat and custom tasks will fail: %s", exc)

    if settings.seed_default_tasks:
        await scheduler.seed_defaults()
    await scheduler.start()

    if settings.research_consumer_enabled:
        queues.get(RESEARCH_QUEUE).start_consumer(ResearchWorker(lead_store, web))
    if settings.email_consumer_enabled:
        if settings.email_webhook_url:
            queues.get(EMAIL_QUEUE).start_consumer(
                EmailDispatcher(lead_store, handler_http, settings.email_webhook_url)
            )
        else:
            logger.warning("PROSPECTOR_EMAIL_WEBHOOK_URL not set -- email queue has no consumer")

    components.update({
        "job_store": job_store,
        "task_store": task_store,
        "lead_store": lead_store,
        "notification_store": notification_store,
        "thread_store": thread_store,
        "web": web,
    })


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down prospector...")

    scheduler = components.get("scheduler")
    if scheduler:
        await scheduler.stop_all()

    queues = components.get("queues")
    if queues:
        await queues.stop_all()

    bus = components.get("bus")
    if bus:
        await bus.stop()

    assistants = components.get("assistants")
    if assistants:
        await assistants.close()

    web_http = components.get("web_http")
    if web_http:
        await web_http.aclose()

    handler_http = components.get("handler_http")
    if handler_http:
        await handler_http.aclose()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Prospector shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components are created in its lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components
        logger.info(
            "Prospector started: assistant=%s, queues=%s",
            components["runner"].assistant_id, ", ".join(components["queues"].names()) or "none",
        )
        yield
        await shutdown_components(components)

    from prospector.api.rest import create_app

    return create_app(
        runner=_lazy_component(components, "runner"),
        queues=_lazy_component(components, "queues"),
        scheduler=_lazy_component(components, "scheduler"),
        tasks=_lazy_component(components, "task_store"),
        leads=_lazy_component(components, "lead_store"),
        notifications=_lazy_component(components, "notification_store"),
        database=_lazy_component(components, "database"),
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive component references before lifespan
    has initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized -- lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting prospector (model %s)", settings.assistant_model)
    if not settings.database_url:
        logger.info("Database: %s:%s/%s", settings.db_host, settings.db_port, settings.db_name)

    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY is not set -- /chat and the assistant will fail")
    if not settings.google_search_api_key:
        logger.warning("GOOGLE_SEARCH_API_KEY not set -- web_search and lead research will fail")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
