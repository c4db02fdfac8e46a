"""FastAPI application for InboxJanitor.

Creates the FastAPI app with:
- Lifespan context manager for dependency initialization and scheduler
- JSON API router under /api

When ``scheduler.enabled`` is set, APScheduler's BackgroundScheduler runs
in the same process as uvicorn and re-invokes every resumable sync run.
The scheduler thread bridges to the async event loop via
run_coroutine_threadsafe.

Usage:
    from inbox_janitor.web.app import create_app

    app = create_app()
    # Run with: uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from inbox_janitor.core.logging import get_logger

logger = get_logger(__name__)

VERSION = "0.1.0"

_STATE_NAMES = (
    "config",
    "store",
    "mailbox_factory",
    "sync_engine",
    "suggest_engine",
    "deletion_executor",
    "scheduler",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize dependencies on startup, clean up on shutdown.

    On startup:
    1. Load config
    2. Initialize database
    3. Build the mailbox factory, sync engine and deletion executor
    4. Build the classifier and suggest engine (needs ANTHROPIC_API_KEY)
    5. Start APScheduler when enabled

    On shutdown:
    - Stop APScheduler
    """
    import anthropic
    from apscheduler.schedulers.background import BackgroundScheduler

    from inbox_janitor.classifier.deletion_classifier import DeletionClassifier
    from inbox_janitor.classifier.provider import ClaudeDeletionProvider
    from inbox_janitor.classifier.sender_learning import SenderLearning
    from inbox_janitor.config import get_config, reload_config_if_changed
    from inbox_janitor.core.errors import ConfigLoadError, ConfigValidationError
    from inbox_janitor.db.store import DatabaseStore
    from inbox_janitor.engine.deletion import DeletionExecutor
    from inbox_janitor.engine.suggest import SuggestEngine
    from inbox_janitor.engine.sync import SyncEngine
    from inbox_janitor.gmail.factory import GmailMailboxFactory

    for name in _STATE_NAMES:
        setattr(app.state, name, None)

    # 1. Load config
    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        logger.error("config_load_failed", error=str(e))
        # Routes answer 503 until the config is fixed
        yield
        return

    app.state.config = config

    # 2. Initialize database
    db_path = Path(config.database.path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path)
    await store.initialize()
    app.state.store = store

    # 3. Mailbox side
    mailbox_factory = GmailMailboxFactory(config)
    learning = SenderLearning(store)
    sync_engine = SyncEngine(store, mailbox_factory, config)
    app.state.mailbox_factory = mailbox_factory
    app.state.sync_engine = sync_engine
    app.state.deletion_executor = DeletionExecutor(store, learning, mailbox_factory)

    # 4. Classifier
    suggest_engine = None
    try:
        anthropic_client = anthropic.AsyncAnthropic(max_retries=3)
        provider = ClaudeDeletionProvider(anthropic_client, store, config)
        classifier = DeletionClassifier(provider, learning, config)
        suggest_engine = SuggestEngine(store, classifier, config)
    except anthropic.AnthropicError as e:
        logger.error("classifier_init_failed", error=str(e))
    app.state.suggest_engine = suggest_engine

    # 5. Start APScheduler
    scheduler = None
    if config.scheduler.enabled:
        loop = asyncio.get_running_loop()

        def _resume_syncs() -> None:
            """Bridge the async resume pass into the scheduler thread."""
            if reload_config_if_changed():
                sync_engine.update_config(get_config())
            try:
                future = asyncio.run_coroutine_threadsafe(sync_engine.resume_active_runs(), loop)
                future.result(timeout=config.sync.time_budget_seconds * 2)
            except Exception as e:
                logger.error("scheduled_sync_resume_failed", error=str(e))

        scheduler = BackgroundScheduler()
        scheduler.add_job(
            _resume_syncs,
            "interval",
            minutes=config.scheduler.interval_minutes,
            id="resume_syncs",
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        logger.info("scheduler_started", interval_minutes=config.scheduler.interval_minutes)

    app.state.scheduler = scheduler

    yield

    # Shutdown
    if scheduler:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance
    """
    from inbox_janitor.web.routes import api_router

    app = FastAPI(
        title="InboxJanitor",
        description="AI-assisted Gmail cleanup",
        version=VERSION,
        lifespan=lifespan,
    )
    app.include_router(api_router)
    return app
