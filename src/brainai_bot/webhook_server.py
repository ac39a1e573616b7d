#!/usr/bin/env python
"""
FastAPI webhook server for the BrainAI bot
Receives chat updates, guards them against redelivery and exposes health/metrics
"""
import logging
import sys
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import config
from .exceptions import general_exception_handler, http_exception_handler, validation_exception_handler
from .logging_config import setup_logging, update_id_var
from .services.metrics import get_metrics_collector, increment_counter
from .services.update_deduplicator import UpdateDeduplicator

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[Dict[str, Any]], Awaitable[None]]


def create_app(
    handler: UpdateCallback,
    deduplicator: UpdateDeduplicator,
    webhook_secret: Optional[str] = None,
) -> FastAPI:
    """
    Build the webhook application

    Args:
        handler: Processes one update dict
        deduplicator: Shared processed-update cache
        webhook_secret: Expected X-Telegram-Bot-Api-Secret-Token value (checked when set)

    Returns:
        FastAPI app
    """
    app = FastAPI(title="BrainAI Bot Webhook")

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    @app.post("/webhook")
    async def webhook(
        request: Request,
        x_telegram_bot_api_secret_token: Optional[str] = Header(None),
    ):
        if webhook_secret and x_telegram_bot_api_secret_token != webhook_secret:
            raise HTTPException(status_code=401, detail="Invalid secret token")

        try:
            update = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Body must be JSON")

        update_id = update.get("update_id") if isinstance(update, dict) else None
        if not isinstance(update_id, int) or isinstance(update_id, bool):
            raise HTTPException(status_code=400, detail="update_id is required")

        token = update_id_var.set(update_id)
        try:
            if not deduplicator.should_process(update_id):
                increment_counter("duplicate_updates_total")
                return {"ok": True, "duplicate": True}

            increment_counter("updates_received_total")
            await handler(update)
            return {"ok": True}
        finally:
            update_id_var.reset(token)

    @app.get("/health")
    async def health():
        """Health check endpoint for monitoring"""
        return {"status": "healthy", "service": "brainai-bot", "env": config.ENV}

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics():
        return PlainTextResponse(get_metrics_collector().format_prometheus())

    return app


def build_app() -> FastAPI:
    """Wire production collaborators from configuration"""
    from .db.engine import get_engine, get_session_factory, init_db
    from .services.admission_gate import AdmissionGate
    from .services.generation_providers import IMAGE_PROVIDER_CHOICES, get_generation_provider
    from .services.generation_service import GenerationService
    from .services.notifier import TelegramNotifier
    from .services.quota_service import QuotaStore
    from .services.scheduled_jobs import start_scheduler, stop_scheduler
    from .services.task_poller import TaskPoller
    from .services.text_responder import ChatCompletionResponder
    from .services.usage_store import SqlUsageRowStore
    from .services.user_service import UserService
    from .update_handler import UpdateHandler

    init_db(get_engine())
    session_factory = get_session_factory()

    users = UserService(session_factory, premium_duration_days=config.PREMIUM_DURATION_DAYS)
    quota_store = QuotaStore(SqlUsageRowStore(session_factory), users, config.quota_limits())
    notifier = TelegramNotifier()

    # Providers a user may pick with /provider; unconfigured ones are left out
    image_providers = {}
    for name in IMAGE_PROVIDER_CHOICES:
        provider = get_generation_provider(name, "image")
        if provider.is_configured():
            image_providers[name] = provider

    generation = GenerationService(
        quota_store=quota_store,
        gate=AdmissionGate(),
        poller=TaskPoller(),
        providers={
            "image": get_generation_provider(config.IMAGE_PROVIDER, "image"),
            "video": get_generation_provider(config.VIDEO_PROVIDER, "video"),
        },
        poll_options={
            "image": config.poll_options("image"),
            "video": config.poll_options("video"),
        },
        notifier=notifier,
        users=users,
        image_providers=image_providers,
    )

    text_responder = ChatCompletionResponder()
    if not text_responder.is_configured():
        logger.warning("OPENAI_API_KEY not set, plain-text chat is disabled")
        text_responder = None

    handler = UpdateHandler(users, generation, quota_store, notifier, text_responder=text_responder)
    app = create_app(handler, UpdateDeduplicator(config.PROCESSED_UPDATES_CAPACITY), config.WEBHOOK_SECRET)

    @app.on_event("shutdown")
    async def drain_generations():
        logger.info(f"Waiting for {handler.pending} in-flight generations")
        await handler.drain()

    if config.SCHEDULER_ENABLED:
        @app.on_event("startup")
        def schedule_premium_expiry():
            start_scheduler(users, hour=config.PREMIUM_EXPIRY_HOUR)

        @app.on_event("shutdown")
        def stop_jobs():
            stop_scheduler()

    return app


def main():
    import uvicorn

    setup_logging(env=config.ENV, log_level=config.LOG_LEVEL)

    logger.info("=" * 50)
    logger.info("BrainAI Bot Webhook - Starting Up")
    logger.info("=" * 50)
    logger.info(f"ENV: {config.ENV}")
    logger.info(f"PORT: {config.PORT}")
    logger.info(f"Image provider: {config.IMAGE_PROVIDER}, video provider: {config.VIDEO_PROVIDER}")

    try:
        app = build_app()
    except Exception as e:
        logger.error(f"Failed to build application: {e}", exc_info=True)
        sys.exit(1)

    uvicorn.run(app, host="0.0.0.0", port=config.PORT, log_config=None, access_log=True)


if __name__ == "__main__":
    main()
