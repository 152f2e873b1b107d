import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load env from the project .env before settings are read
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from logtopost.core.config import Settings, build_entitlement_config, settings, validate_config
from logtopost.core.database import create_all_tables, init_engine
from logtopost.core.errors import register_error_handlers
from logtopost.core.logging import configure_logging
from logtopost.core.middleware.request_id import RequestIdMiddleware
from logtopost.api import ai, auth, billing, health
from logtopost.features.ai.service import GroqPostGenerator, TextGenerator
from logtopost.features.billing.provider import BillingProvider
from logtopost.features.billing.service import BillingService, get_provider
from logtopost.features.billing.webhooks import WebhookProcessor
from logtopost.features.entitlements.store import EntitlementStore
from logtopost.features.trials.service import TrialEligibilityEvaluator
from logtopost.features.usage.service import UsageLedger


logger = logging.getLogger("logtopost")

_DEFAULT = object()


def create_app(
    settings_obj: Optional[Settings] = None,
    provider=_DEFAULT,
    text_generator: Optional[TextGenerator] = _DEFAULT,
    database_url: Optional[str] = None,
) -> FastAPI:
    """Assemble the app. ``provider`` / ``text_generator`` override the configured collaborators."""
    cfg = settings_obj or settings
    configure_logging(cfg.ENV, cfg.LOG_LEVEL)
    validate_config(settings_obj=cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting LogToPost backend...")
        app.state.startup_time = time.time()
        if database_url:
            init_engine(database_url)
        if cfg.AUTO_CREATE_TABLES:
            create_all_tables()
        try:
            yield
        finally:
            logger.info("Stopping LogToPost backend...")

    app = FastAPI(title="LogToPost - Backend", lifespan=lifespan)

    entitlement_config = build_entitlement_config(cfg)
    billing_provider: Optional[BillingProvider] = get_provider(cfg) if provider is _DEFAULT else provider
    if text_generator is _DEFAULT:
        text_generator = GroqPostGenerator(cfg.GROQ_API_KEY, cfg.GROQ_MODEL) if cfg.GROQ_API_KEY else None

    store = EntitlementStore(entitlement_config)
    ledger = UsageLedger(entitlement_config, store)
    app.state.entitlement_config = entitlement_config
    app.state.entitlement_store = store
    app.state.usage_ledger = ledger
    app.state.trial_evaluator = TrialEligibilityEvaluator(entitlement_config, billing_provider, store)
    app.state.billing_provider = billing_provider
    app.state.text_generator = text_generator
    if billing_provider is not None:
        app.state.billing_service = BillingService(entitlement_config, store, billing_provider, ledger)
        app.state.webhook_processor = WebhookProcessor(entitlement_config, store, billing_provider)
    else:
        logger.warning("Billing disabled: STRIPE_SECRET_KEY not configured")
        app.state.billing_service = None
        app.state.webhook_processor = None

    app.add_middleware(RequestIdMiddleware)

    register_error_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in cfg.CORS_ORIGINS.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(auth.router)
    app.include_router(billing.router)
    app.include_router(ai.router)
    app.include_router(health.router)
    return app


app = create_app()
