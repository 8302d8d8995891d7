import asyncio
import contextlib
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from hybrid_categorizer.api.routes import categorize, feedback, monitoring, validation
from hybrid_categorizer.cache import CategoryCache
from hybrid_categorizer.classifiers.llm import LLMClassifierGateway
from hybrid_categorizer.classifiers.rules import PatternRuleMatcher
from hybrid_categorizer.core import settings
from hybrid_categorizer.core.configuration import AppConfig, load_app_config
from hybrid_categorizer.logger import get_logger, setup_logging
from hybrid_categorizer.manager import CategorizerService
from hybrid_categorizer.services.alerting import AlertEngine
from hybrid_categorizer.services.categorization import CategorizationPipeline
from hybrid_categorizer.services.feedback import FeedbackProcessor
from hybrid_categorizer.services.metrics import MetricsRecorder
from hybrid_categorizer.services.monitoring import MonitoringService
from hybrid_categorizer.services.validation import ValidationHarness
from hybrid_categorizer.storage.kv import InMemoryKeyValueStore
from hybrid_categorizer.storage.patterns import PatternStore
from hybrid_categorizer.storage.records import InMemoryRecordStore

logger = get_logger(__name__)

PATTERNS_FILENAME = "patterns.json"


def create_app(app_config: AppConfig | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        config = app_config or load_app_config()
        settings.ensure_dir(config.data_dir)
        setup_logging(config.log_level, config.log_dir)

        logger.info("Initializing services...")
        settings.log_environment()

        if not config.classifier.enabled:
            logger.info("OPENAI_API_KEY not set. OpenAI integration will be disabled.")

        store = InMemoryKeyValueStore()
        records = InMemoryRecordStore()
        metrics = MetricsRecorder.from_config(store, config.metrics)
        cache = CategoryCache.from_config(store, config.cache)
        service = CategorizerService(
            cache,
            rules=PatternRuleMatcher(),
            gateway=LLMClassifierGateway.from_config(config.classifier),
            metrics=metrics,
        )
        pipeline = CategorizationPipeline(
            service,
            records,
            max_batch_size=config.max_batch_size,
            concurrency=config.classifier.concurrency,
        )
        feedback_processor = FeedbackProcessor(
            records, cache, PatternStore(os.path.join(config.data_dir, PATTERNS_FILENAME))
        )
        alerts = AlertEngine(
            store,
            thresholds=config.thresholds,
            notifications=config.notifications,
            retention_days=config.alert_retention_days,
        )
        monitoring_service = MonitoringService(
            metrics,
            alerts,
            store,
            feedback=feedback_processor,
            records=records,
            classifier_enabled=lambda: service.classifier_enabled,
        )

        app.state.config = config
        app.state.service = service
        app.state.pipeline = pipeline
        app.state.feedback = feedback_processor
        app.state.metrics = metrics
        app.state.alerts = alerts
        app.state.monitoring = monitoring_service
        app.state.validation = ValidationHarness(service, metrics)

        monitor_task = asyncio.create_task(
            monitoring_service.run_forever(config.monitoring_interval_seconds)
        )
        logger.info("Services initialized.")
        yield

        monitor_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await monitor_task
        logger.info("Service shutting down.")

    app = FastAPI(title="Hybrid Categorizer", lifespan=lifespan)

    app.include_router(categorize.router)
    app.include_router(feedback.router)
    app.include_router(monitoring.router)
    app.include_router(validation.router)

    return app


app = create_app()
