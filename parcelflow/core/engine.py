"""
Engine Assembly

Builds every parcelflow service from Settings and wires them together. There
are no module-level singletons: the API and the tests each own an Engine.

Usage:
    from parcelflow.core.engine import build_engine

    engine = build_engine()
    await engine.start()
    ...
    await engine.stop()
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from parcelflow.core import metrics
from parcelflow.core.alerting import AlertHub
from parcelflow.core.batch import BatchCoordinator
from parcelflow.core.config import Settings, get_settings
from parcelflow.core.connectors import DataSourceRegistry
from parcelflow.core.optimization import OptimizationAdvisor
from parcelflow.core.orchestrator import PipelineOrchestrator
from parcelflow.core.quality import QualityAnalyzer, QualityOptions
from parcelflow.core.scheduler import JobScheduler, RunDispatcher
from parcelflow.core.transformations import TransformationEngine

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    settings: Settings
    registry: DataSourceRegistry
    transforms: TransformationEngine
    analyzer: QualityAnalyzer
    alerts: AlertHub
    advisor: OptimizationAdvisor
    orchestrator: PipelineOrchestrator
    dispatcher: RunDispatcher
    scheduler: JobScheduler
    batches: BatchCoordinator

    async def start(self):
        await self.dispatcher.start()
        if self.settings.scheduler_enabled:
            await self.scheduler.start(self.settings.scheduler_interval_seconds)
        logger.info(f"Parcelflow engine started (env={self.settings.env})")

    async def stop(self):
        await self.scheduler.stop()
        await self.dispatcher.stop()
        for source in self.registry.list():
            self.registry.disconnect(source.id)
        logger.info("Parcelflow engine stopped")

    def get_status(self) -> Dict[str, Any]:
        status = self.orchestrator.get_system_status()
        status["scheduler"] = self.scheduler.get_status()
        return status


def build_engine(settings: Optional[Settings] = None) -> Engine:
    settings = settings or get_settings()
    metrics.init_metrics(settings.metrics_mode)

    registry = DataSourceRegistry(timeout=settings.connector_timeout_seconds)
    transforms = TransformationEngine()
    analyzer = QualityAnalyzer(QualityOptions(
        min_properties_for_stats=settings.quality_min_records,
        max_missing_rate=settings.quality_max_missing_rate,
        outlier_threshold=settings.quality_outlier_threshold,
    ))
    alerts = AlertHub(history_limit=settings.alert_history_limit)
    advisor = OptimizationAdvisor(
        transforms,
        success_rate_threshold=settings.advisor_success_rate_threshold,
        long_run_seconds=settings.advisor_long_run_seconds,
        high_volume_records=settings.advisor_high_volume_records,
        enabled=settings.advisor_enabled,
    )
    orchestrator = PipelineOrchestrator(registry, transforms, analyzer, alerts, advisor=advisor)
    dispatcher = RunDispatcher(orchestrator, workers=settings.dispatcher_workers)
    scheduler = JobScheduler(
        orchestrator,
        dispatcher,
        alerts=alerts,
        interval_seconds=settings.scheduler_interval_seconds,
    )
    batches = BatchCoordinator(orchestrator, alerts)

    return Engine(
        settings=settings,
        registry=registry,
        transforms=transforms,
        analyzer=analyzer,
        alerts=alerts,
        advisor=advisor,
        orchestrator=orchestrator,
        dispatcher=dispatcher,
        scheduler=scheduler,
        batches=batches,
    )
