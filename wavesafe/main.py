"""wavesafe — engine wiring.

This is the only module that knows about concrete implementations.
It wires together the core components, the queue, the scheduler and the
notification channel.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import structlog

from wavesafe.config import AppConfig, load_config
from wavesafe.core.alerts import AlertHierarchy
from wavesafe.core.depth_validation import DepthValidationEngine
from wavesafe.core.emergency import EmergencyCoordinator
from wavesafe.core.errors import check_vessel
from wavesafe.core.events import EventBus
from wavesafe.core.grounding import GroundingRiskProjector
from wavesafe.core.models import VesselProfile
from wavesafe.core.monitor import VesselMonitor
from wavesafe.core.route_planner import RoutePlanner
from wavesafe.core.stats import EngineStats
from wavesafe.notify.base import NotificationChannel
from wavesafe.notify.file_outbox import FileOutboxChannel
from wavesafe.queue.asyncio_queue import AsyncioUpdateQueue
from wavesafe.scheduling.asyncio_scheduler import AsyncioScheduler
from wavesafe.scheduling.base import Scheduler

log = structlog.get_logger()

DEFAULT_VESSEL = VesselProfile(draft_m=2.0, name="unnamed", id="vessel-1")


@dataclass
class Engine:
    config: AppConfig
    scheduler: Scheduler
    bus: EventBus
    stats: EngineStats
    validator: DepthValidationEngine
    projector: GroundingRiskProjector
    emergency: EmergencyCoordinator
    alerts: AlertHierarchy
    planner: RoutePlanner
    queue: AsyncioUpdateQueue
    monitor: VesselMonitor


def setup_logging(config: AppConfig) -> None:
    """Configure structlog based on the logging config."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if config.logging.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=not config.logging.file))

    logger_factory = None
    if config.logging.file:
        logger_factory = structlog.WriteLoggerFactory(file=open(config.logging.file, "a"))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.logging.level.upper()),
        ),
        logger_factory=logger_factory or structlog.PrintLoggerFactory(),
    )


def create_engine(
    config: AppConfig | None = None,
    scheduler: Scheduler | None = None,
    channel: NotificationChannel | None = None,
    vessel: VesselProfile | None = None,
) -> Engine:
    """Build every component. Components share one bus, one stats object and one clock."""
    config = config or AppConfig()
    scheduler = scheduler or AsyncioScheduler()
    channel = channel or FileOutboxChannel(base_dir=config.outbox.base_dir, clock=scheduler.now)
    vessel = vessel or DEFAULT_VESSEL
    check_vessel(vessel)

    bus = EventBus()
    stats = EngineStats()
    validator = DepthValidationEngine(config=config.validation, stats=stats, clock=scheduler.now)
    projector = GroundingRiskProjector(config=config.grounding)
    emergency = EmergencyCoordinator(
        channel=channel, scheduler=scheduler, config=config.emergency, bus=bus, stats=stats,
    )
    alerts = AlertHierarchy(
        scheduler=scheduler, config=config.alerts, bus=bus, emergency=emergency,
        stats=stats, vessel=vessel,
    )
    planner = RoutePlanner(
        validator, config=config.navigation, alerts=alerts, bus=bus, clock=scheduler.now,
    )
    queue = AsyncioUpdateQueue(max_size=config.monitoring.queue_max_size)
    monitor = VesselMonitor(
        vessel=vessel,
        queue=queue,
        scheduler=scheduler,
        validator=validator,
        projector=projector,
        planner=planner,
        alerts=alerts,
        stats=stats,
        config=config.monitoring,
        bus=bus,
        emergency=emergency,
    )
    return Engine(
        config=config,
        scheduler=scheduler,
        bus=bus,
        stats=stats,
        validator=validator,
        projector=projector,
        emergency=emergency,
        alerts=alerts,
        planner=planner,
        queue=queue,
        monitor=monitor,
    )


@asynccontextmanager
async def lifespan(
    config: AppConfig | None = None,
    channel: NotificationChannel | None = None,
    vessel: VesselProfile | None = None,
) -> AsyncIterator[Engine]:
    """Engine startup and shutdown."""
    config = config or load_config()
    setup_logging(config)

    log.info("engine_starting",
             outbox_dir=config.outbox.base_dir,
             queue_max_size=config.monitoring.queue_max_size,
             tick_interval=config.monitoring.tick_interval_seconds)

    engine = create_engine(config, scheduler=AsyncioScheduler(), channel=channel, vessel=vessel)

    # Start background consumer and ticker
    consumer_task = asyncio.create_task(engine.monitor.run_consumer())
    ticker_task = asyncio.create_task(engine.monitor.run_ticker())

    log.info("engine_started", vessel=engine.monitor.vessel.name)

    try:
        yield engine
    finally:
        # Shutdown
        for task in (consumer_task, ticker_task):
            task.cancel()
        for task in (consumer_task, ticker_task):
            try:
                await task
            except asyncio.CancelledError:
                pass
        engine.planner.stop_monitoring()
        engine.alerts.close()
        log.info("engine_stopped", stats=engine.stats.snapshot())
