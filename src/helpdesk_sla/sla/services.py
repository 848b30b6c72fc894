"""
SLA Worker
==========

Background loops for the SLA engine.

Runs the two evaluation passes (applied SLAs, SLA events) on the
APScheduler interval and drains the scheduled notification table on its
own loop. All of them stop cooperatively when close() is called.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Set

from helpdesk_sla.config import settings
from helpdesk_sla.shared.infrastructure.logging import get_logger, log_latency
from helpdesk_sla.sla.application import NotificationDispatcher, SLAEvaluationService
from helpdesk_sla.sla.infrastructure.external import SLAScheduler

logger = get_logger(__name__)


class SLAWorker:
    """
    Owns the periodic evaluation passes and the notification loop.

    Passes started by the scheduler are tracked so close() can wait for
    the one in flight before returning.
    """

    def __init__(
        self,
        evaluation_service: SLAEvaluationService,
        dispatcher: NotificationDispatcher,
        scheduler: Optional[SLAScheduler] = None,
        notification_interval: Optional[float] = None
    ):
        self._evaluation_service = evaluation_service
        self._dispatcher = dispatcher
        self._scheduler = scheduler or SLAScheduler()
        self._notification_interval = notification_interval or settings.sla_notification_interval
        self._shutdown = asyncio.Event()
        self._in_flight: Set[asyncio.Task] = set()
        self._notification_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._scheduler.is_running

    async def run(self, evaluation_interval: int) -> None:
        """Start the evaluation jobs and the notification loop."""
        self._scheduler.add_interval_job(
            "evaluate_pending_slas",
            "Evaluate applied SLAs",
            evaluation_interval,
            self._job(self.evaluate_pending_slas),
        )
        self._scheduler.add_interval_job(
            "evaluate_pending_sla_events",
            "Evaluate SLA events",
            evaluation_interval,
            self._job(self.evaluate_pending_sla_events),
        )
        await self._scheduler.start()

        self._notification_task = asyncio.create_task(
            self.send_notifications(self._shutdown)
        )
        logger.info(
            "SLA worker started",
            extra={
                "evaluation_interval": evaluation_interval,
                "notification_interval": self._notification_interval
            }
        )

    def _job(self, func: Callable[[], Awaitable[None]]) -> Callable[[], Awaitable[None]]:
        async def tracked() -> None:
            if self._shutdown.is_set():
                return
            task = asyncio.current_task()
            self._in_flight.add(task)
            try:
                await func()
            finally:
                self._in_flight.discard(task)

        return tracked

    async def evaluate_pending_slas(self) -> None:
        with log_latency(logger, "evaluate_pending_slas"):
            await self._evaluation_service.evaluate_pending_slas(self._shutdown)

    async def evaluate_pending_sla_events(self) -> None:
        with log_latency(logger, "evaluate_pending_sla_events"):
            await self._evaluation_service.evaluate_pending_sla_events(self._shutdown)

    async def send_notifications(self, shutdown: asyncio.Event) -> None:
        """Dispatch due notifications every interval until shutdown is set."""
        while not shutdown.is_set():
            try:
                await self._dispatcher.dispatch_due(shutdown)
            except Exception as e:
                logger.error("error processing scheduled notifications", extra={"error": str(e)})

            try:
                await asyncio.wait_for(shutdown.wait(), timeout=self._notification_interval)
            except asyncio.TimeoutError:
                continue

        logger.info("notification loop stopped")

    async def close(self) -> None:
        """Signal shutdown and wait for in-flight work to finish."""
        logger.info("stopping SLA worker")
        self._shutdown.set()
        await self._scheduler.stop()

        pending = list(self._in_flight)
        if self._notification_task is not None:
            pending.append(self._notification_task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._notification_task = None
        logger.info("SLA worker stopped")
