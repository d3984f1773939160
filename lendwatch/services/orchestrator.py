"""Wires stores, chain, oracle, notifiers and job handlers into one process."""
from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any, Sequence

from ..chains.evm import LoanBrokerClient
from ..config import (
    HEALTH_CHECK,
    INTEREST_ACCRUAL,
    LIQUIDATION,
    NOTIFICATION,
    PRICE_REFRESH,
    AppConfig,
    StoreConfig,
)
from ..interfaces.chain import LendingChain
from ..interfaces.notifier import Notifier
from ..interfaces.price_oracle import PriceOracle
from ..jobs import (
    Backoff,
    HealthCheckPayload,
    InterestAccrualPayload,
    JobDefinition,
    JobEvent,
    JobEventKind,
    JobQueue,
    LiquidationPayload,
    NotificationPayload,
    PriceRefreshPayload,
    WorkerPool,
)
from ..notifications import EmailNotifier, TelegramNotifier
from ..oracles import PythOracle
from ..stores import InMemoryPositionStore, SqlitePositionStore
from .health import HealthFactorUpdater
from .interest import InterestAccrual
from .liquidation import LiquidationExecutor
from .locks import PositionLocks
from .notifications import NotificationDispatcher
from .positions import PositionService
from .prices import PriceBook, PriceUpdater
from .profitability import ProfitabilityEvaluator
from .scheduler import Scheduler, canonical_schedule

logger = logging.getLogger(__name__)


def build_store(config: StoreConfig) -> Any:
    if config.backend == "sqlite":
        return SqlitePositionStore(config.path)
    return InMemoryPositionStore()


class Orchestrator:
    """Owns every collaborator and the job pipeline's lifecycle.

    Collaborators passed in are used as-is; anything omitted is built from
    ``config``. No chain client means no liquidation job type: health
    checks then fall back to locally accrued debt and only notify.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        store: Any = None,
        chain: LendingChain | None = None,
        oracle: PriceOracle | None = None,
        notifiers: Sequence[Notifier] | None = None,
        queue: JobQueue | None = None,
    ) -> None:
        self._config = config
        self.store = store if store is not None else build_store(config.store)
        if chain is None and config.chain.rpc_endpoints:
            chain = LoanBrokerClient(config.chain)
        self.chain = chain
        self.oracle: PriceOracle = oracle or PythOracle(config.price_oracle.pyth)

        if notifiers is None:
            built: list[Notifier] = []
            if config.notifications.telegram.enabled:
                built.append(TelegramNotifier(config.notifications.telegram))
            if config.notifications.email.enabled:
                built.append(EmailNotifier(config.notifications.email))
            notifiers = built
        self.notifiers = list(notifiers)

        self.locks = PositionLocks()
        self.prices = PriceBook(config.price_oracle.pyth.max_age_seconds)
        self.queue = queue or JobQueue()
        self.pool = WorkerPool(
            self.queue,
            size=config.workers.pool_size,
            stall_check_seconds=config.workers.stall_check_seconds,
        )

        self.price_updater = PriceUpdater(self.oracle, self.prices)
        self.positions = PositionService(self.store, self.store, self.locks)
        self.interest = InterestAccrual(
            self.store,
            self.locks,
            liquidation_threshold=config.monitor.liquidation_threshold,
        )
        self.dispatcher = NotificationDispatcher(
            self.notifiers, config.notifications.dedupe_seconds
        )

        liquidation_enabled = config.liquidation.enabled and self.chain is not None
        self.executor: LiquidationExecutor | None = None
        if liquidation_enabled:
            evaluator = ProfitabilityEvaluator(
                self.chain,
                self.prices,
                config.liquidation,
                config.chain.gas_price_symbol,
            )
            self.executor = LiquidationExecutor(
                self.store,
                self.chain,
                evaluator,
                self.locks,
                config.liquidation,
                config.monitor.liquidation_health_factor,
            )

        self.health = HealthFactorUpdater(
            self.store,
            self.prices,
            self.queue,
            self.locks,
            config.monitor,
            self.chain,
            liquidation_enabled=liquidation_enabled,
            liquidation_attempts=config.workers.for_type(LIQUIDATION).attempts,
        )
        self.scheduler = Scheduler(self.queue, canonical_schedule(config.scheduler))

        self._register_job_types()
        self.queue.subscribe(self._on_job_event)
        self._stop = asyncio.Event()
        self._started = False

    def _register_job_types(self) -> None:
        handlers: dict[str, tuple[Any, type]] = {
            HEALTH_CHECK: (self.health.handle, HealthCheckPayload),
            NOTIFICATION: (self.dispatcher.handle, NotificationPayload),
            INTEREST_ACCRUAL: (self.interest.handle, InterestAccrualPayload),
            PRICE_REFRESH: (self.price_updater.handle, PriceRefreshPayload),
        }
        if self.executor is not None:
            handlers[LIQUIDATION] = (self.executor.handle, LiquidationPayload)
        else:
            logger.warning("Liquidation disabled; liquidatable positions are only reported")

        for name, (handler, payload_type) in handlers.items():
            policy = self._config.workers.for_type(name)
            self.queue.register(
                JobDefinition(
                    name=name,
                    handler=handler,
                    payload_type=payload_type,
                    concurrency=policy.concurrency,
                    attempts=policy.attempts,
                    backoff=Backoff(policy.backoff_type, policy.backoff_seconds),
                    lease_seconds=policy.lease_seconds,
                    priority=policy.priority,
                )
            )

    @staticmethod
    def _on_job_event(event: JobEvent) -> None:
        if event.kind is JobEventKind.FAILED:
            level = logging.CRITICAL if event.name == LIQUIDATION else logging.ERROR
            logger.log(
                level,
                "%s job %s failed after %d attempts: %s",
                event.name,
                event.job_id,
                event.attempts_made,
                event.error,
            )
        elif event.kind is JobEventKind.STALLED:
            logger.warning("%s job %s stalled; lease expired", event.name, event.job_id)
        else:
            logger.debug("%s job %s completed: %s", event.name, event.job_id, event.result)

    async def initialize(self) -> None:
        initialize = getattr(self.store, "initialize", None)
        if initialize is not None:
            await initialize()

    async def start(self) -> None:
        if self._started:
            return
        await self.initialize()
        self.queue.start()
        self.scheduler.arm()
        self.pool.start()
        self._started = True
        logger.info(
            "lendwatch started: %d workers, liquidation %s",
            self.pool.size,
            "enabled" if self.executor is not None else "disabled",
        )

    def request_stop(self) -> None:
        self._stop.set()

    async def run_forever(self) -> None:
        """Start, block until SIGINT/SIGTERM or ``request_stop``, then drain."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handler for %s unavailable", sig.name)
        await self.start()
        try:
            await self._stop.wait()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        logger.info("Shutting down...")
        self.scheduler.disarm()
        await self.pool.stop(self._config.workers.shutdown_grace_seconds)
        await self.queue.close()
        if self.chain is not None:
            try:
                await self.chain.close()
            except Exception as e:
                logger.error("Closing chain client failed: %s", e)
        await self.store.close()
        self._started = False
        logger.info("Shutdown complete")
