"""
Fleet Rebalancer Runner: Main Loop

Wires the rebalancing components together from config/scheduler.yaml and
runs them until stopped.

Flow:
1. Load and validate configuration
2. Set up logging
3. Build chain client, executor, metrics, events, alerting, scheduler
4. Register configured portfolios
5. Start the scheduler (and the health/metrics servers when enabled)
6. Stop cleanly on SIGINT/SIGTERM
"""

import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from core.chain_client import ChainClient, GatewayChainClient, MarketConditionsProvider
from core.circuit_breaker import BreakerConfig
from core.cost_model import CostBenefitGate, CostConfig, CostModel
from core.drift import DriftEvaluator, UrgencyBands
from core.exceptions import InvalidPortfolioInput
from core.resilient_executor import ResilientExecutor, RetryPolicy
from core.scheduler import RebalancingScheduler, SchedulerConfig
from infra.alerting import AlertService
from infra.events import EventDispatcher
from infra.healthcheck import HealthServer
from infra.metrics import MetricsRecorder
from tools.config_validator import AppSettings, ConfigError, LoggingSettings, load_settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(settings: LoggingSettings) -> None:
    handlers: list = [logging.StreamHandler()]
    if settings.file:
        log_path = Path(settings.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    logging.basicConfig(
        level=getattr(logging, settings.level),
        format=LOG_FORMAT,
        handlers=handlers,
    )


class RebalancerService:
    """
    Owns the component graph for one fleet.

    Responsibilities:
    - Build components from validated settings
    - Register portfolios
    - Start/stop the scheduler and the HTTP endpoints
    """

    def __init__(
        self,
        settings: AppSettings,
        client: Optional[ChainClient] = None,
        market: Optional[MarketConditionsProvider] = None,
    ):
        self.settings = settings

        if client is None:
            gateway = GatewayChainClient(
                settings.gateway.base_url,
                api_key=settings.gateway.api_key,
                request_timeout_seconds=settings.gateway.request_timeout_seconds,
            )
            client = gateway
            market = market or gateway
        self.client = client
        self.market = market

        retry = settings.retry
        breaker = settings.circuit_breaker
        self.executor = ResilientExecutor(
            policy=RetryPolicy(
                max_retries=retry.max_retries,
                base_delay_seconds=retry.base_delay_seconds,
                max_delay_seconds=retry.max_delay_seconds,
                jitter_seconds=retry.jitter_seconds,
                timeout_seconds=retry.timeout_seconds,
            ),
            breaker_config=BreakerConfig(
                failure_threshold=breaker.failure_threshold,
                success_threshold=breaker.success_threshold,
                cooldown_seconds=breaker.cooldown_seconds,
                failure_window_seconds=breaker.failure_window_seconds,
                half_open_max_calls=breaker.half_open_max_calls,
            ),
        )

        m = settings.metrics
        self.metrics = MetricsRecorder(
            max_records=m.max_records,
            retention_seconds=m.retention_seconds,
            max_errors=m.max_errors,
            enabled=m.enabled,
            port=m.port,
        )

        cost_config = CostConfig(**settings.gate.model_dump())
        self.events = EventDispatcher()
        self.alerts = AlertService.from_config(settings.alerts.model_dump())
        self.alerts.attach(self.events)

        s = settings.scheduler
        self.scheduler = RebalancingScheduler(
            client=self.client,
            executor=self.executor,
            metrics=self.metrics,
            drift_evaluator=DriftEvaluator(
                cost_model=CostModel(cost_config),
                bands=UrgencyBands(**settings.urgency.model_dump()),
            ),
            gate=CostBenefitGate(cost_config),
            market=self.market,
            events=self.events,
            config=SchedulerConfig(
                scan_interval_seconds=s.scan_interval_seconds,
                report_interval_seconds=s.report_interval_seconds,
                status_window_seconds=s.status_window_seconds,
                max_concurrency=s.max_concurrency,
            ),
        )

        self.health: Optional[HealthServer] = None
        if settings.health.enabled:
            self.health = HealthServer(
                settings.health.port,
                health_provider=self.health_payload,
                status_provider=lambda: self.scheduler.get_status().to_dict(),
                report_provider=lambda: self.scheduler.generate_report().to_dict(),
            )

        self._stop_requested = threading.Event()

    def register_portfolios(self) -> int:
        """Add every configured portfolio; invalid entries are logged and skipped."""
        added = 0
        for portfolio_id, portfolio in self.settings.portfolios.items():
            try:
                self.scheduler.add_portfolio(portfolio_id, portfolio.to_schedule_config())
            except InvalidPortfolioInput as exc:
                logger.error("Skipping portfolio %s: %s", portfolio_id, exc)
                continue
            added += 1
        logger.info("Registered %d/%d configured portfolio(s)", added, len(self.settings.portfolios))
        return added

    def health_payload(self) -> Dict[str, Any]:
        status = self.scheduler.get_status()
        unhealthy = self.executor.unhealthy_operations()
        return {
            "ok": status.is_running and not unhealthy and self.scheduler.last_error is None,
            "status": status.to_dict(),
            "unhealthy_operations": unhealthy,
            "breakers": {name: snap.to_dict() for name, snap in self.executor.breaker_snapshots().items()},
            "last_error": str(self.scheduler.last_error) if self.scheduler.last_error else None,
        }

    def _handle_stop(self, *_):
        logger.warning("=" * 60)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - stopping scheduler")
        logger.warning("=" * 60)
        self._stop_requested.set()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

    def run_once(self) -> None:
        """Run a single tick and log the report."""
        self.register_portfolios()
        self.scheduler.tick()
        self.scheduler.generate_report()

    def run_forever(self, poll_seconds: float = 1.0) -> int:
        """
        Start everything and block until a stop signal or a scheduler crash.

        Returns:
            Process exit code (0 clean stop, 1 scheduler crashed)
        """
        self.register_portfolios()
        self.metrics.start()
        if self.health is not None:
            self.health.start()

        self.scheduler.start(run_immediately=self.settings.scheduler.run_immediately)
        try:
            while not self._stop_requested.wait(poll_seconds):
                if self.scheduler.last_error is not None:
                    logger.critical("Scheduler stopped unexpectedly: %s", self.scheduler.last_error)
                    return 1
        finally:
            self.scheduler.stop(wait=True, timeout=10)
            if self.health is not None:
                self.health.stop()
        logger.info("Fleet rebalancer stopped")
        return 0


def main(argv=None):
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Fleet portfolio rebalancer")
    parser.add_argument("--config", default="config/scheduler.yaml", help="Config file")
    parser.add_argument("--once", action="store_true", help="Run one scan, print the report and exit")
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ConfigError as exc:
        logging.basicConfig(level=logging.ERROR, format=LOG_FORMAT)
        logger.error("=" * 60)
        logger.error("CONFIGURATION VALIDATION FAILED")
        logger.error("=" * 60)
        for idx, error in enumerate(exc.errors, start=1):
            logger.error(f"{idx:>2}. {error}")
        return 2

    setup_logging(settings.logging)
    service = RebalancerService(settings)
    service.install_signal_handlers()

    if args.once:
        service.run_once()
        return 0
    return service.run_forever()


if __name__ == "__main__":
    sys.exit(main())
