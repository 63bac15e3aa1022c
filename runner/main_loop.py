"""
spot-autopilot - Main Loop

Wires configuration, exchange, oracle, gates, scheduler and control API
together and runs the coordinator until SIGINT/SIGTERM.

Usage:
    python -m runner.main_loop                 # run until stopped
    python -m runner.main_loop --once          # one fast + one slow cycle
    python -m runner.main_loop --check         # config + connectivity checks
"""

import logging
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from ai.model_client import create_model_client, split_model_spec
from analytics.trade_log import RecommendationLog, TradeLog
from core.decision_engine import DecisionEngine
from core.exceptions import ConfigurationError, ExchangeError
from core.exchange_binance import BinanceExchange
from core.execution import ExecutionEngine
from core.portfolio_manager import PortfolioManager
from core.risk import CircuitBreakerBoard, RiskEngine
from infra.alerting import AlertService
from infra.control_server import ControlServer
from infra.events import EventBus
from infra.metrics import MetricsRecorder
from infra.state_store import StateStore
from runner.control import ControlService
from runner.scheduler import Scheduler
from tools.config_validator import BotConfig, load_config, validate_all_configs

logger = logging.getLogger(__name__)

VERSION = "0.3.0"
MAX_CLOCK_DRIFT_MS = 1000.0


def setup_logging(config: BotConfig) -> None:
    log_cfg = config.app.logging
    log_path = Path(log_cfg.file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, log_cfg.level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_path), logging.StreamHandler()],
    )


class TradingLoop:
    """
    Process-level owner of every component.

    Startup aborts with ConfigurationError on invalid config or missing
    credentials; nothing after startup is allowed to end the process except
    a shutdown signal.
    """

    def __init__(self, config_dir: str = "config", env: Optional[Mapping[str, str]] = None,
                 acquire_lock: bool = True, configure_logging: bool = True):
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                logger.error(f"{idx:>2}. {error}")
            logger.error("=" * 80)
            raise ConfigurationError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.config = load_config(config_dir, env=env)
        if configure_logging:
            setup_logging(self.config)

        app = self.config.app
        policy = self.config.policy
        secrets = self.config.secrets
        self.mode = self.config.mode
        logger.info(f"Starting spot-autopilot {VERSION} in mode={self.mode} (testnet={self.config.uses_testnet})")

        # CRITICAL: one process per state file
        self.instance_lock = None
        if acquire_lock:
            from infra.instance_lock import check_single_instance
            self.instance_lock = check_single_instance("spot-autopilot", lock_dir=app.state.lock_dir)
            if not self.instance_lock:
                raise ConfigurationError(
                    "Another spot-autopilot instance is already running (lock held)"
                )

        self.events = EventBus()
        self.metrics = MetricsRecorder(enabled=app.monitoring.metrics_enabled, port=app.monitoring.metrics_port)
        self.metrics.attach(self.events)
        self.alert_service = AlertService.from_config(app.monitoring.alerts)

        self.exchange = BinanceExchange(
            api_key=secrets.exchange_api_key,
            api_secret=secrets.exchange_api_secret,
            testnet=self.config.uses_testnet,
            timeout_s=app.exchange.timeout_seconds,
            max_retries=app.exchange.max_retries,
        )

        provider, model = split_model_spec(app.model.spec)
        self.model_client = create_model_client(
            provider, api_key=secrets.model_api_key, model=model or None,
            temperature=app.model.temperature,
        )
        logger.info(f"Reasoning oracle: {provider} ({model or 'default'})")

        self.state_store = StateStore(state_file=app.state.state_file)
        self.trade_log = TradeLog(log_dir=app.state.log_dir, mode=app.app.mode)
        self.recommendation_log = RecommendationLog(path=app.state.recommendations_file)

        self.risk_engine = RiskEngine(
            self.config.policy_dict(), exchange=self.exchange, alert_service=self.alert_service
        )
        self.decision_engine = DecisionEngine(
            self.exchange,
            self.model_client,
            confidence_threshold=policy.decision.confidence_threshold,
            max_trade_usd=policy.risk.max_trade_usd,
            timeout_s=policy.decision.oracle_timeout_seconds,
            kline_interval=policy.decision.kline_interval,
            kline_limit=policy.decision.kline_limit,
            reflection_enabled=policy.decision.reflection_enabled,
        )
        self.executor = ExecutionEngine(self.exchange, mode=self.mode, max_trade_usd=policy.risk.max_trade_usd)
        self.portfolio_manager = PortfolioManager(
            self.exchange,
            self.model_client,
            self.state_store,
            recommendation_log=self.recommendation_log,
            max_positions=policy.risk.max_positions,
            max_trade_usd=policy.risk.max_trade_usd,
            watchlist=app.app.pairs,
            timeout_s=policy.decision.oracle_timeout_seconds,
        )
        self.scheduler = Scheduler(
            self.state_store,
            self.risk_engine,
            self.decision_engine,
            self.executor,
            portfolio_manager=self.portfolio_manager,
            trade_log=self.trade_log,
            recommendation_log=self.recommendation_log,
            events=self.events,
            breakers=CircuitBreakerBoard(
                threshold=policy.circuit_breakers.max_consecutive_errors,
                cooldown_seconds=policy.circuit_breakers.cooldown_seconds,
            ),
            fast_interval_s=app.app.fast_interval_seconds,
            slow_interval_s=app.app.slow_interval_seconds,
            mode=self.mode,
            pairs=app.app.pairs,
            alert_service=self.alert_service,
        )
        self.control = ControlService(
            self.scheduler,
            self.state_store,
            self.exchange,
            self.decision_engine,
            self.trade_log,
            self.recommendation_log,
            alert_service=self.alert_service,
            version=VERSION,
        )
        self.control_server: Optional[ControlServer] = None
        if app.control_api.enabled:
            self.control_server = ControlServer(
                self.control,
                port=app.control_api.port,
                host=app.control_api.host,
                api_key=secrets.control_api_key,
                cors_origin=app.control_api.cors_origin,
            )

        self._shutdown = threading.Event()
        logger.info(f"Initialized TradingLoop in {self.mode} mode")

    def _handle_stop(self, signum, _frame) -> None:
        logger.warning("=" * 80)
        logger.warning(f"SHUTDOWN SIGNAL RECEIVED ({signal.Signals(signum).name}) - stopping after in-flight work")
        logger.warning("=" * 80)
        self._shutdown.set()

    def request_shutdown(self) -> None:
        self._shutdown.set()

    def check(self) -> List[str]:
        """Connectivity and credential checks. Returns a list of problems (empty when healthy)."""
        problems: List[str] = []

        if not self.exchange.ping():
            problems.append("Exchange ping failed")
        else:
            try:
                server_ms = self.exchange.get_server_time()
                drift_ms = abs(server_ms - time.time() * 1000)
                logger.info(f"Exchange clock drift: {drift_ms:.0f}ms")
                if drift_ms > MAX_CLOCK_DRIFT_MS:
                    problems.append(f"Clock drift {drift_ms:.0f}ms exceeds {MAX_CLOCK_DRIFT_MS:.0f}ms")
            except (ExchangeError, KeyError, ValueError) as e:
                problems.append(f"Exchange server time unavailable: {e}")

        if self.mode != "PAPER":
            try:
                balances = self.exchange.get_account_balances()
                logger.info(f"Account reachable: {len(balances)} non-zero balance(s)")
            except ExchangeError as e:
                problems.append(f"Account check failed: {e}")

        provider, _ = split_model_spec(self.config.app.model.spec)
        if provider != "mock" and not self.config.secrets.model_api_key:
            problems.append(f"No API key for model provider {provider}")
        if self.control_server is not None and not self.config.secrets.control_api_key:
            logger.warning("BOT_API_KEY not set; authenticated control routes will be unavailable")

        for problem in problems:
            logger.error(f"CHECK FAILED: {problem}")
        if not problems:
            logger.info("All startup checks passed")
        return problems

    def run_once(self) -> Dict[str, Any]:
        """One fast cycle and one rebalance pass, then return."""
        outcomes = self.scheduler.run_fast_cycle()
        results = self.scheduler.run_slow_cycle()
        summary = {
            "fast": outcomes,
            "rebalance_trades": [r.to_dict() for r in results],
            "state": self.control.get_status(),
        }
        logger.info(f"Single run complete: {len(outcomes)} symbol(s), {len(results)} rebalance trade(s)")
        return summary

    def run_forever(self) -> None:
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

        self.metrics.start()
        if self.control_server is not None:
            self.control_server.start()

        if self.state_store.get("emergency_stop", False):
            # Observation stays up for the operator; the gate blocks trades regardless
            logger.warning("Emergency stop flag is set from a previous run - scheduler not started")
            try:
                while not self._shutdown.wait(1.0):
                    pass
            finally:
                self.close()
            return

        try:
            self.scheduler.run_forever(self._shutdown)
        finally:
            self.close()

    def close(self) -> None:
        self.scheduler.stop(timeout=30)
        if self.control_server is not None:
            self.control_server.stop()
        if self.instance_lock is not None:
            self.instance_lock.release()
        logger.info("spot-autopilot stopped")


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="spot-autopilot trading loop")
    parser.add_argument("--once", action="store_true", help="Run one fast and one rebalance cycle, then exit")
    parser.add_argument("--check", action="store_true", help="Validate config and connectivity, then exit")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    args = parser.parse_args(argv)

    try:
        loop = TradingLoop(config_dir=args.config_dir, acquire_lock=not args.check)
    except ConfigurationError as e:
        if not logging.getLogger().handlers:
            logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
        logger.critical(f"Startup aborted: {e}")
        return 2

    if args.check:
        return 1 if loop.check() else 0

    if args.once:
        try:
            loop.run_once()
        finally:
            loop.close()
        return 0

    loop.run_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
