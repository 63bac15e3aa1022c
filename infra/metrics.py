"""Prometheus-backed metrics for the decision loop, fed from the event bus."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

from infra.events import EventBus

logger = logging.getLogger(__name__)


class MetricsRecorder:
    """
    Expose loop stats via Prometheus.

    Singleton so the exporter is started at most once per process. Metrics
    live in a dedicated registry so re-creating the recorder in tests never
    collides with the global default registry.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return
        self.__class__._initialized = True

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.registry = CollectorRegistry()

        self._cycle_counter = Counter(
            "autopilot_cycle_total",
            "Scheduler cycles by kind and status",
            labelnames=("kind", "status"),
            registry=self.registry,
        )
        self._cycle_summary = Summary(
            "autopilot_cycle_duration_seconds",
            "Duration of scheduler cycles",
            labelnames=("kind",),
            registry=self.registry,
        )
        self._decisions_counter = Counter(
            "autopilot_decisions_total",
            "Decisions produced by action",
            labelnames=("action",),
            registry=self.registry,
        )
        self._oracle_latency = Summary(
            "autopilot_oracle_latency_seconds",
            "Reasoning oracle round-trip latency",
            registry=self.registry,
        )
        self._trades_counter = Counter(
            "autopilot_trades_total",
            "Trade attempts by side and outcome",
            labelnames=("side", "outcome"),
            registry=self.registry,
        )
        self._gate_rejections_counter = Counter(
            "autopilot_gate_rejections_total",
            "Safety gate rejections by gate",
            labelnames=("gate",),
            registry=self.registry,
        )
        self._errors_counter = Counter(
            "autopilot_symbol_errors_total",
            "Per-symbol evaluation failures",
            labelnames=("symbol",),
            registry=self.registry,
        )
        self._breaker_trips_counter = Counter(
            "autopilot_circuit_breaker_trips_total",
            "Circuit breaker trips by symbol",
            labelnames=("symbol",),
            registry=self.registry,
        )
        self._recommendations_counter = Counter(
            "autopilot_recommendations_total",
            "Rebalance recommendations by outcome",
            labelnames=("outcome",),
            registry=self.registry,
        )
        self._daily_pnl_gauge = Gauge(
            "autopilot_daily_pnl_usd",
            "Realized P&L for the current UTC day",
            registry=self.registry,
        )
        self._positions_gauge = Gauge(
            "autopilot_open_positions",
            "Number of tracked open positions",
            registry=self.registry,
        )
        self._running_gauge = Gauge(
            "autopilot_scheduler_running",
            "1 while the scheduler is running",
            registry=self.registry,
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        cls._instance = None
        cls._initialized = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port, registry=self.registry)
        except OSError as exc:
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def attach(self, bus: EventBus) -> None:
        bus.subscribe("*", self.handle_event)

    def handle_event(self, topic: str, payload: Dict[str, Any]) -> None:
        if topic == "decision":
            self._decisions_counter.labels(action=payload.get("action", "HOLD")).inc()
            latency_ms = payload.get("latency_ms")
            if latency_ms is not None:
                self._oracle_latency.observe(float(latency_ms) / 1000.0)
        elif topic == "trade":
            outcome = "executed" if payload.get("executed") else "failed"
            self._trades_counter.labels(side=payload.get("action", "?"), outcome=outcome).inc()
        elif topic == "skip":
            self._gate_rejections_counter.labels(gate=payload.get("gate", "unknown")).inc()
        elif topic == "error":
            symbol = payload.get("symbol", "?")
            self._errors_counter.labels(symbol=symbol).inc()
            if payload.get("tripped"):
                self._breaker_trips_counter.labels(symbol=symbol).inc()
        elif topic == "recommendation":
            outcome = "executed" if payload.get("executed") else "rejected"
            self._recommendations_counter.labels(outcome=outcome).inc()
        elif topic == "cycle":
            kind = payload.get("kind", "fast")
            self._cycle_counter.labels(kind=kind, status=payload.get("status", "ok")).inc()
            duration = payload.get("duration_seconds")
            if duration is not None:
                self._cycle_summary.labels(kind=kind).observe(float(duration))
            if payload.get("daily_pnl") is not None:
                self._daily_pnl_gauge.set(float(payload["daily_pnl"]))
            if payload.get("open_positions") is not None:
                self._positions_gauge.set(int(payload["open_positions"]))
        elif topic == "loop.start":
            self._running_gauge.set(1)
        elif topic == "loop.stop":
            self._running_gauge.set(0)

    def sample(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Current value of a metric sample; used by tests and the status payload."""
        return self.registry.get_sample_value(name, labels or {})
