"""Prometheus instrumentation for the execution, decision, job and alert paths."""
import errno
import logging
from pathlib import Path
from typing import Any, Mapping, Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from config.utils import as_int


logger = logging.getLogger(__name__)

_server_port: Optional[int] = None


class MetricsCollector:
    def __init__(self):
        self.trades_opened = Counter('fx_trades_opened_total', 'Trades opened', ['pair', 'direction'])
        self.trades_rejected = Counter('fx_trades_rejected_total', 'Trade attempts that did not open', ['reason'])
        self.trades_closed = Counter('fx_trades_closed_total', 'Trades closed', ['reason'])
        self.active_trades = Gauge('fx_active_trades', 'Currently open trades')
        self.daily_risk = Gauge('fx_daily_risk_fraction', 'Risk fraction committed today')
        self.pnl_pips = Histogram(
            'fx_trade_pnl_pips', 'Realized PnL per closed trade, in pips',
            buckets=(-200, -100, -50, -20, -10, 0, 10, 20, 50, 100, 200),
        )
        self.stop_adjustments = Counter('fx_stop_adjustments_total', 'Stop-loss adjustments', ['kind'])
        self.management_errors = Counter('fx_trade_management_errors_total', 'Per-trade tick failures')

        # Broker path
        self.broker_latency = Histogram(
            'fx_broker_call_latency_seconds', 'Broker router call latency', ['operation']
        )
        self.broker_failures = Counter('fx_broker_failures_total', 'Failed broker calls', ['operation'])
        self.slippage_pips = Histogram(
            'fx_execution_slippage_pips', 'Absolute slippage between requested and filled price',
            ['status'], buckets=(0.1, 0.25, 0.5, 1, 2, 3, 5, 10),
        )

        self.decisions = Counter('fx_signal_decisions_total', 'Signal validity decisions', ['state'])
        self.kill_switch_triggers = Counter('fx_kill_switch_triggers_total', 'Kill switch engagements', ['reason'])

        # Job queue
        self.jobs = Counter('fx_jobs_total', 'Job outcomes', ['type', 'outcome'])
        self.job_queue_depth = Gauge('fx_job_queue_depth', 'Job queue depth', ['state'])

        # Alerts
        self.alerts_dispatched = Counter('fx_alerts_dispatched_total', 'Alert channel dispatches', ['channel', 'outcome'])
        self.alerts_deduped = Counter('fx_alerts_deduped_total', 'Alerts suppressed by dedupe')

    def record_trade_opened(self, pair: str, direction: str):
        self.trades_opened.labels(pair=pair, direction=direction).inc()

    def record_trade_rejected(self, reason: str):
        self.trades_rejected.labels(reason=reason).inc()

    def record_trade_closed(self, reason: str, pnl_pips: Optional[float] = None):
        self.trades_closed.labels(reason=reason or 'unknown').inc()
        if pnl_pips is not None:
            self.pnl_pips.observe(pnl_pips)

    def update_book(self, active: int, daily_risk: float):
        self.active_trades.set(active)
        self.daily_risk.set(daily_risk)

    def record_stop_adjustment(self, kind: str):
        self.stop_adjustments.labels(kind=kind).inc()

    def record_management_error(self):
        self.management_errors.inc()

    def record_broker_call(self, operation: str, latency_seconds: float, success: bool):
        self.broker_latency.labels(operation=operation).observe(latency_seconds)
        if not success:
            self.broker_failures.labels(operation=operation).inc()

    def record_slippage(self, slippage_pips: Optional[float], exceeded: bool):
        if slippage_pips is None:
            return
        self.slippage_pips.labels(status='high' if exceeded else 'ok').observe(abs(float(slippage_pips)))

    def record_decision(self, state: str):
        self.decisions.labels(state=state).inc()

    def record_kill_switch(self, reason: str):
        self.kill_switch_triggers.labels(reason=reason).inc()

    def record_job(self, job_type: str, outcome: str):
        self.jobs.labels(type=job_type, outcome=outcome).inc()

    def update_job_queue(self, pending: int, in_flight: int, dead_letter: int):
        self.job_queue_depth.labels(state='pending').set(pending)
        self.job_queue_depth.labels(state='in_flight').set(in_flight)
        self.job_queue_depth.labels(state='dead_letter').set(dead_letter)

    def record_alert(self, channel: str, success: bool):
        self.alerts_dispatched.labels(channel=channel, outcome='ok' if success else 'error').inc()

    def record_alert_deduped(self):
        self.alerts_deduped.inc()



def _record_bound_port(port_file: Any, port: int) -> None:
    if not port_file:
        return
    path = Path(port_file)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(str(port))
    except OSError as exc:
        logger.warning("Could not write metrics port to %s: %s", path, exc)


def start_metrics_server(port: int = 9108, port_scan: int = 0, port_file: Optional[str] = None) -> int:
    """Expose ``/metrics`` on the first free port in ``port..port+port_scan``.

    The exporter is process-wide; later calls return the port already bound.
    """
    global _server_port
    if _server_port is not None:
        return _server_port

    last = port + max(0, int(port_scan))
    for candidate in range(port, last + 1):
        try:
            start_http_server(candidate)
        except OSError as exc:
            if exc.errno != errno.EADDRINUSE:
                raise
            logger.warning("Metrics port %s busy, trying %s", candidate, candidate + 1)
            continue
        _server_port = candidate
        _record_bound_port(port_file, candidate)
        logger.info("Prometheus metrics exporter listening on port %s", candidate)
        return candidate
    raise RuntimeError(f"No free port for the metrics exporter in {port}-{last}")


def start_metrics_from_config(settings: Mapping[str, Any]) -> Optional[int]:
    port = as_int(settings.get('prometheus_port'), 0)
    if port <= 0:
        logger.info("Metrics exporter disabled")
        return None
    return start_metrics_server(
        port,
        port_scan=as_int(settings.get('prometheus_port_scan'), 0, minimum=0),
        port_file=settings.get('metrics_port_file'),
    )


metrics = MetricsCollector()
