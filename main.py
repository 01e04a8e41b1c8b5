import asyncio
import logging
from typing import Any, Dict, Optional

from api.alerts import AlertBus
from api.metrics import start_metrics_from_config
from config import config, get_config_section
from monitoring.async_utils import run_until_stopped
from monitoring.audit import AuditLogger
from monitoring.logging_utils import setup_logging
from orchestration.job_queue import JobQueue
from orchestration.services import ExecutionSupervisor
from risk.risk_budget import RiskBudget
from strategy.execution import ExecutionEngine
from strategy.market_rules import MarketRules
from strategy.signal_validity import KillSwitch, SignalValidityEngine
from strategy.simulators.paper import PaperBrokerRouter


logger = logging.getLogger(__name__)


class TradingRuntime:
    """Build the decision, execution and side-effect stack from configuration."""

    def __init__(self, config_obj: Optional[Any] = None, broker_router=None, price_source=None):
        self.config = config_obj if config_obj is not None else config
        self.execution_cfg = get_config_section(self.config, 'execution')
        self.market_rules_cfg = get_config_section(self.config, 'market_rules')
        self.risk_cfg = get_config_section(self.config, 'risk')
        self.decision_cfg = get_config_section(self.config, 'decision')
        self.jobs_cfg = get_config_section(self.config, 'jobs')
        self.alerts_cfg = get_config_section(self.config, 'alerts')
        self.monitoring_cfg = get_config_section(self.config, 'monitoring')

        self.audit_logger = AuditLogger(self.monitoring_cfg.get('audit_log'))
        self.market_rules = MarketRules(self.market_rules_cfg)
        self.risk_budget = RiskBudget({**self.execution_cfg, **self.risk_cfg})

        # No live bridge configured: trade against the in-process paper book.
        self.paper_broker: Optional[PaperBrokerRouter] = None
        if broker_router is None:
            self.paper_broker = PaperBrokerRouter(self.execution_cfg.get('default_broker') or 'paper')
            broker_router = self.paper_broker
        if price_source is None:
            price_source = self.paper_broker or broker_router

        self.engine = ExecutionEngine(
            self.execution_cfg,
            broker_router=broker_router,
            price_source=price_source,
            market_rules=self.market_rules,
            risk_budget=self.risk_budget,
            audit_logger=self.audit_logger,
        )
        self.kill_switch = KillSwitch()
        self.validity_engine = SignalValidityEngine(
            self.decision_cfg, kill_switch=self.kill_switch, audit_logger=self.audit_logger
        )
        self.job_queue = JobQueue.from_config(self.jobs_cfg, audit_logger=self.audit_logger)
        self.alert_bus = AlertBus(self.alerts_cfg)
        self._stopped = asyncio.Event()
        self.supervisor = ExecutionSupervisor(
            self.engine,
            self.validity_engine,
            self.job_queue,
            self.alert_bus,
            risk_budget=self.risk_budget,
            tick_interval_s=float(self.execution_cfg.get('tick_interval_s', 5)),
            pnl_sink=self.paper_broker.record_pnl if self.paper_broker else None,
        )
        self.running = False

    async def handle_signal(self, payload: Dict[str, Any]):
        return await self.supervisor.handle_signal(payload)

    async def start(self):
        self.running = True
        start_metrics_from_config(self.monitoring_cfg)

        await self.supervisor.start()
        logger.info(
            "Trading runtime started (alert channels: %s)",
            ", ".join(self.alert_bus.available_channels()),
        )

        async def _cleanup():
            await self.stop()

        await run_until_stopped(self._stopped, self.supervisor.background_tasks, cleanup=_cleanup)

    async def stop(self):
        if not self.running:
            return
        self.running = False
        self._stopped.set()
        await self.supervisor.stop()
        logger.info("Trading runtime stopped")


async def main():
    runtime = TradingRuntime(config)
    try:
        await runtime.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await runtime.stop()

if __name__ == "__main__":
    monitoring_cfg = get_config_section(config, "monitoring")
    setup_logging(monitoring_cfg.get("log_level"), log_file=monitoring_cfg.get("log_file"))
    asyncio.run(main())
