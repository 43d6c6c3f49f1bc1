"""
Process entry: build every component from Config and run the scheduler and the
account monitor until SIGINT/SIGTERM.
"""
import asyncio
import os
import signal
import threading
from dataclasses import dataclass
from typing import Optional

from cashcarry.config.config import Config, fail_fast_startup
from cashcarry.data.okx_client import OKXClient
from cashcarry.domain.protocols import EventRecorder, _noop_event_recorder
from cashcarry.exceptions import ConfigurationError
from cashcarry.execution.hedge_engine import HedgeEngine
from cashcarry.execution.instrument_specs import InstrumentRegistry
from cashcarry.live.account_monitor import AccountMonitor
from cashcarry.live.scheduler import StrategyScheduler
from cashcarry.monitoring.alerting import configure_alerts, send_alert
from cashcarry.monitoring.logger import bind_runtime_context, get_logger
from cashcarry.reconciliation.hedge_auditor import HedgeAuditor
from cashcarry.services.market_scanner import MarketScanner
from cashcarry.services.oracle import OracleAdapter
from cashcarry.utils.kill_switch import KillSwitch, kill_switch_state_path

logger = get_logger(__name__)


@dataclass
class Runtime:
    config: Config
    client: OKXClient
    registry: InstrumentRegistry
    scanner: MarketScanner
    engine: HedgeEngine
    auditor: HedgeAuditor
    oracle: OracleAdapter
    kill_switch: KillSwitch
    scheduler: StrategyScheduler
    monitor: AccountMonitor

    async def close(self) -> None:
        await self.client.close()


def _event_recorder(config: Config) -> EventRecorder:
    if not config.storage.enabled:
        return _noop_event_recorder
    from cashcarry.storage.db import init_db
    from cashcarry.storage.repository import record_event

    init_db(config.storage.database_url)
    return record_event


def build_runtime(config: Config, *, client: Optional[OKXClient] = None) -> Runtime:
    """Wire the component graph. Nothing here touches the network."""
    configure_alerts(
        config.monitoring.alert_webhook_url,
        config.monitoring.alert_chat_id,
        config.monitoring.alert_cooldown_seconds,
    )
    recorder = _event_recorder(config)
    client = client or OKXClient(config.exchange)
    registry = InstrumentRegistry(client)
    scanner = MarketScanner(client, config.scanner)
    engine = HedgeEngine(client, registry, config.execution, recorder=recorder, alert=send_alert)
    auditor = HedgeAuditor(client, registry, engine, config.execution, recorder)
    oracle = OracleAdapter(config.oracle)
    kill_switch = KillSwitch(kill_switch_state_path(config.system.state_dir))
    scheduler = StrategyScheduler(
        client,
        scanner,
        engine,
        auditor,
        oracle,
        config.strategies,
        config.scheduler,
        kill_switch,
        quote_ccy=config.scanner.quote_ccy,
        dry_run=config.system.dry_run,
        recorder=recorder,
    )
    monitor = AccountMonitor(client, scanner, config.scheduler.account_refresh_seconds)
    return Runtime(
        config=config,
        client=client,
        registry=registry,
        scanner=scanner,
        engine=engine,
        auditor=auditor,
        oracle=oracle,
        kill_switch=kill_switch,
        scheduler=scheduler,
        monitor=monitor,
    )


def _start_health_server(runtime: Runtime) -> None:
    import uvicorn
    from cashcarry.health import HealthState, create_health_app

    app = create_health_app(HealthState(scheduler=runtime.scheduler, monitor=runtime.monitor))
    port = runtime.config.monitoring.health_port
    host = os.environ.get("HEALTH_HOST", "0.0.0.0")

    def _run_health() -> None:
        uvicorn.run(app, host=host, port=port, log_level="warning")

    t = threading.Thread(target=_run_health, name="worker-health", daemon=True)
    t.start()
    logger.info("Worker health server started", host=host, port=port)


async def run(config: Config, *, with_health: bool = False) -> None:
    fail_fast_startup(config)
    bind_runtime_context(
        environment=config.environment,
        simulated=config.exchange.simulated,
        dry_run=config.system.dry_run,
    )
    runtime = build_runtime(config)
    try:
        if not config.system.dry_run and not await runtime.client.check_account_mode():
            raise ConfigurationError("Account mode cannot hold spot and short swap together")
        latency_ms = await runtime.client.get_latency_ms()
        logger.info(
            "Starting cash-and-carry worker",
            environment=config.environment,
            dry_run=config.system.dry_run,
            simulated=config.exchange.simulated,
            strategies=[s.id for s in config.strategies if s.active],
            latency_ms=round(latency_ms, 1),
        )
        runtime.scheduler.recorder("SYSTEM_STARTUP", "system", {
            "pid": os.getpid(),
            "dry_run": config.system.dry_run,
            "environment": config.environment,
        })

        if with_health:
            _start_health_server(runtime)

        stop_event = asyncio.Event()

        def signal_handler():
            logger.info("Shutdown signal received")
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        await asyncio.gather(
            runtime.scheduler.run_forever(stop_event),
            runtime.monitor.run(stop_event),
        )
    finally:
        await runtime.close()
        logger.info("Shutdown complete")
