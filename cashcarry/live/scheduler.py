"""
Strategy scheduler.

Cooperative poll loop: every tick, each active strategy whose scan interval
has elapsed runs one cycle:

    scan -> exits (rate below exit threshold) -> rotation (slots full and a
    materially better candidate) -> audit -> oracle consult -> entries

Cycles run one at a time, so hedge operations on the shared account never
interleave. A failing cycle is logged and the loop carries on; last_run is
stamped either way.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from cashcarry.config.config import SchedulerConfig, StrategyConfig
from cashcarry.constants import SWAP_SUFFIX
from cashcarry.data.okx_client import REQUEST_ERRORS
from cashcarry.domain.models import (
    HedgeOutcome,
    HedgeResult,
    InstType,
    Position,
    StrategyState,
    TickerSnapshot,
    ZERO,
)
from cashcarry.domain.protocols import EventRecorder, _noop_event_recorder
from cashcarry.monitoring.logger import get_logger
from cashcarry.utils.kill_switch import KillSwitch, KillSwitchReason

logger = get_logger(__name__)

HUNDRED = Decimal("100")


@dataclass
class CycleReport:
    strategy_id: str
    candidates: List[str] = field(default_factory=list)
    held: List[str] = field(default_factory=list)
    exits: List[HedgeResult] = field(default_factory=list)
    entries: List[HedgeResult] = field(default_factory=list)
    audits: int = 0
    oracle_action: Optional[str] = None
    halted: bool = False
    notes: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "strategy_id": self.strategy_id,
            "candidates": self.candidates,
            "held": self.held,
            "exits": [r.to_dict() for r in self.exits],
            "entries": [r.to_dict() for r in self.entries],
            "audits": self.audits,
            "oracle_action": self.oracle_action,
            "halted": self.halted,
            "notes": self.notes,
        }


class StrategyScheduler:

    def __init__(
        self,
        client,
        scanner,
        engine,
        auditor,
        oracle,
        strategies: List[StrategyConfig],
        config: SchedulerConfig,
        kill_switch: KillSwitch,
        *,
        quote_ccy: str = "USDT",
        dry_run: bool = False,
        recorder: EventRecorder = _noop_event_recorder,
    ):
        self.client = client
        self.scanner = scanner
        self.engine = engine
        self.auditor = auditor
        self.oracle = oracle
        self.strategies = strategies
        self.config = config
        self.kill_switch = kill_switch
        self.quote_ccy = quote_ccy
        self.dry_run = dry_run
        self.recorder = recorder
        self.states: Dict[str, StrategyState] = {s.id: StrategyState(s.id) for s in strategies}
        self.last_tick: Optional[datetime] = None
        self._halt_logged = False

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        logger.info(
            "Scheduler started",
            tick_seconds=self.config.tick_seconds,
            strategies=[s.id for s in self.strategies if s.active],
            dry_run=self.dry_run,
        )
        while not stop_event.is_set():
            await self.tick(datetime.now(timezone.utc))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.config.tick_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Scheduler stopped")

    def is_due(self, strategy: StrategyConfig, now: datetime) -> bool:
        state = self.states.setdefault(strategy.id, StrategyState(strategy.id))
        if state.last_run is None:
            return True
        return (now - state.last_run).total_seconds() >= strategy.params.scan_interval_seconds

    async def tick(self, now: datetime) -> None:
        self.last_tick = now
        if self.kill_switch.is_active():
            if not self._halt_logged:
                logger.critical("Kill switch active, strategy cycles suspended", **self.kill_switch.get_status())
                self._halt_logged = True
            return
        self._halt_logged = False

        for strategy in self.strategies:
            if not strategy.active or not self.is_due(strategy, now):
                continue
            state = self.states[strategy.id]
            try:
                report = await self.run_cycle(strategy)
                state.last_error = None
                self.recorder("STRATEGY_CYCLE", strategy.id, report.to_dict())
            except asyncio.CancelledError:
                raise
            except Exception as e:
                state.last_error = f"{type(e).__name__}: {e}"
                logger.error(
                    "Strategy cycle failed (will retry next interval)",
                    strategy=strategy.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                state.last_run = now
                state.cycles += 1
            if self.kill_switch.is_active():
                break

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, strategy: StrategyConfig) -> CycleReport:
        params = strategy.params
        report = CycleReport(strategy.id)
        log = logger.bind(strategy=strategy.id)

        candidates = await self.scanner.scan(params.min_volume_24h, params.min_funding_rate, quote_ccy=self.quote_ccy)
        report.candidates = [c.inst_id for c in candidates]

        held = await self._held_hedges()
        rates = await self._held_rates(held, candidates)
        report.held = list(held)
        log.info("Cycle start", candidates=len(candidates), held=len(held), max_positions=params.max_positions)

        # Exits: funding no longer pays
        for inst_id in list(held):
            rate = rates.get(inst_id)
            if rate is not None and rate < params.exit_threshold:
                log.info("Exit threshold hit", inst_id=inst_id, rate=str(rate), threshold=str(params.exit_threshold))
                await self._exit(inst_id, held, report)
                if report.halted:
                    return report

        # Rotation: slots full and a materially better candidate exists
        unheld = [c for c in candidates if c.inst_id not in held]
        if len(held) >= params.max_positions and unheld and held:
            weakest = min(held, key=lambda i: rates.get(i, ZERO))
            best = unheld[0]
            weakest_rate = rates.get(weakest, ZERO)
            if best.funding_rate - weakest_rate > params.rotation_threshold:
                log.info(
                    "Rotating out weakest hedge",
                    weakest=weakest,
                    weakest_rate=str(weakest_rate),
                    best=best.inst_id,
                    best_rate=str(best.funding_rate),
                )
                await self._exit(weakest, held, report)
                if report.halted:
                    return report

        if self.config.audit_each_cycle and not self.dry_run:
            for inst_id in held:
                try:
                    await self.auditor.audit(inst_id)
                    report.audits += 1
                except REQUEST_ERRORS as e:
                    log.warning("Audit failed", inst_id=inst_id, error=str(e))

        free_slots = params.max_positions - len(held)
        queue = [c for c in candidates if c.inst_id not in held]
        if free_slots <= 0 or not queue:
            report.notes.append("no free slots" if free_slots <= 0 else "no candidates")
            return report

        if params.use_oracle:
            recommendation = await self.oracle.analyze(candidates, strategy.name)
            report.oracle_action = recommendation.recommended_action.value
            self.recorder("ORACLE_DECISION", strategy.id, {
                "action": recommendation.recommended_action.value,
                "reasoning": recommendation.reasoning,
                "risk_score": recommendation.risk_score,
                "suggested_pairs": recommendation.suggested_pairs,
            })
            if not recommendation.recommended_action.allows_entry:
                report.notes.append(f"oracle {recommendation.recommended_action.value}: {recommendation.reasoning}")
                log.info("Entries skipped by oracle", action=recommendation.recommended_action.value)
                return report
            if recommendation.suggested_pairs:
                by_id = {c.inst_id: c for c in queue}
                queue = [by_id[p] for p in recommendation.suggested_pairs if p in by_id]

        await self._enter(strategy, queue[:free_slots], report)
        return report

    async def _held_hedges(self) -> Dict[str, Position]:
        positions = await self.client.get_positions(InstType.SWAP)
        suffix = f"-{self.quote_ccy}{SWAP_SUFFIX}"
        return {p.inst_id: p for p in positions if p.is_short and p.inst_id.endswith(suffix)}

    async def _held_rates(self, held: Dict[str, Position], candidates: List[TickerSnapshot]) -> Dict[str, Decimal]:
        rates = {c.inst_id: c.funding_rate for c in candidates if c.funding_rate is not None}
        missing = [inst_id for inst_id in held if inst_id not in rates]

        async def fetch(inst_id: str):
            try:
                return inst_id, await self.client.get_funding_rate(inst_id)
            except REQUEST_ERRORS as e:
                logger.warning("Held funding rate unavailable", inst_id=inst_id, error=str(e))
                return inst_id, None

        for inst_id, rate in await asyncio.gather(*(fetch(i) for i in missing)):
            if rate is not None:
                rates[inst_id] = rate
        return rates

    async def _exit(self, inst_id: str, held: Dict[str, Position], report: CycleReport) -> None:
        """Exit one hedge; its slot is freed only when the exit succeeded."""
        if self.dry_run:
            report.notes.append(f"dry run: would exit {inst_id}")
            held.pop(inst_id)
            return
        result = await self.engine.exit_hedge(inst_id, held[inst_id].contracts)
        report.exits.append(result)
        if self._check(result, report) and result.success:
            held.pop(inst_id)

    async def _enter(self, strategy: StrategyConfig, queue: List[TickerSnapshot], report: CycleReport) -> None:
        if not queue:
            return
        balance = await self.client.get_balance()
        per_position = balance.total_equity * strategy.params.allocation_pct / HUNDRED
        available = balance.available(self.quote_ccy)

        for candidate in queue:
            budget = min(per_position, available)
            if budget <= 0:
                report.notes.append("no available quote balance")
                break
            if self.dry_run:
                report.notes.append(f"dry run: would enter {candidate.inst_id} with {budget:.2f}")
                continue
            result = await self.engine.enter_hedge(candidate.inst_id, budget)
            report.entries.append(result)
            if not self._check(result, report):
                return
            if result.success:
                available -= budget

    def _check(self, result: HedgeResult, report: CycleReport) -> bool:
        if result.outcome == HedgeOutcome.UNHEDGED:
            self.kill_switch.activate(KillSwitchReason.UNHEDGED_POSITION, f"{result.inst_id}: {result.message}")
            report.halted = True
            return False
        return True

    def get_status(self) -> dict:
        return {
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "dry_run": self.dry_run,
            "kill_switch": self.kill_switch.get_status(),
            "strategies": {
                sid: {
                    "last_run": s.last_run.isoformat() if s.last_run else None,
                    "cycles": s.cycles,
                    "last_error": s.last_error,
                }
                for sid, s in self.states.items()
            },
        }
