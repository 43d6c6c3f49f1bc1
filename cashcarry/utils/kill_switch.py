"""
Kill switch with latching emergency stop.

Once triggered (an unhedged position, or an operator command) the scheduler
opens no new hedges until an operator acknowledges it. State persists across
restarts.
"""
import json
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from cashcarry.monitoring.alerting import send_alert_sync
from cashcarry.monitoring.logger import get_logger

logger = get_logger(__name__)

_DEFAULT_STATE_FILE = Path("data") / "kill_switch_state.json"


def kill_switch_state_path(state_dir: Optional[str] = None) -> Path:
    """KILL_SWITCH_STATE_PATH env, else <state_dir>/kill_switch_state.json."""
    env_path = os.environ.get("KILL_SWITCH_STATE_PATH")
    if env_path:
        return Path(env_path)
    if state_dir:
        return Path(state_dir) / "kill_switch_state.json"
    return _DEFAULT_STATE_FILE


class KillSwitchReason(str, Enum):
    MANUAL = "manual"
    UNHEDGED_POSITION = "unhedged_position"
    HEDGE_INTEGRITY = "hedge_integrity"
    DATA_FAILURE = "data_failure"


@dataclass
class _LatchState:
    active: bool = False
    latched: bool = False
    reason: Optional[KillSwitchReason] = None
    detail: Optional[str] = None
    activated_at: Optional[datetime] = None

    def to_json(self) -> dict:
        data = asdict(self)
        data["reason"] = self.reason.value if self.reason else None
        data["activated_at"] = self.activated_at.isoformat() if self.activated_at else None
        return data

    @classmethod
    def from_json(cls, data: dict) -> "_LatchState":
        try:
            reason = KillSwitchReason(data["reason"]) if data.get("reason") else None
        except ValueError:
            reason = None
        activated_at = data.get("activated_at")
        return cls(
            active=bool(data.get("active", False)),
            latched=bool(data.get("latched", False)),
            reason=reason,
            detail=data.get("detail"),
            activated_at=datetime.fromisoformat(activated_at) if activated_at else None,
        )


class KillSwitch:
    """
    Latched emergency kill switch.

    Once activated, requires manual acknowledgment to resume trading.
    """

    def __init__(self, state_path: Optional[Path] = None):
        self.state_path = state_path or kill_switch_state_path()
        self._state = self._load_state()

    @property
    def active(self) -> bool:
        return self._state.active

    @property
    def latched(self) -> bool:
        return self._state.latched

    @property
    def reason(self) -> Optional[KillSwitchReason]:
        return self._state.reason

    @property
    def detail(self) -> Optional[str]:
        return self._state.detail

    @property
    def activated_at(self) -> Optional[datetime]:
        return self._state.activated_at

    def activate(self, reason: KillSwitchReason, detail: str = "") -> None:
        """Latch the switch. A second activation keeps the first reason."""
        if self._state.active:
            return
        self._state = _LatchState(
            active=True,
            latched=True,
            reason=reason,
            detail=detail,
            activated_at=datetime.now(timezone.utc),
        )
        self._save_state()

        logger.critical("🛑 KILL SWITCH ACTIVATED", reason=reason.value, detail=detail)
        send_alert_sync("KILL_SWITCH", f"Hedging halted ({reason.value}): {detail}", urgent=True)

    def acknowledge(self) -> bool:
        """Clear a latched switch. Returns False when nothing was latched."""
        if not self._state.latched:
            logger.warning("Kill switch not latched, nothing to acknowledge")
            return False

        logger.info(
            "Kill switch acknowledged",
            reason=self._state.reason.value if self._state.reason else "unknown",
            activated_at=self._state.activated_at.isoformat() if self._state.activated_at else "unknown",
        )
        self._state = _LatchState()
        self._save_state()
        return True

    def is_active(self) -> bool:
        return self._state.active

    def get_status(self) -> dict:
        status = self._state.to_json()
        status["duration_seconds"] = (
            (datetime.now(timezone.utc) - self._state.activated_at).total_seconds()
            if self._state.activated_at else 0
        )
        return status

    def _save_state(self) -> None:
        """Persist state. No try/except: unpersisted state could resume trading after restart."""
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.state_path, "w") as f:
            json.dump(self._state.to_json(), f)

    def _load_state(self) -> _LatchState:
        """Load persisted state. A corrupt file defaults to ACTIVE."""
        if not self.state_path.exists():
            return _LatchState()
        try:
            with open(self.state_path, "r") as f:
                state = _LatchState.from_json(json.load(f))
        except (json.JSONDecodeError, ValueError, AttributeError) as e:
            logger.critical("Kill switch state file corrupt, defaulting to ACTIVE", error=str(e))
            return _LatchState(
                active=True,
                latched=True,
                reason=KillSwitchReason.DATA_FAILURE,
                detail=f"corrupt state file: {self.state_path}",
                activated_at=datetime.now(timezone.utc),
            )

        if state.active:
            logger.warning(
                "Kill switch was active on startup",
                activated_at=state.activated_at.isoformat() if state.activated_at else None,
                reason=state.reason.value if state.reason else "unknown",
            )
        return state
