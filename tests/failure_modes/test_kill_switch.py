"""
Test: Kill switch activation, latching and persistence.
"""
from unittest.mock import patch

import pytest

from cashcarry.utils.kill_switch import KillSwitch, KillSwitchReason, kill_switch_state_path


@pytest.fixture(autouse=True)
def _no_alerts():
    with patch("cashcarry.utils.kill_switch.send_alert_sync") as alert:
        yield alert


def test_kill_switch_activation(tmp_path, _no_alerts):
    """Activation latches and alerts once."""
    ks = KillSwitch(tmp_path / "ks.json")

    assert ks.is_active() is False
    assert ks.latched is False

    ks.activate(KillSwitchReason.UNHEDGED_POSITION, "ABC-USDT-SWAP: rollback failed")
    ks.activate(KillSwitchReason.MANUAL, "second trigger ignored")

    assert ks.is_active() is True
    assert ks.latched is True
    assert ks.reason == KillSwitchReason.UNHEDGED_POSITION
    _no_alerts.assert_called_once()
    assert _no_alerts.call_args.kwargs["urgent"] is True


def test_kill_switch_requires_ack(tmp_path):
    """Test that kill switch requires manual acknowledgment."""
    ks = KillSwitch(tmp_path / "ks.json")
    assert ks.acknowledge() is False

    ks.activate(KillSwitchReason.MANUAL, "operator")
    assert ks.acknowledge() is True

    assert ks.is_active() is False
    assert ks.latched is False
    assert ks.get_status()["reason"] is None


def test_state_survives_restart(tmp_path):
    path = tmp_path / "ks.json"
    KillSwitch(path).activate(KillSwitchReason.HEDGE_INTEGRITY, "deviation 40%")

    restarted = KillSwitch(path)

    assert restarted.is_active()
    assert restarted.reason == KillSwitchReason.HEDGE_INTEGRITY
    assert restarted.detail == "deviation 40%"
    assert restarted.activated_at is not None

    restarted.acknowledge()
    assert KillSwitch(path).is_active() is False


def test_corrupt_state_file_defaults_to_active(tmp_path):
    path = tmp_path / "ks.json"
    path.write_text("{not json")

    ks = KillSwitch(path)

    assert ks.is_active()
    assert ks.reason == KillSwitchReason.DATA_FAILURE


def test_state_path_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("KILL_SWITCH_STATE_PATH", str(tmp_path / "custom.json"))
    assert kill_switch_state_path() == tmp_path / "custom.json"

    monkeypatch.delenv("KILL_SWITCH_STATE_PATH")
    assert kill_switch_state_path("state") == kill_switch_state_path("state")
    assert str(kill_switch_state_path("state")).endswith("kill_switch_state.json")
