from datetime import datetime

from typer.testing import CliRunner

from insulctrl.device import ApplianceDevice
from insulctrl.exception import NotConnectedError
from insulctrl.insulctrlctl import app

runner = CliRunner()


def test_encode_json_frames():
    result = runner.invoke(app, ["encode", "set-alarm", "07:05"])
    assert result.exit_code == 0, result.output
    assert result.output.strip() == '{"cmd":"set_alarm","h":7,"m":5}'

    result = runner.invoke(app, ["encode", "sync-time", "1700000000"])
    assert result.output.strip() == '{"cmd":"sync_time","ts":1700000000}'


def test_encode_compact_toggle_resolves_against_state():
    result = runner.invoke(app, ["--profile", "compact", "encode", "toggle-relay", "--relay-on"])
    assert result.exit_code == 0, result.output
    assert result.output.strip() == "R:0"

    result = runner.invoke(app, ["--profile", "compact", "encode", "toggle-arm"])
    assert result.output.strip() == "M:1"


def test_profile_from_environment():
    result = runner.invoke(app, ["encode", "set-alarm", "6:30"], env={"INSULCTRL_PROFILE": "compact"})
    assert result.exit_code == 0, result.output
    assert result.output.strip() == "A:06:30"


def test_encode_rejects_bad_alarm():
    result = runner.invoke(app, ["encode", "set-alarm", "25:00"])
    assert result.exit_code != 0


def test_decode_reports_merge_and_failure():
    result = runner.invoke(app, ["decode", '{"relay":true}'])
    assert result.exit_code == 0, result.output
    assert "merge" in result.output

    result = runner.invoke(app, ["--profile", "compact", "decode", "S:1,0,07,30", "S:1,0"])
    assert result.exit_code == 1
    assert "replace" in result.output


def test_countdown_command():
    ts = int(datetime(2026, 1, 15, 7, 29, 58).timestamp())
    result = runner.invoke(app, ["countdown", str(ts), "07:30"])
    assert result.exit_code == 0, result.output
    assert result.output.strip() == "00:00:02"


def test_profiles_lists_both():
    result = runner.invoke(app, ["profiles"])
    assert result.exit_code == 0
    assert "json" in result.output and "compact" in result.output


def test_toggle_relay_against_simulator():
    result = runner.invoke(app, ["toggle-relay", "sim", "--settle", "0", "--listen", "0"])
    assert result.exit_code == 0, result.output
    assert "ON" in result.output
    assert "OFF" not in result.output


def test_simulate_reports_command_failure_without_traceback(monkeypatch):
    async def refuse(self):
        raise NotConnectedError("sim is idle")

    monkeypatch.setattr(ApplianceDevice, "toggle_arm", refuse)
    result = runner.invoke(app, ["simulate", "--seconds", "1"])
    assert result.exit_code == 1
    assert "sim is idle" in result.output
    assert not isinstance(result.exception, NotConnectedError)


def test_countdown_row_only_while_armed():
    idle = runner.invoke(app, ["toggle-relay", "sim", "--settle", "0", "--listen", "0"])
    assert idle.exit_code == 0, idle.output
    assert "--:--:--" in idle.output

    armed = runner.invoke(app, ["toggle-arm", "sim", "--settle", "0", "--listen", "0"])
    assert armed.exit_code == 0, armed.output
    assert "ARMED" in armed.output
    assert "--:--:--" not in armed.output
