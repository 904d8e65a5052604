# insulctrl/protocol.py
"""Wire profiles for commands and state notifications.

Two incompatible profiles share one logical command set:

* ``json``    – self-describing JSON objects, partial state merges,
                device clock carried on the wire.
* ``compact`` – short ``X:...`` tokens, full state frames, no device
                clock (stamped locally on receipt).

Client and appliance must be deployed with the same profile; there is no
runtime negotiation.
"""

from __future__ import annotations

import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional

from .commands import Command, SetAlarm, SyncTime, ToggleArm, ToggleRelay
from .const import LOG_CAPACITY_COMPACT, LOG_CAPACITY_JSON
from .exception import FrameDecodeError
from .state import DeviceSnapshot, Mode, StateUpdate

__all__ = [
    "WireCodec", "JsonCodec", "CompactCodec",
    "PROFILES", "get_codec",
    "MODE_CODES", "STATE_FIELDS",
]

# Snapshot attributes that travel in state notifications
STATE_FIELDS = ("mode", "relay", "alarm_hour", "alarm_minute", "device_clock")


def _text(payload: bytes | bytearray | str) -> str:
    if isinstance(payload, str):
        return payload
    try:
        return bytes(payload).decode("utf-8")
    except UnicodeDecodeError as ex:
        raise FrameDecodeError(f"Invalid UTF-8 payload: {bytes(payload).hex(' ')}") from ex


def _check_range(name: str, value: Any, low: int, high: int) -> int:
    # bool is an int subclass; never accept it as a number
    if isinstance(value, bool) or not isinstance(value, int):
        raise FrameDecodeError(f"{name} must be an integer, got {value!r}")
    if not low <= value <= high:
        raise FrameDecodeError(f"{name} out of range: {value}")
    return value


class WireCodec(ABC):
    """Strategy interface implemented by each wire profile."""

    name: str
    log_capacity: int

    # Client side

    @abstractmethod
    def encode(self, command: Command, snapshot: DeviceSnapshot) -> bytes:
        """Serialize ``command``; ``snapshot`` resolves toggles if needed."""

    @abstractmethod
    def decode(self, payload: bytes | bytearray | str) -> StateUpdate:
        """Parse a notification frame or raise :class:`FrameDecodeError`."""

    # Appliance side (simulator)

    @abstractmethod
    def decode_command(self, payload: bytes | bytearray | str) -> Command:
        """Parse a command frame or raise :class:`FrameDecodeError`."""

    @abstractmethod
    def encode_state(
        self, snapshot: DeviceSnapshot, fields: Optional[Iterable[str]] = None
    ) -> bytes:
        """Serialize a state notification."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name}>"


# ────────────────────────────────────────────────────────────────
# Verbose JSON profile
# ────────────────────────────────────────────────────────────────

_JSON_KEYS: Dict[str, str] = {
    "mode": "mode",
    "relay": "relay",
    "alarm_hour": "alarmH",
    "alarm_minute": "alarmM",
    "device_clock": "deviceTs",
}


def _dumps(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, separators=(",", ":")).encode("utf-8")


def _loads_object(payload: bytes | bytearray | str) -> Dict[str, Any]:
    text = _text(payload)
    try:
        obj = json.loads(text)
    except ValueError as ex:
        raise FrameDecodeError(f"Malformed JSON frame: {text!r}") from ex
    if not isinstance(obj, dict):
        raise FrameDecodeError(f"JSON frame is not an object: {text!r}")
    return obj


class JsonCodec(WireCodec):
    name = "json"
    log_capacity = LOG_CAPACITY_JSON

    def encode(self, command: Command, snapshot: DeviceSnapshot) -> bytes:
        if isinstance(command, SyncTime):
            return _dumps({"cmd": "sync_time", "ts": int(command.ts)})
        if isinstance(command, SetAlarm):
            return _dumps({"cmd": "set_alarm", "h": int(command.hour), "m": int(command.minute)})
        if isinstance(command, ToggleArm):
            return _dumps({"cmd": "toggle_arm"})
        if isinstance(command, ToggleRelay):
            return _dumps({"cmd": "toggle_relay"})
        raise TypeError(f"Unsupported command: {command!r}")

    def decode(self, payload: bytes | bytearray | str) -> StateUpdate:
        """Decode a (possibly partial) state object; unknown keys are ignored."""
        obj = _loads_object(payload)
        values: Dict[str, Any] = {}
        if "mode" in obj:
            try:
                values["mode"] = Mode(obj["mode"])
            except (ValueError, TypeError) as ex:
                raise FrameDecodeError(f"Unknown mode {obj['mode']!r}") from ex
        if "relay" in obj:
            relay = obj["relay"]
            if not isinstance(relay, bool):
                raise FrameDecodeError(f"relay must be a boolean, got {relay!r}")
            values["relay"] = relay
        if "alarmH" in obj:
            values["alarm_hour"] = _check_range("alarmH", obj["alarmH"], 0, 23)
        if "alarmM" in obj:
            values["alarm_minute"] = _check_range("alarmM", obj["alarmM"], 0, 59)
        if "deviceTs" in obj:
            ts = obj["deviceTs"]
            if isinstance(ts, bool) or not isinstance(ts, int) or ts < 0:
                raise FrameDecodeError(f"deviceTs must be a non-negative integer, got {ts!r}")
            values["device_clock"] = ts
        return StateUpdate(**values)

    def decode_command(self, payload: bytes | bytearray | str) -> Command:
        obj = _loads_object(payload)
        cmd = obj.get("cmd")
        try:
            if cmd == "sync_time":
                return SyncTime(_check_range("ts", obj["ts"], 0, 2**63 - 1))
            if cmd == "set_alarm":
                return SetAlarm(
                    _check_range("h", obj["h"], 0, 23), _check_range("m", obj["m"], 0, 59)
                )
        except KeyError as ex:
            raise FrameDecodeError(f"{cmd} is missing field {ex}") from ex
        if cmd == "toggle_arm":
            return ToggleArm()
        if cmd == "toggle_relay":
            return ToggleRelay()
        raise FrameDecodeError(f"Unknown command {cmd!r}")

    def encode_state(
        self, snapshot: DeviceSnapshot, fields: Optional[Iterable[str]] = None
    ) -> bytes:
        """Encode the requested snapshot fields (all when ``fields`` is None)."""
        wanted = STATE_FIELDS if fields is None else tuple(fields)
        obj: Dict[str, Any] = {}
        for attr in STATE_FIELDS:
            if attr not in wanted:
                continue
            value = getattr(snapshot, attr)
            obj[_JSON_KEYS[attr]] = value.value if isinstance(value, Mode) else value
        return _dumps(obj)


# ────────────────────────────────────────────────────────────────
# Compact delimited-string profile
#   commands:  R:0|1  M:0|1  T:<epoch>  A:HH:MM
#   state:     S:<mode 0|1|2>,<relay 0|1>,<HH>,<MM>
# ────────────────────────────────────────────────────────────────

MODE_CODES: Dict[Mode, int] = {Mode.IDLE: 0, Mode.ARMED: 1, Mode.ON: 2}
_MODES_BY_CODE: Dict[int, Mode] = {code: mode for mode, code in MODE_CODES.items()}


def _int_field(name: str, raw: str) -> int:
    try:
        return int(raw.strip())
    except ValueError as ex:
        raise FrameDecodeError(f"{name} is not a number: {raw!r}") from ex


class CompactCodec(WireCodec):
    """Compact profile.

    State frames are full replacements of mode, relay and alarm. The
    appliance clock is not transmitted, so ``device_clock`` is stamped with
    the local time at receipt; countdowns based on it drift with the
    client's clock instead of following the appliance.
    """

    name = "compact"
    log_capacity = LOG_CAPACITY_COMPACT

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def encode(self, command: Command, snapshot: DeviceSnapshot) -> bytes:
        if isinstance(command, SyncTime):
            token = f"T:{int(command.ts)}"
        elif isinstance(command, SetAlarm):
            token = f"A:{int(command.hour):02d}:{int(command.minute):02d}"
        elif isinstance(command, ToggleArm):
            target = command.target
            if target is None:
                target = snapshot.mode is not Mode.ARMED
            token = f"M:{int(target)}"
        elif isinstance(command, ToggleRelay):
            target = command.target
            if target is None:
                target = not snapshot.relay
            token = f"R:{int(target)}"
        else:
            raise TypeError(f"Unsupported command: {command!r}")
        return token.encode("utf-8")

    def decode(self, payload: bytes | bytearray | str) -> StateUpdate:
        text = _text(payload).strip()
        if not text.startswith("S:"):
            raise FrameDecodeError(f"Not a state frame: {text!r}")
        parts: List[str] = text[2:].split(",")
        if len(parts) < 4:
            raise FrameDecodeError(f"State frame needs 4 fields, got {len(parts)}: {text!r}")
        code = _int_field("mode", parts[0])
        if code not in _MODES_BY_CODE:
            raise FrameDecodeError(f"Unknown mode code {code}")
        hour = _int_field("hour", parts[2])
        minute = _int_field("minute", parts[3])
        return StateUpdate(
            mode=_MODES_BY_CODE[code],
            relay=parts[1].strip() == "1",
            alarm_hour=_check_range("hour", hour, 0, 23),
            alarm_minute=_check_range("minute", minute, 0, 59),
            device_clock=int(self._clock()),
            full=True,
        )

    def decode_command(self, payload: bytes | bytearray | str) -> Command:
        text = _text(payload).strip()
        prefix, sep, arg = text.partition(":")
        if not sep:
            raise FrameDecodeError(f"Malformed command: {text!r}")
        if prefix in ("R", "M"):
            if arg not in ("0", "1"):
                raise FrameDecodeError(f"Expected 0 or 1 in {text!r}")
            target = arg == "1"
            return ToggleRelay(target) if prefix == "R" else ToggleArm(target)
        if prefix == "T":
            ts = _int_field("timestamp", arg)
            if ts < 0:
                raise FrameDecodeError(f"Negative timestamp in {text!r}")
            return SyncTime(ts)
        if prefix == "A":
            hh, sep, mm = arg.partition(":")
            if not sep:
                raise FrameDecodeError(f"Alarm needs HH:MM, got {text!r}")
            return SetAlarm(
                _check_range("hour", _int_field("hour", hh), 0, 23),
                _check_range("minute", _int_field("minute", mm), 0, 59),
            )
        raise FrameDecodeError(f"Unknown command {text!r}")

    def encode_state(
        self, snapshot: DeviceSnapshot, fields: Optional[Iterable[str]] = None
    ) -> bytes:
        # Always a full frame; the profile has no partial updates.
        return (
            f"S:{MODE_CODES[snapshot.mode]},{int(snapshot.relay)},"
            f"{snapshot.alarm_hour:02d},{snapshot.alarm_minute:02d}"
        ).encode("utf-8")


# ────────────────────────────────────────────────────────────────
# Profile selection
# ────────────────────────────────────────────────────────────────

PROFILES: Dict[str, type[WireCodec]] = {
    JsonCodec.name: JsonCodec,
    CompactCodec.name: CompactCodec,
}


def get_codec(profile: str) -> WireCodec:
    """Return a codec instance for the named profile."""
    try:
        return PROFILES[str(profile).lower()]()
    except KeyError:
        raise ValueError(
            f"Unknown wire profile {profile!r}; choose one of {', '.join(PROFILES)}"
        ) from None
