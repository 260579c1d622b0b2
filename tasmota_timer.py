#!/usr/bin/env python3
"""
tasmota_timer.py

A small web backend that schedules and queries the "Timer1" power-off
timer of Tasmota devices on the local network.  The device timer only
understands an absolute local time of day plus a Sunday-first weekly
bitmap, and the device clock is rarely in step with the browser that
asks for "switch off in 2 hours".  This module bridges the two.

Key features:

  • Clock skew between the client and the device is measured from the
    UTC hour and minute of both clocks on every timer request.
  • A relative request ("off in H hours and M minutes") is turned into
    an absolute device-local time and a single-day recurrence mask, then
    sent to the device as a Timer1 command.
  • The stored Timer1 record is read back and the next occurrence,
    remaining time and a human readable summary are computed in the
    client's terms.
  • Power on/off, power status, device time and enabling or disabling
    all timers are passed straight through to the device.
  • A Flask web UI and JSON API guarded by HTTP basic auth (bcrypt
    hashed users) and a CLI for the same operations.

See the bottom of this file for a concise usage manual.
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote

import bcrypt
import requests
from flask import Flask, Response, jsonify, request

_LOGGER = logging.getLogger("tasmota_timer")

_HERE = os.path.dirname(os.path.abspath(__file__))
# Server configuration (users, logging, web host/port).
CONFIG_PATH = os.environ.get("TASMOTA_TIMER_CONFIG", os.path.join(_HERE, "config.json"))
# Device accounts, one entry per controllable Tasmota device.
SETTINGS_PATH = os.environ.get("TASMOTA_TIMER_SETTINGS", os.path.join(_HERE, "settings.json"))
# Re-entrant lock used to guard config writes.
LOCK = threading.RLock()

BCRYPT_ROUNDS = 10

DEFAULT_CONFIG = {
    # When debug is enabled every backend action is appended to the log
    # file.  Otherwise only warnings and errors reach stderr.
    "debug": False,
    "logFilePath": "server.log",
    # Users allowed to reach the web UI.  Passwords may be plain text
    # (hashed at startup) or bcrypt hashes produced by `hash-password`.
    "users": [],
    "web": {"host": "0.0.0.0", "port": 3000},
    # Seconds to wait for a device before giving up on a command.
    "device_timeout": 10,
}

# Timer1 recurrence masks are Sunday first, unlike datetime.weekday().
DAYS_PER_WEEK = 7
WEEKDAY_LABELS = ["Sun.", "Mon.", "Tues.", "Wed.", "Thur.", "Fri.", "Sat."]
TIMER_NOT_SET = "Timer not set or expired"
POWER_STATES = ("ON", "OFF", "TOGGLE", "0", "1", "2")


# ---------- Errors ----------

class TimerError(Exception):
    """Base class for failures reported back to the caller."""
    status_code = 500


class InvalidClientTime(TimerError):
    status_code = 400

    def __init__(self, value=None):
        super().__init__("Invalid client time format")
        self.value = value


class InvalidTimerRequest(TimerError):
    status_code = 400


class InvalidPowerState(TimerError):
    status_code = 400


class UnknownDevice(TimerError):
    status_code = 400

    def __init__(self, device_name=None):
        super().__init__("Invalid device name")
        self.device_name = device_name


class DeviceUnreachable(TimerError):
    """The device did not answer, timed out or replied with an HTTP error."""


class MalformedDeviceTime(TimerError):
    """The device answered but its Time field is not a timestamp."""


class DeviceStateInconsistent(TimerError):
    """The stored Timer1 record cannot describe a real occurrence."""


# ---------- Data model ----------

@dataclass(frozen=True)
class DeviceAccount:
    device_name: str
    device_ip: str
    username: str = ""
    password: str = field(default="", repr=False)
    port: int = 80

    @classmethod
    def from_dict(cls, data: dict) -> "DeviceAccount":
        return cls(
            device_name=str(data["deviceName"]),
            device_ip=str(data["deviceIP"]),
            username=str(data.get("username", "")),
            password=str(data.get("password", "")),
            port=int(data.get("port", 80)),
        )


@dataclass(frozen=True)
class WeeklyRecurrenceMask:
    """Seven '0'/'1' characters, index 0 is Sunday."""
    bits: str

    def __post_init__(self):
        if (
            not isinstance(self.bits, str)
            or len(self.bits) != DAYS_PER_WEEK
            or set(self.bits) - {"0", "1"}
        ):
            raise ValueError(f"Bad recurrence mask: {self.bits!r}")

    @classmethod
    def for_day(cls, day: int) -> "WeeklyRecurrenceMask":
        bits = ["0"] * DAYS_PER_WEEK
        bits[day] = "1"
        return cls("".join(bits))

    def is_set(self, day: int) -> bool:
        return self.bits[day] == "1"

    def any(self) -> bool:
        return "1" in self.bits

    def __str__(self) -> str:
        return self.bits


NO_DAYS = WeeklyRecurrenceMask("0" * DAYS_PER_WEEK)


@dataclass(frozen=True)
class RelativeTimerRequest:
    hours: int
    minutes: int
    client_time: datetime


@dataclass(frozen=True)
class TimerCommand:
    """Typed Timer1 payload; only serialized when handed to the transport."""
    time: str
    days: WeeklyRecurrenceMask
    enable: int = 1
    mode: int = 0
    window: int = 0
    repeat: int = 0
    output: int = 1
    action: int = 0

    def payload(self) -> dict:
        # Key order is part of the firmware's wire format.
        return {
            "Enable": self.enable,
            "Mode": self.mode,
            "Time": self.time,
            "Window": self.window,
            "Days": str(self.days),
            "Repeat": self.repeat,
            "Output": self.output,
            "Action": self.action,
        }

    def __str__(self) -> str:
        return "Timer1 " + json.dumps(self.payload(), separators=(",", ":"))


CLEAR_TIMER_COMMAND = TimerCommand(time="00:00", days=NO_DAYS, enable=0)


@dataclass(frozen=True)
class TimerRecord:
    enabled: bool
    time: str
    days: WeeklyRecurrenceMask

    @classmethod
    def from_reply(cls, reply) -> Optional["TimerRecord"]:
        """Build a record from a `Timer1` reply; None when the device sent none."""
        data = reply.get("Timer1") if isinstance(reply, dict) else None
        if not isinstance(data, dict):
            return None
        try:
            enabled = bool(int(data.get("Enable", 0) or 0))
        except (TypeError, ValueError) as e:
            raise DeviceStateInconsistent(f"Bad timer enable flag: {data.get('Enable')!r}") from e
        try:
            days = WeeklyRecurrenceMask(str(data.get("Days", "")))
        except ValueError as e:
            if not enabled:
                days = NO_DAYS
            else:
                raise DeviceStateInconsistent(str(e)) from e
        return cls(enabled=enabled, time=str(data.get("Time", "")), days=days)

    def hour_minute(self) -> Tuple[int, int]:
        parts = self.time.split(":")
        try:
            return int(parts[0]), int(parts[1])
        except (IndexError, ValueError) as e:
            raise DeviceStateInconsistent(f"Bad timer time: {self.time!r}") from e


@dataclass(frozen=True)
class TimerStatusView:
    next_occurrence: Optional[datetime] = None
    remaining_hours: int = 0
    remaining_minutes: int = 0

    @property
    def is_set(self) -> bool:
        return self.next_occurrence is not None

    @property
    def weekday(self) -> Optional[str]:
        if self.next_occurrence is None:
            return None
        return WEEKDAY_LABELS[sunday_index(self.next_occurrence)]

    @property
    def human_readable_time(self) -> str:
        if self.next_occurrence is None:
            return TIMER_NOT_SET
        return (
            f"{self.weekday}, {self.next_occurrence:%H:%M} "
            f"({self.remaining_hours} hours and {self.remaining_minutes} minutes left)"
        )

    def to_dict(self) -> dict:
        return {
            "humanReadableTime": self.human_readable_time,
            "nextOccurrence": self.next_occurrence.isoformat() if self.next_occurrence else None,
            "remainingHours": self.remaining_hours,
            "remainingMinutes": self.remaining_minutes,
            "weekday": self.weekday,
        }


# ---------- Time helpers ----------

def parse_timestamp(value) -> datetime:
    """Parse an ISO 8601 timestamp as sent by browsers and Tasmota.

    Browsers send `2024-06-27T23:50:00.000Z`; Tasmota reports its local
    time without an offset (`2024-06-27T10:00:00`).  Raises ValueError.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Not a timestamp: {value!r}")
    text = value.strip()
    if text[-1] in "Zz":
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def as_utc(dt: datetime) -> datetime:
    """Convert aware datetimes to UTC; naive ones are taken as UTC already."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc)


def sunday_index(dt: datetime) -> int:
    return (dt.weekday() + 1) % DAYS_PER_WEEK


def clock_skew(client_time: datetime, device_time: datetime) -> int:
    """Client minus device, in minutes of the UTC day.

    Only hour and minute take part; both clocks are assumed to be on the
    same calendar day.
    """
    c = as_utc(client_time)
    d = as_utc(device_time)
    return (c.hour * 60 + c.minute) - (d.hour * 60 + d.minute)


# ---------- Device access ----------

class DeviceTransport:
    """Send a console command to a Tasmota device over its HTTP API."""

    def __init__(self, timeout: float = 10, session: requests.Session | None = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def url_for(self, account: DeviceAccount, command) -> str:
        return f"http://{account.device_ip}:{account.port}/cm?cmnd={quote(str(command), safe='')}"

    def send(self, account: DeviceAccount, command) -> dict:
        """Send `command` (a string or TimerCommand) and return the decoded reply."""
        url = self.url_for(account, command)
        _LOGGER.debug(" => [send] %s at %s: %s", account.device_name, account.device_ip, command)
        try:
            resp = self.session.get(
                url,
                auth=(account.username, account.password),
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as e:
            _LOGGER.warning(" !! [send] Request to %s failed: %s", account.device_name, e)
            raise DeviceUnreachable(f"{account.device_name}: {e}") from e
        except ValueError as e:
            _LOGGER.warning(" !! [send] Reply from %s is not JSON", account.device_name)
            raise DeviceUnreachable(f"{account.device_name}: reply is not JSON") from e


class AccountDirectory:
    """Read-only lookup of device accounts by name.

    The accounts only change through `reload()`, which swaps the whole
    mapping in one step.
    """

    def __init__(self, accounts: Iterable[DeviceAccount] = (), path: str | None = None):
        self.path = path
        self._accounts = {a.device_name: a for a in accounts}

    @classmethod
    def from_file(cls, path: str) -> "AccountDirectory":
        return cls(load_accounts(path), path=path)

    def by_name(self, device_name: str | None) -> Optional[DeviceAccount]:
        if not device_name:
            return None
        return self._accounts.get(device_name)

    def names(self) -> List[str]:
        return list(self._accounts)

    def reload(self) -> None:
        if self.path is None:
            return
        accounts = load_accounts(self.path)
        self._accounts = {a.device_name: a for a in accounts}
        _LOGGER.info(" == [AccountDirectory] Loaded %d devices from %s", len(accounts), self.path)


class UserDirectory:
    """Web users checked against bcrypt hashes."""

    def __init__(self, users: Iterable[dict] = ()):
        self._hashes: Dict[str, bytes] = {}
        for user in users:
            self._hashes[str(user["username"])] = hash_password(str(user.get("password", "")))

    def authenticate(self, username: str | None, password: str | None) -> bool:
        hashed = self._hashes.get(username or "")
        if hashed is None or not isinstance(password, str):
            return False
        return bcrypt.checkpw(password.encode(), hashed)


def is_bcrypt_hash(value: str) -> bool:
    return value.startswith(("$2a$", "$2b$", "$2y$")) and len(value) == 60


def hash_password(password: str) -> bytes:
    """Return a bcrypt hash; values that already are one pass through."""
    if is_bcrypt_hash(password):
        return password.encode()
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(BCRYPT_ROUNDS))


# ---------- Scheduling core ----------

class ClockSkewResolver:
    """Read the device clock and measure its offset from the client."""

    def __init__(self, transport: DeviceTransport):
        self.transport = transport

    def resolve(self, account: DeviceAccount, client_time: datetime) -> Tuple[datetime, int]:
        reply = self.transport.send(account, "Time")
        raw = reply.get("Time") if isinstance(reply, dict) else None
        try:
            device_time = parse_timestamp(raw)
        except ValueError as e:
            raise MalformedDeviceTime(f"Invalid device time format: {raw!r}") from e
        return device_time, clock_skew(client_time, device_time)


class TimerScheduleEncoder:
    """Turn "in H hours and M minutes" into a Timer1 command.

    The target is computed from the device's own clock because the device
    fires the timer on that clock.
    """

    def encode(
        self, req: RelativeTimerRequest, device_now: datetime
    ) -> Tuple[datetime, WeeklyRecurrenceMask, TimerCommand]:
        target = device_now.replace(second=0, microsecond=0) + timedelta(
            hours=req.hours, minutes=req.minutes
        )
        mask = WeeklyRecurrenceMask.for_day(sunday_index(target))
        command = TimerCommand(time=f"{target:%H:%M}:00", days=mask)
        return target, mask, command


class TimerScheduleDecoder:
    """Work out when a stored Timer1 record fires next, in client time."""

    def decode(
        self, record: Optional[TimerRecord], client_time: datetime, skew: int
    ) -> TimerStatusView:
        if record is None or not record.enabled:
            return TimerStatusView()
        if not record.days.any():
            raise DeviceStateInconsistent("Timer enabled without any day selected")
        hour, minute = record.hour_minute()

        now = as_utc(client_time)
        this_minute = now.replace(second=0, microsecond=0)
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        # minute overflow from the skew carries into hours and days
        occurrence = midnight + timedelta(hours=hour, minutes=minute + skew)

        # A skew of up to a day can put the first candidate in the past,
        # so allow one extra week of scanning.
        for _ in range(2 * DAYS_PER_WEEK):
            if occurrence >= this_minute and record.days.is_set(sunday_index(occurrence)):
                break
            occurrence += timedelta(days=1)
        else:
            raise DeviceStateInconsistent(f"No occurrence found for days {record.days}")

        remaining = max(occurrence - now, timedelta(0))
        hours, minutes = divmod(int(remaining.total_seconds() // 60), 60)
        return TimerStatusView(
            next_occurrence=occurrence,
            remaining_hours=hours,
            remaining_minutes=minutes,
        )


class SchedulingOrchestrator:
    """Sequence device reads and writes for each request.

    Each pipeline runs its steps strictly in order and holds the device's
    lock for the whole sequence so two schedule changes for one device do
    not interleave.  Nothing is retried.
    """

    def __init__(self, accounts: AccountDirectory, transport: DeviceTransport):
        self.accounts = accounts
        self.transport = transport
        self.skew_resolver = ClockSkewResolver(transport)
        self.encoder = TimerScheduleEncoder()
        self.decoder = TimerScheduleDecoder()
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _device_lock(self, device_name: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(device_name, threading.Lock())

    def account(self, device_name: str | None) -> DeviceAccount:
        account = self.accounts.by_name(device_name)
        if account is None:
            _LOGGER.warning(' !! [account] Invalid device name "%s"', device_name)
            raise UnknownDevice(device_name)
        return account

    @staticmethod
    def _client_time(value) -> datetime:
        try:
            return parse_timestamp(value)
        except ValueError as e:
            raise InvalidClientTime(value) from e

    def set_timer(self, hours, minutes, client_time_iso, device_name) -> TimerCommand:
        """Schedule Timer1 to switch the device off after hours:minutes."""
        account = self.account(device_name)
        client_time = self._client_time(client_time_iso)
        try:
            req = RelativeTimerRequest(int(hours), int(minutes), client_time)
        except (TypeError, ValueError) as e:
            raise InvalidTimerRequest(f"Invalid timer delta {hours!r}:{minutes!r}") from e
        _LOGGER.info(
            " == [SetTimer] Delta %d:%d for device %s at %s",
            req.hours, req.minutes, account.device_name, account.device_ip,
        )

        with self._device_lock(account.device_name):
            device_time, skew = self.skew_resolver.resolve(account, client_time)
            _LOGGER.info(" == [SetTimer] Device time %s, client time %s", device_time, client_time)
            _LOGGER.info(" == [SetTimer] Time delta in minutes: %d", skew)
            try:
                target, mask, command = self.encoder.encode(req, device_time)
            except OverflowError as e:
                raise InvalidTimerRequest(f"Timer delta {req.hours}:{req.minutes} is out of range") from e
            _LOGGER.info(" == [SetTimer] Timer setting to be sent: %s on day: %s", command.time, mask)
            self.transport.send(account, command)
        return command

    def get_timer_status(self, client_time_iso, device_name) -> TimerStatusView:
        account = self.account(device_name)
        client_time = self._client_time(client_time_iso)
        _LOGGER.info(
            " == [GetTimerStatus] Device %s at %s", account.device_name, account.device_ip
        )

        with self._device_lock(account.device_name):
            device_time, skew = self.skew_resolver.resolve(account, client_time)
            _LOGGER.info(" == [GetTimerStatus] Device time %s, client time %s", device_time, client_time)
            _LOGGER.info(" == [GetTimerStatus] Time delta in minutes: %d", skew)
            reply = self.transport.send(account, "Timer1")

        try:
            return self.decoder.decode(TimerRecord.from_reply(reply), client_time, skew)
        except DeviceStateInconsistent as e:
            _LOGGER.warning(" !! [GetTimerStatus] %s reports an unusable timer: %s", account.device_name, e)
            return TimerStatusView()

    # Direct pass-through commands

    def passthrough(self, device_name, command) -> dict:
        account = self.account(device_name)
        _LOGGER.info(" == [passthrough] %s for %s at %s", command, account.device_name, account.device_ip)
        with self._device_lock(account.device_name):
            return self.transport.send(account, command)

    def set_power(self, device_name, state) -> dict:
        state = (state or "").strip().upper()
        if state not in POWER_STATES:
            raise InvalidPowerState(f"Invalid power state: {state!r}")
        return self.passthrough(device_name, f"Power {state}")

    def get_power_status(self, device_name) -> dict:
        return self.passthrough(device_name, "Power")

    def get_time(self, device_name) -> dict:
        return self.passthrough(device_name, "Time")

    def clear_timer(self, device_name) -> dict:
        return self.passthrough(device_name, CLEAR_TIMER_COMMAND)

    def enable_timers(self, device_name) -> dict:
        return self.passthrough(device_name, "Timers 1")

    def disable_timers(self, device_name) -> dict:
        return self.passthrough(device_name, "Timers 0")


# ---------- Configuration ----------

def load_config() -> dict:
    """Load the JSON config from disk, creating it with defaults if needed."""
    if not os.path.exists(CONFIG_PATH):
        with open(CONFIG_PATH, "w") as f:
            json.dump(DEFAULT_CONFIG, f, indent=2)
        return json.loads(json.dumps(DEFAULT_CONFIG))
    with open(CONFIG_PATH, "r") as f:
        cfg = json.load(f)
    for k, v in DEFAULT_CONFIG.items():
        if k not in cfg:
            cfg[k] = json.loads(json.dumps(v))
    return cfg


def save_config(cfg: dict):
    """Atomically save the configuration to disk."""
    with LOCK:
        tmp = CONFIG_PATH + ".tmp"
        with open(tmp, "w") as f:
            json.dump(cfg, f, indent=2)
        os.replace(tmp, CONFIG_PATH)


def load_accounts(path: str) -> List[DeviceAccount]:
    """Read the device list; a missing file yields no devices."""
    if not os.path.exists(path):
        _LOGGER.warning(" !! [load_accounts] Settings file %s not found", path)
        return []
    with open(path, "r") as f:
        data = json.load(f)
    return [DeviceAccount.from_dict(entry) for entry in data]


def configure_logging(cfg: dict) -> None:
    """Log every action to the log file in debug mode, else warnings to stderr."""
    for handler in list(_LOGGER.handlers):
        _LOGGER.removeHandler(handler)
        handler.close()
    if cfg.get("debug", False):
        path = cfg.get("logFilePath") or DEFAULT_CONFIG["logFilePath"]
        if not os.path.isabs(path):
            path = os.path.join(_HERE, path)
        handler: logging.Handler = logging.FileHandler(path)
        _LOGGER.setLevel(logging.DEBUG)
    else:
        handler = logging.StreamHandler()
        _LOGGER.setLevel(logging.WARNING)
    handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
    _LOGGER.addHandler(handler)


# ---------- Web ----------

HTML = """<!doctype html>
<html lang=\"en\">
<head>
<meta charset=\"utf-8\">
<title>Tasmota Timer</title>
<meta name=\"viewport\" content=\"width=device-width, initial-scale=1\">
<style>
body{font-family:system-ui,-apple-system,Segoe UI,Roboto,sans-serif;background:#0b0f14;color:#e6edf3;padding:16px;max-width:520px;margin:auto}
.card{background:#10161d;border:1px solid #1e2936;border-radius:8px;padding:12px;margin-bottom:12px}
.row{display:flex;gap:8px;align-items:center;margin:6px 0}
button{background:#1f6feb;color:#fff;border:0;border-radius:6px;padding:6px 12px}
button.off{background:#8b1d1d}
select,input{background:transparent;color:#e6edf3;border:1px solid #1e2936;border-radius:6px;padding:4px 6px}
input{width:64px}
#status{color:#9fb1c1}
</style>
</head>
<body>
<h1>Tasmota Timer</h1>
<div class=\"card\">
  <div class=\"row\"><label for=\"device\">Device</label><select id=\"device\"></select></div>
  <div class=\"row\">Power: <span id=\"power\">?</span>
    <button id=\"powerOn\">On</button><button id=\"powerOff\" class=\"off\">Off</button></div>
</div>
<div class=\"card\">
  <div class=\"row\">Switch off in
    <input id=\"hours\" type=\"number\" value=\"1\"> h
    <input id=\"minutes\" type=\"number\" value=\"0\"> min</div>
  <div class=\"row\"><button id=\"setTimer\">Set timer</button><button id=\"clearTimer\" class=\"off\">Clear</button></div>
  <div class=\"row\" id=\"status\">Timer: ?</div>
</div>
<script>
function device(){ return encodeURIComponent(document.getElementById('device').value); }
function now(){ return encodeURIComponent(new Date().toISOString()); }
function call(path){
  return fetch(path).then(r => r.ok ? r.json() : r.text().then(t => { throw new Error(t); }));
}
function refresh(){
  call('/getPowerStatus?device=' + device()).then(d => {
    document.getElementById('power').textContent = d.POWER || d.POWER1 || '?';
  }).catch(e => { document.getElementById('power').textContent = e.message; });
  call('/getTimerStatus?device=' + device() + '&clienttime=' + now()).then(d => {
    document.getElementById('status').textContent = 'Timer: ' + d.humanReadableTime;
  }).catch(e => { document.getElementById('status').textContent = e.message; });
}
function init(){
  call('/devices').then(list => {
    const sel = document.getElementById('device');
    list.forEach(d => { const o = document.createElement('option'); o.value = o.textContent = d.deviceName; sel.appendChild(o); });
    sel.addEventListener('change', refresh);
    refresh();
  });
  document.getElementById('powerOn').addEventListener('click', () => call('/setPower?state=ON&device=' + device()).then(refresh));
  document.getElementById('powerOff').addEventListener('click', () => call('/setPower?state=OFF&device=' + device()).then(refresh));
  document.getElementById('setTimer').addEventListener('click', () => {
    const h = encodeURIComponent(document.getElementById('hours').value);
    const m = encodeURIComponent(document.getElementById('minutes').value);
    call('/setTimer?device=' + device() + '&hours=' + h + '&minutes=' + m + '&clienttime=' + now()).then(refresh);
  });
  document.getElementById('clearTimer').addEventListener('click', () => call('/clearTimer?device=' + device()).then(refresh));
  setInterval(refresh, 60000);
}
if(document.readyState === 'loading'){
  document.addEventListener('DOMContentLoaded', init);
} else {
  init();
}
</script>
</body>
</html>
"""


def build_app(orchestrator: SchedulingOrchestrator, users: UserDirectory) -> Flask:
    """Construct the Flask application for the web UI and JSON API.

    Every route except /login needs HTTP basic auth.  TimerError
    subclasses map to their status code; client mistakes answer with the
    bare message, device failures with "Server error: ...".
    """
    app = Flask(__name__)

    def _client_ip() -> str:
        return request.headers.get("X-Forwarded-For") or request.remote_addr or "?"

    @app.before_request
    def require_auth():
        if request.path == "/login":
            return None
        auth = request.authorization
        if auth is None or not users.authenticate(auth.username, auth.password):
            _LOGGER.info(" !! [auth] Unauthorized request for %s from %s", request.path, _client_ip())
            return Response("Unauthorized", 401, {"WWW-Authenticate": "Basic"}, mimetype="text/plain")
        _LOGGER.info(" <= [HTTP server] Received request: %s from: %s", request.full_path, _client_ip())
        return None

    @app.errorhandler(TimerError)
    def timer_error(err: TimerError):
        if err.status_code < 500:
            _LOGGER.info(" !! [HTTP server] %s (%s)", err, request.path)
            return Response(str(err), err.status_code, mimetype="text/plain")
        _LOGGER.error(" !! [HTTP server] %s failed: %s", request.path, err)
        return Response(f"Server error: {err}", err.status_code, mimetype="text/plain")

    @app.post("/login")
    def login():
        data = request.get_json(force=True, silent=True) or {}
        if users.authenticate(data.get("username"), data.get("password")):
            return jsonify({"success": True})
        return jsonify({"success": False}), 401

    @app.get("/")
    @app.get("/index.html")
    def index():
        return Response(HTML, mimetype="text/html")

    @app.get("/devices")
    def devices():
        return jsonify([{"deviceName": name} for name in orchestrator.accounts.names()])

    @app.post("/reload")
    def reload_devices():
        """Re-read settings.json; the device list is swapped in one step."""
        orchestrator.accounts.reload()
        return jsonify([{"deviceName": name} for name in orchestrator.accounts.names()])

    @app.get("/setPower")
    def set_power():
        return jsonify(orchestrator.set_power(request.args.get("device"), request.args.get("state")))

    @app.get("/getPowerStatus")
    def get_power_status():
        return jsonify(orchestrator.get_power_status(request.args.get("device")))

    @app.get("/getTime")
    def get_time():
        return jsonify(orchestrator.get_time(request.args.get("device")))

    @app.get("/setTimer")
    def set_timer():
        orchestrator.set_timer(
            request.args.get("hours"),
            request.args.get("minutes"),
            request.args.get("clienttime"),
            request.args.get("device"),
        )
        return jsonify({"success": True})

    @app.get("/getTimerStatus")
    def get_timer_status():
        view = orchestrator.get_timer_status(request.args.get("clienttime"), request.args.get("device"))
        return jsonify(view.to_dict())

    @app.get("/clearTimer")
    def clear_timer():
        return jsonify(orchestrator.clear_timer(request.args.get("device")))

    @app.get("/enableTimers")
    def enable_timers():
        return jsonify(orchestrator.enable_timers(request.args.get("device")))

    @app.get("/disableTimers")
    def disable_timers():
        return jsonify(orchestrator.disable_timers(request.args.get("device")))

    return app


def print_info():
    """Print a friendly command reference to stdout."""
    print(r"""
TASMOTA TIMER CONTROLLER
------------------------

USAGE OVERVIEW
===============

This program switches Tasmota devices off after a delay by programming
their Timer1 slot, taking the difference between your clock and the
device clock into account.

Running the web UI
------------------
Launch the web interface with:

  ./tasmota_timer.py web

Navigate to http://<host>:3000 and log in with one of the users from
config.json.  Pick a device, choose hours and minutes and press
"Set timer".

Devices
-------
Devices are listed in settings.json next to this script:

  [{"deviceName": "Heater", "deviceIP": "192.168.1.40",
    "username": "admin", "password": "secret"}]

List them with:

  ./tasmota_timer.py devices

A running web server picks up an edited settings.json after a POST to
/reload (same basic auth as the UI).

Timers from the command line
----------------------------
Switch a device off in 1 hour 30 minutes:

  ./tasmota_timer.py timer set Heater --hours 1 --minutes 30

Show when the timer fires next:

  ./tasmota_timer.py timer status Heater

Clear it, or enable/disable all device timers:

  ./tasmota_timer.py timer clear Heater
  ./tasmota_timer.py timers Heater on|off

Power and time
--------------
  ./tasmota_timer.py power Heater            (show state)
  ./tasmota_timer.py power Heater ON|OFF|TOGGLE
  ./tasmota_timer.py time Heater

Users
-----
Replace a plain text password in config.json with its bcrypt hash:

  ./tasmota_timer.py hash-password --user alice

Configuration
-------------
config.json holds debug, logFilePath, users, web host/port and
device_timeout.  With "debug": true every backend action is written to
the log file.  TASMOTA_TIMER_CONFIG and TASMOTA_TIMER_SETTINGS point at
alternate files; TASMOTA_TIMER_HOST overrides the web host.

""")


def main():
    cfg = load_config()
    configure_logging(cfg)
    accounts = AccountDirectory.from_file(SETTINGS_PATH)
    transport = DeviceTransport(timeout=float(cfg.get("device_timeout", 10)))
    orchestrator = SchedulingOrchestrator(accounts, transport)

    parser = argparse.ArgumentParser(description="Tasmota timer controller")
    sub = parser.add_subparsers(dest="cmd")
    parser.add_argument("-info", action="store_true", help="Show usage manual")

    p_web = sub.add_parser("web", help="Run web UI")
    default_host = os.environ.get("TASMOTA_TIMER_HOST", cfg.get("web", {}).get("host", "0.0.0.0"))
    p_web.add_argument("--host", default=default_host)
    p_web.add_argument("--port", type=int, default=int(cfg.get("web", {}).get("port", 3000)))

    sub.add_parser("devices", help="List configured devices")

    p_time = sub.add_parser("time", help="Show device time")
    p_time.add_argument("device")

    p_power = sub.add_parser("power", help="Show or set power state")
    p_power.add_argument("device")
    p_power.add_argument("state", nargs="?", default=None)

    p_timer = sub.add_parser("timer", help="Manage Timer1")
    timer_sub = p_timer.add_subparsers(dest="timer_cmd")
    p_set = timer_sub.add_parser("set", help="Switch off after a delay")
    p_set.add_argument("device")
    p_set.add_argument("--hours", default="0")
    p_set.add_argument("--minutes", default="0")
    p_status = timer_sub.add_parser("status", help="Show next occurrence")
    p_status.add_argument("device")
    p_clear = timer_sub.add_parser("clear", help="Disable Timer1")
    p_clear.add_argument("device")

    p_timers = sub.add_parser("timers", help="Enable or disable all device timers")
    p_timers.add_argument("device")
    p_timers.add_argument("state", choices=["on", "off"])

    p_hash = sub.add_parser("hash-password", help="Store a user's password as a bcrypt hash")
    p_hash.add_argument("--user", required=True)

    args = parser.parse_args()

    if args.info or (len(sys.argv) == 1):
        print_info()
        return

    if args.cmd == "web":
        users = UserDirectory(cfg.get("users", []))
        app = build_app(orchestrator, users)
        app.run(host=args.host, port=args.port, threaded=True)
        return

    if args.cmd == "devices":
        names = accounts.names()
        if not names:
            print("(none)")
        for name in names:
            account = accounts.by_name(name)
            print(f"{name:<16} {account.device_ip}:{account.port}")
        return

    if args.cmd == "hash-password":
        with LOCK:
            for user in cfg.get("users", []):
                if user.get("username") == args.user:
                    user["password"] = hash_password(str(user.get("password", ""))).decode()
                    save_config(cfg)
                    print("OK")
                    return
        print(f"Unknown user: {args.user}", file=sys.stderr)
        sys.exit(1)

    now = datetime.now(timezone.utc).isoformat()
    try:
        if args.cmd == "time":
            print(json.dumps(orchestrator.get_time(args.device)))
            return
        if args.cmd == "power":
            if args.state is None:
                print(json.dumps(orchestrator.get_power_status(args.device)))
            else:
                print(json.dumps(orchestrator.set_power(args.device, args.state)))
            return
        if args.cmd == "timers":
            if args.state == "on":
                print(json.dumps(orchestrator.enable_timers(args.device)))
            else:
                print(json.dumps(orchestrator.disable_timers(args.device)))
            return
        if args.cmd == "timer":
            if args.timer_cmd == "set":
                command = orchestrator.set_timer(args.hours, args.minutes, now, args.device)
                print(f"Timer set for {command.time[:5]} on days {command.days}")
                return
            if args.timer_cmd == "status":
                print(orchestrator.get_timer_status(now, args.device).human_readable_time)
                return
            if args.timer_cmd == "clear":
                print(json.dumps(orchestrator.clear_timer(args.device)))
                return
    except TimerError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    print_info()


if __name__ == "__main__":
    main()
