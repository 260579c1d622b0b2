import threading

import pytest
import tasmota_timer
from tasmota_timer import AccountDirectory, DeviceAccount, SchedulingOrchestrator


class FakeTransport:
    """Stand-in for DeviceTransport that records every command."""

    def __init__(self, device_time="2024-06-27T10:00:00", timer=None, fail_on=None):
        self.device_time = device_time
        self.timer = timer or {"Enable": 0, "Mode": 0, "Time": "00:00", "Window": 0,
                               "Days": "0000000", "Repeat": 0, "Output": 1, "Action": 0}
        self.fail_on = fail_on
        self.sent = []

    def send(self, account, command):
        command = str(command)
        self.sent.append((account.device_name, command))
        if self.fail_on and command.startswith(self.fail_on):
            raise tasmota_timer.DeviceUnreachable(f"{account.device_name}: timed out")
        if command == "Time":
            return {"Time": self.device_time}
        if command == "Timer1":
            return {"Timers": "ON", "Timer1": self.timer}
        if command.startswith("Timer1 "):
            return {"Timer1": self.timer}
        if command.startswith("Power"):
            return {"POWER": "ON"}
        return {"Command": command}


def build(transport):
    accounts = AccountDirectory([
        DeviceAccount("Heater", "192.168.1.40", "admin", "secret"),
        DeviceAccount("Fan", "192.168.1.41"),
    ])
    return SchedulingOrchestrator(accounts, transport)


def test_set_timer_reads_time_then_submits():
    transport = FakeTransport(device_time="2024-06-27T10:00:00")
    orch = build(transport)
    command = orch.set_timer("2", "30", "2024-06-27T10:03:00.000Z", "Heater")
    assert command.time == "12:30:00"
    assert transport.sent == [
        ("Heater", "Time"),
        ("Heater", 'Timer1 {"Enable":1,"Mode":0,"Time":"12:30:00","Window":0,'
                   '"Days":"0001000","Repeat":0,"Output":1,"Action":0}'),
    ]


def test_set_timer_uses_device_clock_not_client_clock():
    transport = FakeTransport(device_time="2024-06-27T08:15:00")
    command = build(transport).set_timer(1, 0, "2024-06-27T10:00:00Z", "Heater")
    assert command.time == "09:15:00"


def test_invalid_client_time_fails_before_network():
    transport = FakeTransport()
    orch = build(transport)
    with pytest.raises(tasmota_timer.InvalidClientTime):
        orch.set_timer(1, 0, "soon", "Heater")
    with pytest.raises(tasmota_timer.InvalidClientTime):
        orch.get_timer_status(None, "Heater")
    assert transport.sent == []


def test_invalid_delta_fails_before_network():
    transport = FakeTransport()
    with pytest.raises(tasmota_timer.InvalidTimerRequest):
        build(transport).set_timer("two", "0", "2024-06-27T10:00:00Z", "Heater")
    assert transport.sent == []


def test_unknown_device():
    orch = build(FakeTransport())
    for name in (None, "", "Toaster"):
        with pytest.raises(tasmota_timer.UnknownDevice):
            orch.set_timer(1, 0, "2024-06-27T10:00:00Z", name)


def test_time_read_failure_stops_pipeline():
    transport = FakeTransport(fail_on="Time")
    with pytest.raises(tasmota_timer.DeviceUnreachable):
        build(transport).set_timer(1, 0, "2024-06-27T10:00:00Z", "Heater")
    assert transport.sent == [("Heater", "Time")]


def test_submit_failure_propagates():
    transport = FakeTransport(fail_on="Timer1 ")
    with pytest.raises(tasmota_timer.DeviceUnreachable):
        build(transport).set_timer(1, 0, "2024-06-27T10:00:00Z", "Heater")


def test_malformed_device_time_propagates():
    transport = FakeTransport(device_time="garbage")
    with pytest.raises(tasmota_timer.MalformedDeviceTime):
        build(transport).get_timer_status("2024-06-27T10:00:00Z", "Heater")
    assert transport.sent == [("Heater", "Time")]


def test_timer_status_corrects_for_skew():
    # Device clock runs 5 minutes behind the client.
    timer = {"Enable": 1, "Time": "12:25", "Days": "0001000"}
    transport = FakeTransport(device_time="2024-06-27T09:55:00", timer=timer)
    view = build(transport).get_timer_status("2024-06-27T10:00:00Z", "Heater")
    assert [c for _, c in transport.sent] == ["Time", "Timer1"]
    assert view.human_readable_time == "Thur., 12:30 (2 hours and 30 minutes left)"


def test_timer_status_not_set():
    view = build(FakeTransport()).get_timer_status("2024-06-27T10:00:00Z", "Heater")
    assert view.human_readable_time == "Timer not set or expired"


def test_timer_status_inconsistent_record_reports_not_set():
    timer = {"Enable": 1, "Time": "12:00", "Days": "0000000"}
    view = build(FakeTransport(timer=timer)).get_timer_status("2024-06-27T10:00:00Z", "Heater")
    assert not view.is_set


def test_passthrough_commands():
    transport = FakeTransport()
    orch = build(transport)
    orch.set_power("Fan", "on")
    orch.get_power_status("Fan")
    orch.get_time("Fan")
    orch.clear_timer("Fan")
    orch.enable_timers("Fan")
    orch.disable_timers("Fan")
    assert [c for _, c in transport.sent] == [
        "Power ON",
        "Power",
        "Time",
        'Timer1 {"Enable":0,"Mode":0,"Time":"00:00","Window":0,'
        '"Days":"0000000","Repeat":0,"Output":1,"Action":0}',
        "Timers 1",
        "Timers 0",
    ]


def test_set_power_rejects_odd_states():
    transport = FakeTransport()
    with pytest.raises(tasmota_timer.InvalidPowerState):
        build(transport).set_power("Fan", "<script>")
    assert transport.sent == []


class SlowTransport(FakeTransport):
    def __init__(self):
        super().__init__()
        self.active = 0
        self.overlap = False
        self.guard = threading.Lock()

    def send(self, account, command):
        with self.guard:
            self.active += 1
            if self.active > 1:
                self.overlap = True
        try:
            threading.Event().wait(0.01)
            return super().send(account, command)
        finally:
            with self.guard:
                self.active -= 1


def test_same_device_requests_do_not_interleave():
    transport = SlowTransport()
    orch = build(transport)
    threads = [
        threading.Thread(target=orch.set_timer, args=(1, i, "2024-06-27T10:00:00Z", "Heater"))
        for i in range(4)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert not transport.overlap
    commands = [c for _, c in transport.sent]
    # every time read is directly followed by its own submit
    assert commands[0::2] == ["Time"] * 4
    assert all(c.startswith("Timer1 ") for c in commands[1::2])


@pytest.mark.parametrize("hours,minutes", [("100000000", "0"), ("0", "-9999999999")])
def test_out_of_range_delta_is_invalid_request(hours, minutes):
    transport = FakeTransport()
    with pytest.raises(tasmota_timer.InvalidTimerRequest):
        build(transport).set_timer(hours, minutes, "2024-06-27T10:00:00Z", "Heater")
    # nothing is submitted to the device
    assert [c for _, c in transport.sent] == ["Time"]


def test_timer_status_with_unreadable_enable_flag_reports_not_set():
    timer = {"Enable": "ON", "Time": "12:00", "Days": "0001000"}
    view = build(FakeTransport(timer=timer)).get_timer_status("2024-06-27T10:00:00Z", "Heater")
    assert view.human_readable_time == "Timer not set or expired"
