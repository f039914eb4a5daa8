#!/usr/bin/env python3
"""
Shared fixtures: an in-memory RoboClaw link and injectable clocks
"""

import threading
from unittest import mock

import pytest

from scarab_drive.roboclaw_protocol import RoboClawError
from scarab_drive.states import MotorState


class FakeLink:
    """Stands in for RoboClawLink; records every command it receives"""

    def __init__(self):
        self.is_open = False
        self.port = None
        self.open_calls = 0
        self.close_calls = 0
        self.open_failures = 0
        self.fail_pid = False
        self.fail_speed_channels = set()
        self.fail_read_channels = set()
        self.pid_calls = []
        self.speed_calls = []
        self.readings = {1: (0, 0, True), 2: (0, 0, True)}

    def open(self, port):
        self.open_calls += 1
        if self.open_failures > 0:
            self.open_failures -= 1
            raise RoboClawError(f"Cannot open {port}")
        self.port = port
        self.is_open = True

    def close(self):
        self.close_calls += 1
        self.is_open = False

    def set_pid(self, channel, d, p, i, qpps):
        if self.fail_pid:
            raise RoboClawError("PID not acknowledged")
        self.pid_calls.append((channel, d, p, i, qpps))

    def speed_accel(self, channel, accel, speed):
        if channel in self.fail_speed_channels:
            raise RoboClawError("ACK timeout")
        self.speed_calls.append((channel, accel, speed))

    def read_ispeed(self, channel):
        if channel in self.fail_read_channels:
            raise RoboClawError("Response timeout")
        return self.readings[channel]


class FakeClock:
    """Manually advanced time source"""

    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, dt):
        self.now += dt

    def sleep(self, dt):
        self.now += dt


class StubDriver:
    """Minimal driver for the control loop: fixed measured (v, w)"""

    def __init__(self, v=0.0, w=0.0):
        self.lock = threading.RLock()
        self.state = MotorState(v=v, w=w)
        self.updates = 0
        self.commands = []
        self.tunings = []

    def update(self):
        self.updates += 1
        return True

    def get_state(self):
        return self.state.copy()

    def set_velocity(self, v, w):
        with self.lock:
            self.commands.append((v, w))
            return True

    def reconfigure(self, tuning):
        self.tunings.append(tuning)


@pytest.fixture
def fake_link():
    return FakeLink()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def logger():
    return mock.MagicMock()


@pytest.fixture
def usb_reset():
    return mock.MagicMock()


@pytest.fixture
def stub_driver():
    return StubDriver()
