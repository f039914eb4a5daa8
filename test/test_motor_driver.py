#!/usr/bin/env python3
"""
Tests for the RoboClaw motor driver against an in-memory link
"""

import pytest

from scarab_drive.motor_driver import MotorSpeedController, round_half_away
from scarab_drive.tuning import MotorTuningParameters


@pytest.fixture
def published():
    return []


@pytest.fixture
def driver(fake_link, fake_clock, logger, usb_reset, published):
    driver = MotorSpeedController(
        link=fake_link,
        state_publisher=published.append,
        logger=logger,
        usb_reset=usb_reset,
        sleep=fake_clock.sleep,
        clock=fake_clock
    )
    driver.connect()
    fake_link.speed_calls.clear()
    published.clear()
    return driver


def test_round_half_away():
    assert round_half_away(2.5) == 3
    assert round_half_away(-2.5) == -3
    assert round_half_away(2.4) == 2
    assert round_half_away(-0.4) == 0


def test_connect_pushes_pid_and_stops(fake_link, fake_clock, logger, usb_reset):
    driver = MotorSpeedController(
        link=fake_link, logger=logger, usb_reset=usb_reset,
        sleep=fake_clock.sleep, clock=fake_clock
    )
    assert driver.connect()

    assert fake_link.pid_calls == [
        (1, 500, 15000, 0x250, 300000),
        (2, 500, 15000, 0x250, 300000),
    ]
    accel = driver.tuning.accel_max_quad
    assert fake_link.speed_calls == [(1, accel, 0), (2, accel, 0)]


def test_straight_command(driver, fake_link, published):
    """Left wheel is mounted mirrored, so its pulses come out negative"""
    assert driver.set_velocity(0.5, 0.0)

    accel = driver.tuning.accel_max_quad
    assert fake_link.speed_calls == [(1, accel, -127324), (2, accel, 127324)]

    state = driver.get_state()
    assert state.v_setpoint == 0.5
    assert state.w_setpoint == 0.0
    assert state.left_setpoint == pytest.approx(0.5)
    assert state.right_setpoint == pytest.approx(0.5)
    assert state.left_setpoint_pulses == -127324
    assert state.right_setpoint_pulses == 127324
    assert len(published) == 1


def test_spin_command(driver, fake_link):
    assert driver.set_velocity(0.0, 2.0)

    accel = driver.tuning.accel_max_quad
    assert fake_link.speed_calls == [(1, accel, 64935), (2, accel, 64935)]
    state = driver.get_state()
    assert state.left_setpoint == pytest.approx(-0.255)
    assert state.right_setpoint == pytest.approx(0.255)


@pytest.mark.parametrize('v, w', [
    (float('nan'), 0.0),
    (0.0, float('nan')),
    (float('inf'), 0.0),
    (0.5, float('-inf')),
])
def test_non_finite_command_is_ignored(driver, fake_link, logger, published, v, w):
    """A non-finite command is dropped without touching the motors or the state"""
    driver.set_velocity(0.3, 0.0)
    fake_link.speed_calls.clear()
    published.clear()

    assert not driver.set_velocity(v, w)

    assert fake_link.speed_calls == []
    assert published == []
    state = driver.get_state()
    assert state.v_setpoint == 0.3
    assert state.w_setpoint == 0.0
    assert driver.supervisor.failures == 0
    logger.warning.assert_called()


def test_left_failure_skips_right(driver, fake_link, published):
    fake_link.fail_speed_channels = {1}

    assert not driver.set_velocity(0.5, 0.0)

    assert fake_link.speed_calls == []
    assert driver.supervisor.failures == 1
    assert published == []


def test_right_failure_after_left_sent(driver, fake_link):
    fake_link.fail_speed_channels = {2}

    assert not driver.set_velocity(0.5, 0.0)

    assert [call[0] for call in fake_link.speed_calls] == [1]
    assert driver.supervisor.failures == 1


def test_update_converts_pulses(driver, fake_link, published):
    fake_link.readings = {1: (-1000, 1, True), 2: (1000, 0, True)}

    assert driver.update()

    state = driver.get_state()
    ppm = driver.tuning.quad_pulse_per_meter
    assert state.left_pulses == -125000
    assert state.right_pulses == 125000
    assert state.left_measured == pytest.approx(125000 / ppm)
    assert state.right_measured == pytest.approx(125000 / ppm)
    assert state.v == pytest.approx((state.left_measured + state.right_measured) / 2.0)
    assert state.w == pytest.approx(0.0)
    assert len(published) == 1


def test_update_turning(driver, fake_link):
    fake_link.readings = {1: (200, 0, True), 2: (600, 0, True)}

    assert driver.update()

    state = driver.get_state()
    axle = driver.tuning.axle_width
    assert state.left_measured < 0.0
    assert state.v == pytest.approx((state.left_measured + state.right_measured) / 2.0)
    assert state.w == pytest.approx((state.right_measured - state.left_measured) / axle)


def test_update_rejects_bad_status(driver, fake_link, logger, published):
    fake_link.readings = {1: (1000, 2, True), 2: (1000, 0, True)}

    assert not driver.update()

    assert driver.get_state().left_pulses == 0
    assert driver.supervisor.failures == 1
    logger.warning.assert_called()

    # The stale state goes out again
    assert len(published) == 1
    assert published[0].left_pulses == 0


def test_update_rejects_bad_checksum(driver, fake_link):
    fake_link.readings = {1: (1000, 0, True), 2: (1000, 0, False)}
    assert not driver.update()
    assert driver.get_state().right_pulses == 0


def test_update_is_all_or_nothing(driver, fake_link):
    """A good left reading is not stored when the right one fails"""
    fake_link.readings = {1: (1000, 0, True), 2: (1000, 0, True)}
    fake_link.fail_read_channels = {2}

    assert not driver.update()

    state = driver.get_state()
    assert state.left_pulses == 0
    assert state.right_pulses == 0


def test_repeated_read_failures_restart_link(driver, fake_link, usb_reset):
    fake_link.fail_read_channels = {1}

    for _ in range(5):
        driver.update()

    assert driver.supervisor.restarts == 1
    usb_reset.assert_called_once_with('/dev/roboclaw')
    assert len(fake_link.pid_calls) == 4


def test_success_clears_failures(driver, fake_link):
    fake_link.fail_read_channels = {1}
    for _ in range(4):
        driver.update()
    fake_link.fail_read_channels = set()

    assert driver.update()
    assert driver.supervisor.failures == 0


def test_reconfigure_resends_changed_pid(driver, fake_link):
    tuning = driver.tuning.with_updates({'pid_param_p': 20000})

    driver.reconfigure(tuning)

    assert driver.tuning is tuning
    assert fake_link.pid_calls[-2:] == [
        (1, 500, 20000, 0x250, 300000),
        (2, 500, 20000, 0x250, 300000),
    ]


def test_reconfigure_keeps_unchanged_pid(driver, fake_link):
    driver.reconfigure(driver.tuning.with_updates({'max_wheel_vel': 1.0}))
    assert len(fake_link.pid_calls) == 2
    assert driver.tuning.max_wheel_vel == 1.0


def test_reconfigure_pid_failure_is_counted(driver, fake_link, logger):
    fake_link.fail_pid = True

    driver.reconfigure(driver.tuning.with_updates({'pid_param_d': 600}))

    assert driver.supervisor.failures == 1
    logger.warning.assert_called()


def test_new_geometry_applies_to_next_command(driver, fake_link):
    driver.reconfigure(MotorTuningParameters(left_sign=1, wheel_diam=0.2))

    driver.set_velocity(0.5, 0.0)

    expected = round_half_away(0.5 * driver.tuning.quad_pulse_per_meter)
    assert fake_link.speed_calls[-1][2] == expected
    assert fake_link.speed_calls[-2][2] == expected


def test_shutdown_stops_and_closes(driver, fake_link):
    driver.set_velocity(0.5, 0.0)

    driver.shutdown()

    assert [call[2] for call in fake_link.speed_calls[-2:]] == [0, 0]
    assert not fake_link.is_open


def test_shutdown_without_link(fake_link, logger):
    driver = MotorSpeedController(link=fake_link, logger=logger)
    driver.shutdown()
    assert fake_link.speed_calls == []
    assert fake_link.close_calls == 1


if __name__ == '__main__':
    pytest.main([__file__])
