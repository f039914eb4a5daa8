#!/usr/bin/env python3
"""
Tests for the odometry control loop
"""

import math
import threading
import time

import pytest

from scarab_drive.control_loop import ControlLoopScheduler
from scarab_drive.states import POSE_SENTINEL
from scarab_drive.tuning import MotorTuningParameters


@pytest.fixture
def records():
    return {'odom': [], 'tf': []}


@pytest.fixture
def scheduler(stub_driver, fake_clock, logger, records):
    return ControlLoopScheduler(
        stub_driver,
        odometry_publisher=records['odom'].append,
        transform_publisher=records['tf'].append,
        clock=fake_clock,
        stamp_clock=lambda: 1234.5,
        logger=logger
    )


def test_ten_ticks_forward(scheduler, stub_driver, fake_clock, records):
    """1 m/s for ten 0.1 s ticks ends one meter ahead"""
    stub_driver.state.v = 1.0
    for _ in range(10):
        fake_clock.advance(0.1)
        scheduler.tick()

    pose = scheduler.get_pose()
    assert pose.x == pytest.approx(1.0)
    assert pose.y == pytest.approx(0.0)
    assert pose.theta == pytest.approx(0.0)
    assert stub_driver.updates == 10
    assert len(records['odom']) == 10
    assert len(records['tf']) == 10


def test_tick_publishes_odometry_and_transform(scheduler, stub_driver, fake_clock, records):
    stub_driver.state.v = 0.2
    stub_driver.state.w = 0.5
    fake_clock.advance(0.5)

    odom = scheduler.tick()

    assert odom is records['odom'][-1]
    assert odom.stamp == 1234.5
    assert odom.frame_id == 'odom'
    assert odom.child_frame_id == 'base'
    assert odom.linear_velocity == 0.2
    assert odom.angular_velocity == 0.5
    assert odom.theta == pytest.approx(0.25)

    tf = records['tf'][-1]
    assert tf.parent_frame == 'odom'
    assert tf.child_frame == 'base'
    assert tf.translation == (odom.x, odom.y, 0.0)


def test_stalled_tick_is_skipped(scheduler, stub_driver, fake_clock, logger):
    stub_driver.state.v = 1.0
    fake_clock.advance(10.5)

    scheduler.tick()

    pose = scheduler.get_pose()
    assert (pose.x, pose.y, pose.theta) == (0.0, 0.0, 0.0)
    logger.warning.assert_called_once()


def test_non_finite_pose_is_reset(scheduler, stub_driver, fake_clock, logger, records):
    stub_driver.state.v = float('nan')
    fake_clock.advance(0.1)

    scheduler.tick()

    pose = scheduler.get_pose()
    assert pose.x == POSE_SENTINEL
    assert pose.y == POSE_SENTINEL
    assert math.isfinite(pose.theta)
    logger.error.assert_called_once()
    assert records['odom'][-1].x == POSE_SENTINEL


def test_reset_odometry(scheduler, stub_driver, fake_clock):
    stub_driver.state.v = 1.0
    fake_clock.advance(0.5)
    scheduler.tick()

    fake_clock.advance(20.0)
    scheduler.reset_odometry()
    fake_clock.advance(0.1)
    scheduler.tick()

    # The long gap before the reset does not count as a stall
    assert scheduler.get_pose().x == pytest.approx(0.1)


def test_velocity_command_goes_to_driver(scheduler, stub_driver):
    scheduler.on_velocity_command(0.3, -0.1)
    assert stub_driver.commands == [(0.3, -0.1)]


def test_velocity_command_not_blocked_by_state_lock(scheduler, stub_driver):
    with scheduler.state_lock:
        thread = threading.Thread(target=scheduler.on_velocity_command, args=(0.3, 0.1))
        thread.start()
        thread.join(timeout=1.0)
        assert not thread.is_alive()
    assert stub_driver.commands == [(0.3, 0.1)]


def test_reconfigure_frames_and_tuning(scheduler, stub_driver, fake_clock, logger):
    tuning = MotorTuningParameters(freq=10.0)

    scheduler.reconfigure(tuning, odom_frame='world', base_frame='base_link')

    assert scheduler.frequency == 10.0
    assert stub_driver.tunings == [tuning]

    fake_clock.advance(0.1)
    odom = scheduler.tick()
    assert odom.frame_id == 'world'
    assert odom.child_frame_id == 'base_link'
    logger.info.assert_any_call("Setting odom_frame to world")


def test_reconfigure_without_tuning(scheduler, stub_driver):
    scheduler.reconfigure(odom_frame='map')
    assert scheduler.odom_frame == 'map'
    assert stub_driver.tunings == []


@pytest.mark.parametrize('changes', [
    {'freq': 0.0},
    {'freq': -5.0},
    {'wheel_diam': 0.0},
    {'axle_width': 0.0},
])
def test_reconfigure_rejects_invalid_tuning(scheduler, stub_driver, logger, changes):
    tuning = MotorTuningParameters().with_updates(changes)

    assert not scheduler.reconfigure(tuning, odom_frame='world')

    assert scheduler.frequency == 30.0
    assert stub_driver.tunings == []
    assert scheduler.odom_frame == 'world'
    logger.error.assert_called_once()


def _wait_for_log(mock_method, message, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if message in [call[0][0] for call in mock_method.call_args_list]:
            return True
        time.sleep(0.01)
    return False


def test_loop_survives_zero_frequency(stub_driver, logger):
    """The running loop keeps its rate when asked to run at 0 Hz"""
    scheduler = ControlLoopScheduler(stub_driver, frequency=200.0, logger=logger)

    assert not scheduler.reconfigure(MotorTuningParameters(freq=0.0))

    scheduler.start()
    try:
        with scheduler.state_lock:
            scheduler.frequency = 0.0
        assert _wait_for_log(
            logger.error,
            "Keeping 200.000hz loop rate: Loop frequency must be positive, got 0.0"
        )
        updates = stub_driver.updates
        deadline = time.monotonic() + 2.0
        while stub_driver.updates == updates and time.monotonic() < deadline:
            time.sleep(0.01)
        assert scheduler.running
        assert stub_driver.updates > updates
    finally:
        scheduler.stop()


def test_threaded_loop_and_rate_change(stub_driver, logger):
    scheduler = ControlLoopScheduler(stub_driver, frequency=200.0, logger=logger)
    scheduler.start()
    try:
        assert scheduler.running
        scheduler.reconfigure(MotorTuningParameters(freq=100.0))

        deadline = time.monotonic() + 2.0
        messages = []
        while time.monotonic() < deadline:
            messages = [call[0][0] for call in logger.info.call_args_list]
            if "Updating rate to 100.000hz" in messages:
                break
            time.sleep(0.01)
        assert "Updating rate to 100.000hz" in messages
    finally:
        scheduler.stop()

    assert not scheduler.running
    assert stub_driver.updates > 0


if __name__ == '__main__':
    pytest.main([__file__])
