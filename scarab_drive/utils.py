#!/usr/bin/env python3
"""
Utility functions for differential-drive kinematics and odometry
"""

import math
import threading
import time
from typing import Callable, Optional, Tuple, List


# Integration steps longer than this imply a stalled loop or a clock jump
MAX_INTEGRATION_DT = 10.0


def vw_to_wheel_speeds(
    v: float, w: float,
    axle_width: float, max_wheel_vel: float, min_wheel_vel: float,
    left_sign: int = 1, right_sign: int = 1
) -> Tuple[float, float]:
    """
    Convert linear / angular velocity to left / right wheel speeds

    Both wheels are scaled by the same factor so the commanded turning
    ratio survives the speed limit. Speeds below the minimum are forced to
    zero, and the per-side sign is applied last.

    Args:
        v (float): Linear velocity in m/s
        w (float): Angular velocity in rad/s
        axle_width (float): Distance between the wheels in meters
        max_wheel_vel (float): Maximum wheel speed in m/s
        min_wheel_vel (float): Wheel speeds below this are zeroed
        left_sign (int): +1 if positive means forward on the left motor
        right_sign (int): +1 if positive means forward on the right motor

    Returns:
        Tuple[float, float]: (left, right) wheel speeds in m/s
    """
    left = v - (axle_width / 2.0) * w
    right = v + (axle_width / 2.0) * w

    limit_k = 1.0
    if abs(left) > max_wheel_vel:
        limit_k = max_wheel_vel / abs(left)
    if abs(right) > max_wheel_vel:
        limit_k = min(limit_k, max_wheel_vel / abs(right))

    if limit_k != 1.0:
        left *= limit_k
        right *= limit_k

    if abs(left) < min_wheel_vel:
        left = 0.0
    if abs(right) < min_wheel_vel:
        right = 0.0

    return left * left_sign, right * right_sign


def wheel_speeds_to_vw(left: float, right: float, axle_width: float) -> Tuple[float, float]:
    """
    Calculate linear and angular velocity from 2WD wheel speeds

    Args:
        left (float): Left wheel speed in m/s
        right (float): Right wheel speed in m/s
        axle_width (float): Distance between wheels

    Returns:
        Tuple[float, float]: (linear_velocity, angular_velocity)
    """
    return (right + left) / 2.0, (right - left) / axle_width


def integrate_odometry(v: float, w: float, dt: float) -> Tuple[float, float, float]:
    """
    Pose increment of a constant (v, w) arc over dt, in the previous heading frame

    Uses the Taylor expansion of the exact arc integral, which stays well
    defined at w == 0.

    Args:
        v (float): Linear velocity in m/s
        w (float): Angular velocity in rad/s
        dt (float): Elapsed time in seconds

    Returns:
        Tuple[float, float, float]: (dx, dy, dtheta)
    """
    dx = v * (dt - (w * w) * (dt * dt * dt) / 6.0)
    dy = v * (w * dt * dt / 2.0 - (w * w * w) * (dt * dt * dt * dt) / 24.0)
    dtheta = w * dt
    return dx, dy, dtheta


def apply_pose_delta(
    x: float, y: float, theta: float,
    dx: float, dy: float, dtheta: float
) -> Tuple[float, float, float]:
    """
    Rotate a body-frame increment into the world frame and add it to the pose

    Returns:
        Tuple[float, float, float]: (new_x, new_y, new_theta), theta unwrapped
    """
    cos_th = math.cos(theta)
    sin_th = math.sin(theta)
    return (
        x + dx * cos_th - dy * sin_th,
        y + dx * sin_th + dy * cos_th,
        theta + dtheta,
    )


def euler_to_quaternion(roll: float, pitch: float, yaw: float) -> List[float]:
    """
    Convert Euler angles to quaternion [x, y, z, w]

    Args:
        roll (float): Roll angle in radians
        pitch (float): Pitch angle in radians
        yaw (float): Yaw angle in radians

    Returns:
        List[float]: Quaternion [x, y, z, w]
    """
    cy = math.cos(yaw * 0.5)
    sy = math.sin(yaw * 0.5)
    cp = math.cos(pitch * 0.5)
    sp = math.sin(pitch * 0.5)
    cr = math.cos(roll * 0.5)
    sr = math.sin(roll * 0.5)

    qw = cr * cp * cy + sr * sp * sy
    qx = sr * cp * cy - cr * sp * sy
    qy = cr * sp * cy + sr * cp * sy
    qz = cr * cp * sy - sr * sp * cy

    return [qx, qy, qz, qw]


def yaw_to_quaternion(yaw: float) -> List[float]:
    """Planar heading as quaternion [x, y, z, w]"""
    return euler_to_quaternion(0.0, 0.0, yaw)


def quaternion_to_yaw(x: float, y: float, z: float, w: float) -> float:
    """Extract the yaw (rotation about z) from a quaternion"""
    siny_cosp = 2.0 * (w * z + x * y)
    cosy_cosp = 1.0 - 2.0 * (y * y + z * z)
    return math.atan2(siny_cosp, cosy_cosp)


class LoopRate:
    """
    Fixed-rate pacing for a loop running in its own thread

    sleep() waits for the remainder of the current period on a
    threading.Event, so setting the event interrupts the wait at once.
    """

    def __init__(
        self,
        frequency: float,
        stop_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        if frequency <= 0.0:
            raise ValueError(f"Loop frequency must be positive, got {frequency}")
        self.frequency = frequency
        self.period = 1.0 / frequency
        self.stop_event = stop_event or threading.Event()
        self.clock = clock
        self._next_deadline = self.clock() + self.period

    def sleep(self) -> bool:
        """Sleep until the next period boundary. Returns False if stopped."""
        remaining = self._next_deadline - self.clock()
        if remaining > 0.0:
            self.stop_event.wait(remaining)
            self._next_deadline += self.period
        else:
            # Overran the period; restart the schedule from now
            self._next_deadline = self.clock() + self.period
        return not self.stop_event.is_set()
