#!/usr/bin/env python3
"""
State records shared by the motor driver, the control loop and the simulator
"""

import math
from dataclasses import dataclass, field, asdict, replace
from typing import Any, Dict, List, Tuple

from .utils import (
    MAX_INTEGRATION_DT, integrate_odometry, apply_pose_delta, yaw_to_quaternion
)


# Written into any pose coordinate that became non-finite
POSE_SENTINEL = -1.0


@dataclass
class MotorState:
    """Setpoints and measurements of both drive motors"""
    v_setpoint: float = 0.0
    w_setpoint: float = 0.0
    left_setpoint: float = 0.0           # m/s, before sign correction
    right_setpoint: float = 0.0
    left_setpoint_pulses: int = 0        # QPPS sent, sign-corrected
    right_setpoint_pulses: int = 0
    left_pulses: int = 0                 # QPPS read back
    right_pulses: int = 0
    left_measured: float = 0.0           # m/s
    right_measured: float = 0.0
    v: float = 0.0
    w: float = 0.0

    def copy(self) -> 'MotorState':
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Pose:
    """Planar pose estimate; theta is never wrapped"""
    x: float = 0.0
    y: float = 0.0
    theta: float = 0.0

    def copy(self) -> 'Pose':
        return replace(self)

    def integrate(self, v: float, w: float, dt: float) -> bool:
        """
        Advance the pose by a constant (v, w) over dt

        Returns:
            bool: False if dt was implausibly long and the step was skipped
        """
        if dt > MAX_INTEGRATION_DT:
            return False
        dx, dy, dtheta = integrate_odometry(v, w, dt)
        self.x, self.y, self.theta = apply_pose_delta(
            self.x, self.y, self.theta, dx, dy, dtheta
        )
        return True

    def sanitize(self) -> List[str]:
        """Reset non-finite coordinates to the sentinel; returns the fields reset"""
        reset = []
        for name in ('x', 'y', 'theta'):
            if not math.isfinite(getattr(self, name)):
                setattr(self, name, POSE_SENTINEL)
                reset.append(name)
        return reset

    def reset(self, x: float = 0.0, y: float = 0.0, theta: float = 0.0):
        self.x = x
        self.y = y
        self.theta = theta


@dataclass
class OdometryRecord:
    """Transport-neutral odometry message"""
    stamp: float
    frame_id: str
    child_frame_id: str
    x: float
    y: float
    theta: float
    linear_velocity: float = 0.0
    angular_velocity: float = 0.0
    orientation: List[float] = field(default_factory=list)

    def __post_init__(self):
        if not self.orientation:
            self.orientation = yaw_to_quaternion(self.theta)

    @property
    def position(self) -> Tuple[float, float]:
        return self.x, self.y


@dataclass
class TransformRecord:
    """Transport-neutral rigid transform parent_frame -> child_frame"""
    stamp: float
    parent_frame: str
    child_frame: str
    translation: Tuple[float, float, float]
    rotation: List[float]

    @classmethod
    def from_odometry(cls, odom: OdometryRecord) -> 'TransformRecord':
        return cls(
            stamp=odom.stamp,
            parent_frame=odom.frame_id,
            child_frame=odom.child_frame_id,
            translation=(odom.x, odom.y, 0.0),
            rotation=list(odom.orientation),
        )
