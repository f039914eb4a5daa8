#!/usr/bin/env python3
"""
Motor and wheel tuning parameters for the RoboClaw differential driver
"""

import math
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, List, Mapping, Tuple

import yaml


@dataclass(frozen=True)
class MotorTuningParameters:
    """
    Wheel geometry, speed limits and RoboClaw velocity PID settings

    Instances are immutable; a reconfiguration builds a new one with
    with_updates() and the driver swaps it in whole.
    """
    axle_width: float = 0.255                # m
    wheel_diam: float = 0.1                  # m
    motor_to_wheel_ratio: float = 40.0
    quad_pulse_per_motor_rev: float = 2000.0
    accel_max: float = 1.0                   # m/s^2
    min_wheel_vel: float = 0.0               # m/s
    max_wheel_vel: float = 0.8               # m/s
    pid_param_p: int = 15000
    pid_param_i: int = 0x0250
    pid_param_d: int = 500
    pid_qpps: int = 300000                   # QPPS when the motor is at 100%
    left_sign: int = -1                      # +1 if positive means forward
    right_sign: int = 1
    freq: float = 30.0                       # control loop rate, Hz

    @property
    def quad_pulse_per_meter(self) -> float:
        motor_rev_per_meter = self.motor_to_wheel_ratio / (math.pi * self.wheel_diam)
        return self.quad_pulse_per_motor_rev * motor_rev_per_meter

    @property
    def accel_max_quad(self) -> int:
        """Max acceleration in quad pulses per second per second"""
        return int(self.accel_max * self.quad_pulse_per_meter)

    @property
    def pid_constants(self) -> Tuple[int, int, int, int]:
        """(D, P, I, QPPS), the order the controller expects them"""
        return self.pid_param_d, self.pid_param_p, self.pid_param_i, self.pid_qpps

    def pid_differs(self, other: 'MotorTuningParameters') -> bool:
        return self.pid_constants != other.pid_constants

    def with_updates(self, values: Mapping[str, Any]) -> 'MotorTuningParameters':
        """
        Copy with the known keys of values replaced; other keys are ignored

        Values are cast to the type of the field they replace.

        Raises:
            ValueError: if a value cannot be cast, or is a fractional number
                given for an integer field
        """
        known = set(self.field_names())
        updates = {}
        for key, value in values.items():
            if key not in known:
                continue
            field_type = type(getattr(self, key))
            if field_type is int and isinstance(value, float) and not value.is_integer():
                raise ValueError(f"{key} must be an integer, got {value}")
            updates[key] = field_type(value)
        return replace(self, **updates)

    def validate(self) -> List[str]:
        """Problems that would make the driver or the control loop unusable"""
        problems = []
        if not self.freq > 0.0:
            problems.append(f"freq must be positive, got {self.freq}")
        if not self.wheel_diam > 0.0:
            problems.append(f"wheel_diam must be positive, got {self.wheel_diam}")
        if self.axle_width == 0.0 or not math.isfinite(self.axle_width):
            problems.append(f"axle_width must be non-zero, got {self.axle_width}")
        return problems

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.field_names()}


def load_tuning_file(path: str, base: MotorTuningParameters = None) -> MotorTuningParameters:
    """
    Load tuning overrides from a YAML file

    Accepts a flat mapping or a ROS 2 parameter file
    (``<node>: {ros__parameters: {...}}``). Keys that are not tuning fields
    are ignored.

    Raises:
        OSError: if the file cannot be opened
        ValueError: if the file does not contain a mapping
    """
    with open(path, 'r') as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict):
        raise ValueError(f"Tuning file {path} does not contain a mapping")

    # Unwrap "<node_name>: ros__parameters:" if present
    for value in data.values():
        if isinstance(value, dict) and 'ros__parameters' in value:
            data = value['ros__parameters']
            break

    return (base or MotorTuningParameters()).with_updates(data)
