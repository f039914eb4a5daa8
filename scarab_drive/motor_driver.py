#!/usr/bin/env python3
"""
Differential motor driver for a RoboClaw quadrature-encoder controller

Converts (v, w) commands into per-wheel QPPS setpoints and turns measured
QPPS back into wheel speeds. All hardware access goes through one lock.
"""

import logging
import math
import threading
from typing import Callable, Optional

from .roboclaw_protocol import M1, M2, RoboClawError, RoboClawLink
from .serial_supervisor import SerialFaultSupervisor
from .states import MotorState
from .tuning import MotorTuningParameters
from .utils import vw_to_wheel_speeds, wheel_speeds_to_vw


# Instantaneous speed readings are per 1/125 s; scale to pulses per second
ISPEED_SCALE = 125

# Speed status bytes the controller reports for a good reading
# (0 = forward, 1 = backward)
VALID_SPEED_STATUS = (0, 1)


def round_half_away(value: float) -> int:
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


class MotorSpeedController:
    """
    Velocity-level driver for two wheels on one RoboClaw

    M1 drives the left wheel and M2 the right. A successful set_velocity()
    or update() publishes a MotorState snapshot; failures are handed to the
    SerialFaultSupervisor and never raised to the caller.
    """

    def __init__(
        self,
        tuning: Optional[MotorTuningParameters] = None,
        link=None,
        portname: str = '/dev/roboclaw',
        address: int = 0x80,
        baudrate: int = 115200,
        state_publisher: Optional[Callable[[MotorState], None]] = None,
        logger=None,
        **supervisor_options
    ):
        self.tuning = tuning or MotorTuningParameters()
        self.link = link or RoboClawLink(address=address, baudrate=baudrate)
        self.portname = portname
        self.state_publisher = state_publisher
        self.logger = logger or logging.getLogger(__name__)

        # Guards the link, the tuning and the state
        self.lock = threading.RLock()
        self.state = MotorState()

        self.supervisor = SerialFaultSupervisor(
            self.link, portname,
            on_connected=self.configure,
            logger=self.logger,
            **supervisor_options
        )

    def connect(self) -> bool:
        """Open the link (blocking), push PID constants and stop the motors"""
        with self.lock:
            if not self.supervisor.connect():
                return False
            self.set_velocity(0.0, 0.0)
            return True

    def configure(self):
        """
        Push velocity PID constants to both channels

        Raises:
            RoboClawError: if the controller rejects or misses a command
        """
        with self.lock:
            d, p, i, qpps = self.tuning.pid_constants
            self.logger.info(f"Setting PID params: P={p} I={i} D={d} QPPS={qpps}")
            self.link.set_pid(M1, d, p, i, qpps)
            self.link.set_pid(M2, d, p, i, qpps)

    def reconfigure(self, tuning: MotorTuningParameters):
        """Swap in new tuning; PID constants are re-sent only if they changed"""
        with self.lock:
            previous = self.tuning
            self.tuning = tuning
            self.logger.info("Updating wheel & motor params")
            if tuning.pid_differs(previous):
                try:
                    self.configure()
                except RoboClawError as e:
                    self.logger.warning(f"Problem setting PID params (error={e})")
                    self.supervisor.record_failure(str(e))

    def set_velocity(self, v: float, w: float) -> bool:
        """
        Command the robot to a linear / angular velocity

        The left wheel is sent first; if it fails the right wheel is not
        sent and the next command corrects both.

        Returns:
            bool: True if both wheel commands were acknowledged
        """
        if not (math.isfinite(v) and math.isfinite(w)):
            self.logger.warning(f"Ignoring non-finite velocity command: {v} {w}")
            return False

        with self.lock:
            tuning = self.tuning
            state = self.state
            state.v_setpoint = v
            state.w_setpoint = w

            left, right = vw_to_wheel_speeds(
                v, w,
                tuning.axle_width, tuning.max_wheel_vel, tuning.min_wheel_vel,
                tuning.left_sign, tuning.right_sign
            )
            state.left_setpoint = left * tuning.left_sign
            state.right_setpoint = right * tuning.right_sign

            # Convert speeds to quad pulses per second
            pulses_per_meter = tuning.quad_pulse_per_meter
            state.left_setpoint_pulses = round_half_away(left * pulses_per_meter)
            state.right_setpoint_pulses = round_half_away(right * pulses_per_meter)

            for channel, pulses in ((M1, state.left_setpoint_pulses),
                                    (M2, state.right_setpoint_pulses)):
                try:
                    self.link.speed_accel(channel, tuning.accel_max_quad, pulses)
                except RoboClawError as e:
                    self.logger.warning(
                        f"Problem with SpeedAccel on motor {channel} (error={e})"
                    )
                    self.supervisor.record_failure(str(e))
                    return False

            self.supervisor.record_success()
            self._publish()
            return True

    def update(self) -> bool:
        """
        Read the measured speed of both motors into the state

        Nothing is written unless both readings are good; on a bad reading
        the previous state is published again.

        Returns:
            bool: True if the state was refreshed
        """
        with self.lock:
            readings = []
            for channel in (M1, M2):
                try:
                    speed, status, valid = self.link.read_ispeed(channel)
                except RoboClawError as e:
                    return self._reject(f"Problem reading motor {channel} speed (error={e})")

                if not valid or status not in VALID_SPEED_STATUS:
                    return self._reject(
                        f"Invalid data from motor {channel} (status={status}, valid={valid})"
                    )
                readings.append(speed * ISPEED_SCALE)

            tuning = self.tuning
            state = self.state
            state.left_pulses, state.right_pulses = readings

            # Convert qpps to meters / second
            state.left_measured = tuning.left_sign * state.left_pulses / tuning.quad_pulse_per_meter
            state.right_measured = tuning.right_sign * state.right_pulses / tuning.quad_pulse_per_meter
            state.v, state.w = wheel_speeds_to_vw(
                state.left_measured, state.right_measured, tuning.axle_width
            )

            self.supervisor.record_success()
            self._publish()
            return True

    def get_state(self) -> MotorState:
        """State as reflected by the last set_velocity() and update()"""
        with self.lock:
            return self.state.copy()

    def shutdown(self):
        """Stop the motors and close the link"""
        with self.lock:
            if self.link.is_open:
                self.logger.info("Stopping motors")
                self.set_velocity(0.0, 0.0)
            self.link.close()

    def _publish(self):
        if self.state_publisher is not None:
            self.state_publisher(self.state.copy())

    def _reject(self, message: str) -> bool:
        self.logger.warning(message)
        self.supervisor.record_failure(message)
        self._publish()
        return False
