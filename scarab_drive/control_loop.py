#!/usr/bin/env python3
"""
Fixed-rate odometry loop for the RoboClaw differential driver

Reads measured wheel speeds, integrates them into a pose and hands
odometry / transform records to the publishers each tick.
"""

import logging
import threading
import time
from typing import Callable, Optional

from .motor_driver import MotorSpeedController
from .states import OdometryRecord, Pose, TransformRecord
from .tuning import MotorTuningParameters
from .utils import LoopRate


class ControlLoopScheduler:
    """
    Runs the read / integrate / publish cycle in a dedicated thread

    Two locks are involved and never merged: state_lock guards the pose,
    the frames and the loop rate; the driver's own lock guards the hardware.
    Velocity commands only take the driver lock, so they are not held up by
    odometry publishing.
    """

    def __init__(
        self,
        driver: MotorSpeedController,
        frequency: float = 30.0,
        odom_frame: str = 'odom',
        base_frame: str = 'base',
        odometry_publisher: Optional[Callable[[OdometryRecord], None]] = None,
        transform_publisher: Optional[Callable[[TransformRecord], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        stamp_clock: Callable[[], float] = time.time,
        logger=None
    ):
        self.driver = driver
        self.frequency = frequency
        self.odom_frame = odom_frame
        self.base_frame = base_frame
        self.odometry_publisher = odometry_publisher
        self.transform_publisher = transform_publisher
        self.clock = clock
        self.stamp_clock = stamp_clock
        self.logger = logger or logging.getLogger(__name__)

        self.state_lock = threading.Lock()
        self.pose = Pose()
        self.last_update = self.clock()

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # --- Command path (hardware lock only) ---

    def on_velocity_command(self, v: float, w: float):
        self.logger.debug(f"Got cmd_vel: {v:.2f} {w:.2f}")
        self.driver.set_velocity(v, w)

    # --- Loop ---

    def tick(self) -> OdometryRecord:
        """Run one read / integrate / publish cycle"""
        with self.state_lock:
            return self._update_and_publish()

    def _update_and_publish(self) -> OdometryRecord:
        # Assumes state_lock is held
        with self.driver.lock:
            self.driver.update()
            state = self.driver.get_state()
            stamp = self.stamp_clock()

        now = self.clock()
        dt = now - self.last_update
        self.last_update = now

        if not self.pose.integrate(state.v, state.w, dt):
            self.logger.warning(f"Skipping odometry step after {dt:.2f}s without update")

        reset = self.pose.sanitize()
        if reset:
            self.logger.error(
                f"Non-finite pose ({', '.join(reset)}) after v={state.v}, w={state.w}, dt={dt}"
            )

        odom = OdometryRecord(
            stamp=stamp,
            frame_id=self.odom_frame,
            child_frame_id=self.base_frame,
            x=self.pose.x,
            y=self.pose.y,
            theta=self.pose.theta,
            linear_velocity=state.v,
            angular_velocity=state.w,
        )
        if self.odometry_publisher is not None:
            self.odometry_publisher(odom)
        if self.transform_publisher is not None:
            self.transform_publisher(TransformRecord.from_odometry(odom))
        return odom

    def spin(self):
        """Loop until stop(); the rate is re-read every iteration"""
        current_freq = self.frequency
        rate = LoopRate(current_freq, self._stop_event, self.clock)
        while not self._stop_event.is_set():
            with self.state_lock:
                if self.frequency != current_freq:
                    current_freq = self.frequency
                    try:
                        new_rate = LoopRate(current_freq, self._stop_event, self.clock)
                    except ValueError as e:
                        self.logger.error(f"Keeping {rate.frequency:.3f}hz loop rate: {e}")
                    else:
                        self.logger.info(f"Updating rate to {current_freq:.3f}hz")
                        rate = new_rate
                self._update_and_publish()
            rate.sleep()

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.spin, name='control_loop', daemon=True)
        self._thread.start()

    def stop(self):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # --- Reconfiguration and queries ---

    def reconfigure(
        self,
        tuning: Optional[MotorTuningParameters] = None,
        odom_frame: Optional[str] = None,
        base_frame: Optional[str] = None
    ) -> bool:
        """
        Apply new frames and tuning; tuning that fails validation is dropped

        Returns:
            bool: False if the tuning was rejected
        """
        problems = tuning.validate() if tuning is not None else []
        if problems:
            self.logger.error(f"Rejecting tuning update: {'; '.join(problems)}")
            tuning = None

        with self.state_lock:
            if odom_frame and odom_frame != self.odom_frame:
                self.logger.info(f"Setting odom_frame to {odom_frame}")
                self.odom_frame = odom_frame
            if base_frame and base_frame != self.base_frame:
                self.logger.info(f"Setting base_frame to {base_frame}")
                self.base_frame = base_frame
            if tuning is not None:
                self.frequency = tuning.freq

        if tuning is not None:
            self.driver.reconfigure(tuning)
        return not problems

    def reset_odometry(self):
        with self.state_lock:
            self.pose.reset()
            self.last_update = self.clock()

    def get_pose(self) -> Pose:
        with self.state_lock:
            return self.pose.copy()
