#!/usr/bin/env python3
"""
Serial link supervision for the RoboClaw motor controller

Counts consecutive communication failures and, once they pile up, resets
the USB device and blocks until the link is back and configured again.
"""

import logging
import time
from enum import Enum
from typing import Callable, Optional

from .roboclaw_protocol import RoboClawError, reset_usb_device


class LinkState(Enum):
    CLOSED = 'closed'
    OPENING = 'opening'
    OPEN = 'open'
    FAULTING = 'faulting'
    RESTARTING = 'restarting'


class SerialFaultSupervisor:
    """
    Keeps the serial link to the motor controller in service

    connect() retries forever (until is_alive() turns False); it is the one
    place allowed to stall the control loop. Every other failure is just
    counted until the threshold is reached.
    """

    def __init__(
        self,
        link,
        portname: str,
        on_connected: Optional[Callable[[], None]] = None,
        usb_reset: Optional[Callable[[str], None]] = reset_usb_device,
        failure_threshold: int = 5,
        notify_every: float = 10.0,
        check_every: float = 0.25,
        is_alive: Callable[[], bool] = lambda: True,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        logger=None
    ):
        """
        Args:
            link: Serial link exposing open(port), close() and is_open
            portname (str): Device path of the controller
            on_connected (Callable): Run after every successful open, e.g.
                pushing PID constants; a RoboClawError counts as a failed attempt
            usb_reset (Callable): Hardware reset of the device behind portname
            failure_threshold (int): Consecutive failures that force a restart
            notify_every (float): Seconds between "still not connected" warnings
            check_every (float): Seconds between open attempts
            is_alive (Callable): Returns False once the process is shutting down
        """
        self.link = link
        self.portname = portname
        self.on_connected = on_connected
        self.usb_reset = usb_reset
        self.failure_threshold = failure_threshold
        self.notify_every = notify_every
        self.check_every = check_every
        self.is_alive = is_alive
        self.sleep = sleep
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)

        self.failures = 0
        self.restarts = 0
        self.last_failure = ''
        self.state = LinkState.CLOSED

    def connect(self) -> bool:
        """
        Block until the link is open and configured

        Returns:
            bool: True once connected, False if shutdown interrupted the wait
        """
        self.state = LinkState.OPENING
        self.logger.info(f"Connecting to {self.portname}...")

        start = self.clock()
        last_notify = None
        last_error = ''
        while self.is_alive():
            try:
                self.link.open(self.portname)
                if self.on_connected is not None:
                    self.on_connected()
                self.failures = 0
                self.state = LinkState.OPEN
                self.logger.info(f"Connected to {self.portname}")
                return True
            except RoboClawError as e:
                last_error = str(e)
                self.link.close()

            self.sleep(self.check_every)
            now = self.clock()
            elapsed = now - start
            if elapsed > self.notify_every and (
                last_notify is None or now - last_notify >= self.notify_every
            ):
                last_notify = now
                self.logger.warning(
                    f"Haven't connected to {self.portname} in {elapsed:.2f} seconds. "
                    f"Last error={last_error}"
                )

        self.state = LinkState.CLOSED
        return False

    def record_failure(self, reason: str = '') -> bool:
        """
        Count one communication failure

        Args:
            reason (str): Description of the failure, logged on restart

        Returns:
            bool: True if this failure triggered a link restart
        """
        self.failures += 1
        self.last_failure = reason
        if self.failures < self.failure_threshold:
            return False

        self.state = LinkState.FAULTING
        self.logger.error(
            f"{self.failures} consecutive errors from {self.portname}, restarting "
            f"(last error={reason})"
        )
        self.restart()
        return True

    def record_success(self):
        self.failures = 0

    def restart(self):
        """Reset the USB device and reconnect"""
        self.restarts += 1
        self.state = LinkState.RESTARTING
        self.link.close()
        if self.usb_reset is not None:
            try:
                self.usb_reset(self.portname)
            except RoboClawError as e:
                self.logger.warning(f"USB reset failed: {e}")
        self.failures = 0
        self.connect()
