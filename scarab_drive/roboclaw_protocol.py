#!/usr/bin/env python3
"""
RoboClaw packet serial link

Implements the subset of the RoboClaw packet protocol the differential
driver needs: velocity PID constants, speed with acceleration, and
instantaneous speed readback, each framed with a CRC16 checksum.
"""

import fcntl
import os
import struct
from typing import Callable, Optional, Tuple

import serial


# ioctl request _IO('U', 20) from linux/usbdevice_fs.h
USBDEVFS_RESET = 21780

_ACK = 0xFF

M1 = 1
M2 = 2


class CMD:
    SETM1PID = 28
    SETM2PID = 29
    GETM1ISPEED = 30
    GETM2ISPEED = 31
    M1SPEEDACCEL = 38
    M2SPEEDACCEL = 39


_PID_CMD = {M1: CMD.SETM1PID, M2: CMD.SETM2PID}
_SPEEDACCEL_CMD = {M1: CMD.M1SPEEDACCEL, M2: CMD.M2SPEEDACCEL}
_ISPEED_CMD = {M1: CMD.GETM1ISPEED, M2: CMD.GETM2ISPEED}


class RoboClawError(Exception):
    """Any failure talking to the motor controller"""


class AckError(RoboClawError):
    pass


class LinkTimeout(RoboClawError):
    pass


class UsbResetError(RoboClawError):
    pass


def crc16(data: bytes, crc: int = 0) -> int:
    """CRC16-CCITT (poly 0x1021) as used by RoboClaw packet serial"""
    for byte in data:
        crc ^= (byte & 0xFF) << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ 0x1021) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return crc


class RoboClawLink:
    """
    Serial connection to one RoboClaw controller

    Not thread safe; the motor driver serializes all access.
    """

    def __init__(
        self,
        address: int = 0x80,
        baudrate: int = 115200,
        timeout: float = 0.05,
        serial_factory: Callable[..., serial.Serial] = serial.Serial
    ):
        self.address = address
        self.baudrate = baudrate
        self.timeout = timeout
        self.serial_factory = serial_factory
        self.port: Optional[str] = None
        self._ser = None

    @property
    def is_open(self) -> bool:
        return self._ser is not None and self._ser.is_open

    def open(self, port: str):
        """Open the serial port, replacing any previous connection"""
        self.close()
        try:
            self._ser = self.serial_factory(port, self.baudrate, timeout=self.timeout)
            self._ser.reset_input_buffer()
        except (serial.SerialException, OSError) as e:
            self._ser = None
            raise RoboClawError(f"Cannot open {port}: {e}") from e
        self.port = port

    def close(self):
        if self._ser is not None:
            try:
                self._ser.close()
            except (serial.SerialException, OSError):
                pass
            self._ser = None

    # --- Framing ---

    def _exchange(self, packet: bytes, response_len: int) -> bytes:
        if not self.is_open:
            raise RoboClawError("Serial link not open")
        try:
            self._ser.write(packet)
            self._ser.flush()
            response = self._ser.read(response_len)
        except (serial.SerialException, OSError) as e:
            raise RoboClawError(f"Serial I/O failed: {e}") from e
        if len(response) < response_len:
            raise LinkTimeout(
                f"Expected {response_len} bytes from controller, got {len(response)}"
            )
        return response

    def _write_command(self, cmd: int, payload: bytes):
        frame = bytes([self.address, cmd]) + payload
        crc = crc16(frame)
        ack = self._exchange(frame + struct.pack('>H', crc), 1)
        if ack[0] != _ACK:
            raise AckError(f"Command {cmd} not acknowledged (got 0x{ack[0]:02X})")

    def _read_command(self, cmd: int, payload_len: int) -> Tuple[bytes, bool]:
        header = bytes([self.address, cmd])
        response = self._exchange(header, payload_len + 2)
        data = response[:payload_len]
        rx_crc = struct.unpack('>H', response[payload_len:])[0]
        return data, crc16(header + data) == rx_crc

    # --- Commands ---

    def set_pid(self, channel: int, d: int, p: int, i: int, qpps: int):
        """Set velocity PID constants of one channel"""
        self._write_command(_PID_CMD[channel], struct.pack('>IIII', d, p, i, qpps))

    def speed_accel(self, channel: int, accel: int, speed: int):
        """Drive one channel at speed QPPS, ramping at accel QPPS/s"""
        self._write_command(
            _SPEEDACCEL_CMD[channel], struct.pack('>Ii', max(0, int(accel)), int(speed))
        )

    def read_ispeed(self, channel: int) -> Tuple[int, int, bool]:
        """
        Read instantaneous speed of one channel

        Returns:
            Tuple[int, int, bool]: (speed, status, valid); valid is False
            when the response checksum did not match
        """
        data, valid = self._read_command(_ISPEED_CMD[channel], 5)
        speed, status = struct.unpack('>iB', data)
        return speed, status, valid


def find_usb_device(port: str, sysfs_root: str = '/sys', devfs_root: str = '/dev') -> str:
    """
    Resolve a tty (or a udev symlink to one) to its /dev/bus/usb node

    Raises:
        UsbResetError: if the tty does not sit on a USB device
    """
    tty = os.path.basename(os.path.realpath(port))
    path = os.path.realpath(os.path.join(sysfs_root, 'class', 'tty', tty, 'device'))
    while path and path != os.path.dirname(path):
        busnum = os.path.join(path, 'busnum')
        devnum = os.path.join(path, 'devnum')
        if os.path.exists(busnum) and os.path.exists(devnum):
            with open(busnum) as f:
                bus = int(f.read().strip())
            with open(devnum) as f:
                dev = int(f.read().strip())
            return os.path.join(devfs_root, 'bus', 'usb', f'{bus:03d}', f'{dev:03d}')
        path = os.path.dirname(path)
    raise UsbResetError(f"No USB device found for {port}")


def reset_usb_device(port: str):
    """Issue a USB port reset to the device behind a serial port"""
    device = find_usb_device(port)
    try:
        fd = os.open(device, os.O_WRONLY)
        try:
            fcntl.ioctl(fd, USBDEVFS_RESET, 0)
        finally:
            os.close(fd)
    except OSError as e:
        raise UsbResetError(f"USB reset of {device} failed: {e}") from e
