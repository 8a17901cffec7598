# Copyright (c) 2025 Tenstorrent AI ULC
#
# SPDX-License-Identifier: Apache-2.0

"""
Register-addressed I2C transport for IDT wireless power receivers.

Every register access is framed as ``[addr_hi, addr_lo, payload...]``. Reads
write the 2-byte address and then perform a chained read in the same
``I2C_RDWR`` transaction, so no other master can slip in between.
"""

import logging
from pathlib import Path

from smbus2 import SMBus, i2c_msg

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Raised on any I2C I/O failure or short transfer."""


def frame_address(addr):
    """Return the big-endian 2-byte register address prefix."""
    return [(addr >> 8) & 0xFF, addr & 0xFF]


def parse_bus(bus):
    """Accept an adapter number ("0") or a device node ("/dev/i2c-0")."""
    if isinstance(bus, int):
        return bus
    if str(bus).isdigit():
        return int(bus)
    return str(Path(bus))


class I2CTransport:
    """Synchronous register read/write on one I2C target."""

    def __init__(self, bus, addr, smbus=None):
        self.bus = parse_bus(bus)
        self.addr = addr
        self._smbus = smbus

    def open(self):
        if self._smbus is None:
            try:
                self._smbus = SMBus(self.bus)
            except OSError as e:
                raise TransportError(f"Failed to open I2C bus {self.bus}: {e}") from e
            logger.debug("Opened I2C bus %s, target 0x%02x", self.bus, self.addr)
        return self

    def close(self):
        if self._smbus is not None:
            self._smbus.close()
            self._smbus = None

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def write(self, addr, data):
        """Write ``data`` starting at register ``addr``."""
        payload = frame_address(addr) + list(data)
        msg = i2c_msg.write(self.addr, payload)
        logger.debug("write 0x%04x: %s", addr, bytes(data).hex())
        try:
            self._smbus.i2c_rdwr(msg)
        except OSError as e:
            raise TransportError(
                f"I2C write of {len(payload)} bytes to 0x{addr:04x} failed: {e}"
            ) from e

    def read(self, addr, length):
        """Read ``length`` bytes starting at register ``addr``."""
        wr = i2c_msg.write(self.addr, frame_address(addr))
        rd = i2c_msg.read(self.addr, length)
        try:
            self._smbus.i2c_rdwr(wr, rd)
        except OSError as e:
            raise TransportError(
                f"I2C read of {length} bytes from 0x{addr:04x} failed: {e}"
            ) from e
        data = bytes(rd)
        if len(data) != length:
            raise TransportError(
                f"Short I2C read from 0x{addr:04x}: expected {length} bytes, got {len(data)}"
            )
        logger.debug("read 0x%04x: %s", addr, data.hex())
        return data

    def write_byte(self, addr, value):
        self.write(addr, [value & 0xFF])

    def read_byte(self, addr):
        return self.read(addr, 1)[0]

    def read_word(self, addr):
        """Read a little-endian 16-bit register pair."""
        return int.from_bytes(self.read(addr, 2), "little")
