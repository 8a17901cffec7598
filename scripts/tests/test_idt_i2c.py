# Copyright (c) 2025 Tenstorrent AI ULC
# SPDX-License-Identifier: Apache-2.0

import ctypes

import pytest

import idt_i2c
from idt_i2c import I2CTransport, TransportError

I2C_M_RD = 0x0001


class RecordingBus:
    """Minimal SMBus stand-in that records i2c_rdwr messages."""

    def __init__(self, read_data=b"", error=None):
        self.read_data = read_data
        self.error = error
        self.transactions = []
        self.closed = False

    def i2c_rdwr(self, *msgs):
        if self.error:
            raise self.error
        record = []
        for msg in msgs:
            if msg.flags & I2C_M_RD:
                ctypes.memmove(msg.buf, self.read_data, msg.len)
                record.append(("read", msg.addr, msg.len))
            else:
                record.append(("write", msg.addr, bytes(msg)))
        self.transactions.append(record)

    def close(self):
        self.closed = True


def test_write_frames_address():
    bus = RecordingBus()
    transport = I2CTransport(0, 0x3B, smbus=bus)

    transport.write(0x1C10, b"\x01\x02\x03")
    transport.write_byte(0x3000, 0x5A)

    assert bus.transactions == [
        [("write", 0x3B, b"\x1c\x10\x01\x02\x03")],
        [("write", 0x3B, b"\x30\x00\x5a")],
    ]


def test_read_is_one_combined_transaction():
    bus = RecordingBus(read_data=b"\x11\x02")
    transport = I2CTransport(0, 0x3B, smbus=bus)

    assert transport.read(0x0400, 2) == b"\x11\x02"
    assert bus.transactions == [[("write", 0x3B, b"\x04\x00"), ("read", 0x3B, 2)]]


def test_read_helpers():
    transport = I2CTransport(0, 0x3B, smbus=RecordingBus(read_data=b"\x11\x02"))
    assert transport.read_word(0x0400) == 0x0211
    assert transport.read_byte(0x0400) == 0x11


def test_write_failure_raises_transport_error():
    transport = I2CTransport(0, 0x3B, smbus=RecordingBus(error=OSError(121, "Remote I/O error")))
    with pytest.raises(TransportError, match="0x3040"):
        transport.write_byte(0x3040, 0x80)


def test_read_failure_raises_transport_error():
    transport = I2CTransport(0, 0x3B, smbus=RecordingBus(error=OSError(6, "No such device")))
    with pytest.raises(TransportError):
        transport.read(0x0400, 1)


def test_open_failure(monkeypatch):
    def fail(bus):
        raise FileNotFoundError(2, "No such file or directory")

    monkeypatch.setattr(idt_i2c, "SMBus", fail)
    with pytest.raises(TransportError, match="Failed to open"):
        I2CTransport("7", 0x3B).open()


def test_context_manager_closes_bus(monkeypatch):
    bus = RecordingBus()
    monkeypatch.setattr(idt_i2c, "SMBus", lambda n: bus)

    with I2CTransport("1", 0x3B) as transport:
        assert transport.bus == 1
    assert bus.closed


@pytest.mark.parametrize(
    "value,expected", [("0", 0), ("12", 12), (3, 3), ("/dev/i2c-4", "/dev/i2c-4")]
)
def test_parse_bus(value, expected):
    assert idt_i2c.parse_bus(value) == expected
