# Copyright (c) 2025 Tenstorrent AI ULC
# SPDX-License-Identifier: Apache-2.0

import logging
import sys
from pathlib import Path

import pytest

# Add the scripts directory to sys.path to import the flasher modules
sys.path.append(str(Path(__file__).resolve().parents[1]))

import mtp_protocol  # noqa: E402
from idt_i2c import I2CTransport, TransportError  # noqa: E402

logger = logging.getLogger(__name__)

PROGRAM_BOOTLOADER = bytes((i * 7 + 3) & 0xFF for i in range(70))
VERIFY_BOOTLOADER = bytes((i * 5 + 1) & 0xFF for i in range(48))
REPAIR_BOOTLOADER = bytes((i * 3 + 9) & 0xFF for i in range(33))


class NullBus:
    """Stands in for an SMBus handle; the fake transport never touches it."""

    def close(self):
        pass

    def i2c_rdwr(self, *msgs):
        raise AssertionError("FakeTransport should not reach the bus")


class FakeTransport(I2CTransport):
    """
    Register-map backed transport. Writes land in a 64 KiB memory image and
    are recorded; reads return memory unless a response is queued for the
    address. The last queued response for an address repeats forever.
    """

    def __init__(self, bus=0, addr=0x3B):
        super().__init__(bus, addr, smbus=NullBus())
        self.mem = bytearray(0x10000)
        self.writes = []
        self.reads = []
        self.responses = {}
        self.corrupt = {}
        self.fail_writes = set()

    def queue(self, addr, *responses):
        self.responses.setdefault(addr, []).extend(bytes(r) for r in responses)

    def write(self, addr, data):
        data = bytes(data)
        self.writes.append((addr, data))
        if addr in self.fail_writes:
            raise TransportError(f"write to 0x{addr:04x} not acknowledged")
        self.mem[addr : addr + len(data)] = data

    def read(self, addr, length):
        self.reads.append((addr, length))
        responses = self.responses.get(addr)
        if responses:
            data = responses.pop(0) if len(responses) > 1 else responses[0]
            return data[:length]
        data = bytearray(self.mem[addr : addr + length])
        for target, value in self.corrupt.items():
            if addr <= target < addr + length:
                data[target - addr] = value
        return bytes(data)

    def writes_to(self, addr):
        return [data for a, data in self.writes if a == addr]


@pytest.fixture()
def transport():
    return FakeTransport()


@pytest.fixture(autouse=True)
def sleeps(monkeypatch):
    """Skip protocol delays, recording the requested durations."""
    calls = []
    monkeypatch.setattr(mtp_protocol.time, "sleep", calls.append)
    return calls


@pytest.fixture()
def bootloader_dir(tmp_path):
    chip_dir = tmp_path / "idt9320"
    chip_dir.mkdir()
    (chip_dir / "mtp_bootloader.bin").write_bytes(PROGRAM_BOOTLOADER)
    (chip_dir / "mtp_verifier.bin").write_bytes(VERIFY_BOOTLOADER)
    (chip_dir / "mtp_repair.bin").write_bytes(REPAIR_BOOTLOADER)
    return tmp_path
