# Copyright (c) 2025 Tenstorrent AI ULC
#
# SPDX-License-Identifier: Apache-2.0

"""
MTP programming protocol for IDT wireless power receivers.

The chip cannot write its own MTP from the application firmware. Instead the
host halts the processor, loads a small bootloader into RAM, remaps execution
and resets the core. The bootloader then exposes a "section" structure at
0x0400 which the host fills and kicks with a start command, polling the status
byte until the bootloader reports an outcome.

All functions take a transport with ``write(addr, data)``,
``read(addr, length)`` and the byte/word helpers of ``idt_i2c.I2CTransport``.
"""

import logging
import struct
import time
from collections import namedtuple

from idt_i2c import TransportError

logger = logging.getLogger(__name__)

# System configuration registers
SYS_UNLOCK_REG = 0x3000
SYS_CLK_SRC_REG = 0x3004
SYS_AHB_DIV_REG = 0x3008
SYS_PULSE_1US_REG = 0x300C
SYS_PULSE_500NS_REG = 0x300D
SYS_CTRL_REG = 0x3040
SYS_REMAP_REG = 0x3048

UNLOCK_SYS_REGISTERS = 0x5A
HS_CLOCKS = 0x00
AHB_CLOCKS = 0x09
PULSE_1US = 0x05
PULSE_500NS = 0x1D
HALT_PROCESSOR = 0x10
ENABLE_MTP = 0x01
RESET_PROCESSOR = 0x80

# Bootloader programming structure
SECTION_REG = 0x0400
SECTION_DIAG_REG = 0x0401
VERIFY_ADDR_REG = 0x0402
VERIFY_SIZE_REG = 0x0404
VERIFY_CHECKSUM_REG = 0x0406

INIT_PROGRAMMING_STRUCTURE = 0x00
START_PROG_CYCLE = 0x01
START_VERIFY_CYCLE = 0x11
START_REPAIR_CYCLE = 0x01

STATUS_BUSY = 0x01
STATUS_OK = 0x02
STATUS_MTP_WRITE_ERR = 0x04
STATUS_CHECKSUM_ERR = 0x08
STATUS_CRC_BUSY = 0x01
STATUS_CRC_ERR = 0x08
STATUS_MTP_REPAIR_ERR = 0x40

BOOTLOADER_CHUNK_SIZE = 16
SECTION_SIZE = 128
MTP_SIZE_LIMIT = 1 << 14

POLL_INTERVAL = 0.02
PROGRAM_RETRIES = 250
VERIFY_RETRIES = 1000
REPAIR_RETRIES = 1000

PREPARE_DELAY = 0.01
SETTLE_DELAY = 0.1

_SECTION_HEADER = struct.Struct("<HHHH")


class MtpError(Exception):
    """Base class for MTP protocol failures."""


class SizeLimitError(MtpError):
    def __init__(self, size, limit=MTP_SIZE_LIMIT):
        self.size = size
        self.limit = limit
        super().__init__(f"Firmware is {size} bytes, MTP holds at most {limit} bytes")


class VerificationMismatchError(MtpError):
    """Bootloader read-back differs from the image.

    ``mismatches`` is a list of ``(offset, expected, actual)`` tuples.
    """

    def __init__(self, base, mismatches):
        self.base = base
        self.mismatches = mismatches
        details = ", ".join(
            f"byte {off}: expected 0x{exp:02x}, actual 0x{act:02x}"
            for off, exp, act in mismatches
        )
        super().__init__(
            f"Bootloader verification at 0x{base:04x} failed "
            f"({len(mismatches)} bytes differ): {details}"
        )


class ProtocolTimeoutError(MtpError):
    def __init__(self, cycle, status, polls):
        self.cycle = cycle
        self.status = status
        self.polls = polls
        super().__init__(
            f"Timeout waiting for {cycle} cycle after {polls} polls, "
            f"status: 0x{status:x}"
        )


class StatusError(MtpError):
    """The bootloader reported a failing status for a cycle."""

    def __init__(self, cycle, status, label, diagnostic=None, start_addr=None):
        self.cycle = cycle
        self.status = status
        self.label = label
        self.diagnostic = diagnostic
        self.start_addr = start_addr
        msg = f"{cycle} cycle failed: {label} (status 0x{status:x})"
        if start_addr is not None:
            msg = f"0x{start_addr:04x}: {msg}"
        if diagnostic is not None:
            msg += f", diagnostic 0x{diagnostic:02x}"
        super().__init__(msg)


class SectionDescriptor(
    namedtuple(
        "SectionDescriptor",
        ["status", "start_addr", "code_length", "checksum", "payload"],
    )
):
    """One bootloader section: header words followed by up to 128 bytes."""

    def pack(self):
        if len(self.payload) > SECTION_SIZE:
            raise ValueError(
                f"Section payload is {len(self.payload)} bytes, max {SECTION_SIZE}"
            )
        header = _SECTION_HEADER.pack(
            self.status, self.start_addr, self.code_length, self.checksum
        )
        return header + bytes(self.payload).ljust(SECTION_SIZE, b"\x00")


def section_checksum(payload, start_addr, code_length=None):
    """Sum of payload bytes plus start address and length, truncated to 16 bits."""
    if code_length is None:
        code_length = len(payload)
    return (sum(payload) + start_addr + code_length) & 0xFFFF


def check_firmware_size(firmware):
    if len(firmware) > MTP_SIZE_LIMIT:
        raise SizeLimitError(len(firmware))


def split_sections(firmware):
    """Yield a ``SectionDescriptor`` for every 128-byte chunk of ``firmware``."""
    check_firmware_size(firmware)
    for start_addr in range(0, min(len(firmware), MTP_SIZE_LIMIT), SECTION_SIZE):
        payload = bytes(firmware[start_addr : start_addr + SECTION_SIZE])
        yield SectionDescriptor(
            status=0,
            start_addr=start_addr,
            code_length=len(payload),
            checksum=section_checksum(payload, start_addr),
            payload=payload,
        )


def prepare_system(transport):
    """Unlock system registers, set up clocks and halt the processor."""
    logger.debug("Preparing system for bootloader")
    transport.write_byte(SYS_UNLOCK_REG, UNLOCK_SYS_REGISTERS)
    transport.write_byte(SYS_CLK_SRC_REG, HS_CLOCKS)
    transport.write_byte(SYS_AHB_DIV_REG, AHB_CLOCKS)
    transport.write_byte(SYS_PULSE_1US_REG, PULSE_1US)
    transport.write_byte(SYS_PULSE_500NS_REG, PULSE_500NS)

    transport.write_byte(SYS_CTRL_REG, HALT_PROCESSOR | ENABLE_MTP)
    time.sleep(PREPARE_DELAY)
    transport.write_byte(SYS_CTRL_REG, HALT_PROCESSOR)
    time.sleep(PREPARE_DELAY)


def load_bootloader(transport, image, base):
    """Write ``image`` to RAM at ``base`` in 16-byte chunks, reading each back.

    Chunk mismatches are logged but do not stop the load; the full image check
    in :func:`verify_bootloader` decides whether the load succeeded.

    Returns:
        List of chunk addresses whose read-back differed.
    """
    logger.info("Loading %d byte bootloader at 0x%04x", len(image), base)
    failed = []
    for offset in range(0, len(image), BOOTLOADER_CHUNK_SIZE):
        chunk = bytes(image[offset : offset + BOOTLOADER_CHUNK_SIZE])
        addr = base + offset
        transport.write(addr, chunk)
        if transport.read(addr, len(chunk)) != chunk:
            logger.warning("0x%04x: bootloader chunk verification failed", addr)
            failed.append(addr)
    return failed


def verify_bootloader(transport, image, base):
    """Read back the whole bootloader and compare it with ``image``."""
    actual = transport.read(base, len(image))
    mismatches = [
        (off, exp, act) for off, (exp, act) in enumerate(zip(image, actual)) if exp != act
    ]
    if mismatches:
        for off, exp, act in mismatches:
            logger.error("byte %d: expect: 0x%x, actual: 0x%x", off, exp, act)
        raise VerificationMismatchError(base, mismatches)
    logger.info("Bootloader verified")


def start_bootloader(transport, remap_value):
    """Remap execution from RAM to MTP, reset the processor and let it settle.

    The chip resets while the reset write is still on the bus, so that write
    is usually not acknowledged.
    """
    transport.write_byte(SYS_REMAP_REG, remap_value)
    try:
        transport.write_byte(SYS_CTRL_REG, RESET_PROCESSOR)
    except TransportError:
        logger.info("CPU reset (reset write not acknowledged)")
    else:
        logger.debug("CPU reset write acknowledged")
    time.sleep(SETTLE_DELAY)


def upload_section(transport, section):
    transport.write(SECTION_REG, section.pack())


def _poll_status(cycle, read_status, is_busy, retries, interval):
    if retries < 1:
        raise ValueError(f"{cycle} cycle needs at least one poll, got {retries}")
    status = None
    for _ in range(retries):
        status = read_status()
        if not is_busy(status):
            return status
        time.sleep(interval)
    raise ProtocolTimeoutError(cycle, status, retries)


def program_cycle(
    transport, start_addr, retries=PROGRAM_RETRIES, interval=POLL_INTERVAL
):
    """Program the section currently held at 0x0400 into MTP."""
    transport.write_byte(SECTION_REG, START_PROG_CYCLE)
    status = _poll_status(
        "program",
        lambda: transport.read_byte(SECTION_REG),
        lambda s: s & STATUS_BUSY,
        retries,
        interval,
    )

    if status == STATUS_OK:
        logger.info("0x%04x ok", start_addr)
        return
    if status == STATUS_MTP_WRITE_ERR:
        raise StatusError("program", status, "MTP write error", start_addr=start_addr)
    if status == STATUS_CHECKSUM_ERR:
        raise StatusError("program", status, "checksum error", start_addr=start_addr)
    diagnostic = transport.read_byte(SECTION_DIAG_REG)
    raise StatusError(
        "program", status, "unknown status", diagnostic=diagnostic, start_addr=start_addr
    )


def verify_cycle(transport, retries=VERIFY_RETRIES, interval=POLL_INTERVAL):
    """Run a CRC verify over the region described at 0x0402..0x0407."""
    transport.write_byte(SECTION_REG, START_VERIFY_CYCLE)
    status = _poll_status(
        "verify",
        lambda: transport.read_word(SECTION_REG),
        lambda s: s & STATUS_CRC_BUSY,
        retries,
        interval,
    )
    logger.debug("verify status: 0x%04x", status)

    outcome = status >> 8
    if outcome == STATUS_OK:
        logger.info("CRC verify ok")
        return
    if outcome == STATUS_CRC_BUSY:
        raise StatusError("verify", status, "CRC busy")
    if outcome == STATUS_CRC_ERR:
        raise StatusError("verify", status, "CRC error")
    raise StatusError("verify", status, "unknown status")


def repair_cycle(transport, retries=REPAIR_RETRIES, interval=POLL_INTERVAL):
    """Ask the repair bootloader to repair MTP."""
    transport.write_byte(SECTION_REG, START_REPAIR_CYCLE)
    status = _poll_status(
        "repair",
        lambda: transport.read_byte(SECTION_REG),
        lambda s: s & STATUS_BUSY,
        retries,
        interval,
    )

    if status == STATUS_OK:
        logger.info("repair ok")
        return
    if status == STATUS_MTP_REPAIR_ERR:
        raise StatusError("repair", status, "repair error")
    diagnostic = transport.read_byte(SECTION_REG)
    raise StatusError("repair", status, "unknown status", diagnostic=diagnostic)


def program_firmware(transport, firmware):
    """Upload ``firmware`` section by section, programming each one.

    Returns:
        Number of sections programmed.
    """
    count = 0
    for section in split_sections(firmware):
        logger.debug(
            "Section 0x%04x: %d bytes, checksum 0x%04x",
            section.start_addr,
            section.code_length,
            section.checksum,
        )
        upload_section(transport, section)
        program_cycle(transport, section.start_addr)
        count += 1
    return count
