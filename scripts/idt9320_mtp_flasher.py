#!/usr/bin/env python3

# Copyright (c) 2025 Tenstorrent AI ULC
#
# SPDX-License-Identifier: Apache-2.0

"""
MTP flasher for IDT9320 wireless power receivers.

Programs, verifies or repairs the chip's MTP over I2C by loading a vendor
bootloader into chip RAM. The chip should be power cycled after every run.

Examples:
    python idt9320_mtp_flasher.py 0 test
    python idt9320_mtp_flasher.py 0 flash mfc_fw.bin
    python idt9320_mtp_flasher.py 0 check --verify-size 0x4680 --verify-checksum 0x0274
    python idt9320_mtp_flasher.py /dev/i2c-3 repair
"""

import argparse
import contextlib
import logging
import os
import sys
from pathlib import Path

import mtp_protocol
import mtp_utils
from idt_i2c import I2CTransport, TransportError
from mtp_protocol import MtpError, SizeLimitError
from mtp_utils import BootloaderKind, MetadataError

logger = logging.getLogger(Path(__file__).stem)

TEST_SENTINEL = 0xDEAD


# ---------------------------------------------------------------------------
# Procedures
# ---------------------------------------------------------------------------


def enter_bootloader(transport, chip, bootloader):
    """Halt the chip and load a verified bootloader into RAM."""
    mtp_protocol.prepare_system(transport)
    mtp_protocol.load_bootloader(transport, bootloader, chip.bootloader_base)
    mtp_protocol.verify_bootloader(transport, bootloader, chip.bootloader_base)


def flash_procedure(transport, chip, bootloader, firmware):
    """Program ``firmware`` into MTP. Returns the number of sections written."""
    mtp_protocol.check_firmware_size(firmware)
    enter_bootloader(transport, chip, bootloader)
    transport.write_byte(
        mtp_protocol.SECTION_REG, mtp_protocol.INIT_PROGRAMMING_STRUCTURE
    )
    mtp_protocol.start_bootloader(transport, chip.remap_value)
    logger.info("Programming %d bytes...", len(firmware))
    return mtp_protocol.program_firmware(transport, firmware)


def check_procedure(transport, chip, bootloader, region):
    """CRC check the MTP region described by ``region`` (a ``VerifyRegion``)."""
    enter_bootloader(transport, chip, bootloader)
    transport.write_byte(
        mtp_protocol.SECTION_REG, mtp_protocol.INIT_PROGRAMMING_STRUCTURE
    )
    mtp_protocol.start_bootloader(transport, chip.remap_value)
    logger.info(
        "Verifying 0x%04x bytes at 0x%04x, checksum 0x%04x...",
        region.size,
        region.addr,
        region.checksum,
    )
    section = mtp_protocol.SectionDescriptor(
        status=0,
        start_addr=region.addr,
        code_length=region.size,
        checksum=region.checksum,
        payload=b"",
    )
    mtp_protocol.upload_section(transport, section)
    mtp_protocol.verify_cycle(transport)


def repair_procedure(transport, chip, bootloader):
    enter_bootloader(transport, chip, bootloader)
    transport.write_byte(
        mtp_protocol.SECTION_REG, mtp_protocol.INIT_PROGRAMMING_STRUCTURE
    )
    mtp_protocol.start_bootloader(transport, chip.remap_value)
    logger.info("Repairing...")
    mtp_protocol.repair_cycle(transport)


def smoke_test_procedure(transport, chip, bootloader):
    """Smoke test the program bootloader.

    Writes a sentinel to the section register before the reset and reads it
    back afterwards. Returns True if the register no longer holds the
    sentinel, i.e. the bootloader took over the programming structure.
    """
    enter_bootloader(transport, chip, bootloader)
    transport.write(mtp_protocol.SECTION_REG, TEST_SENTINEL.to_bytes(2, "little"))
    mtp_protocol.start_bootloader(transport, chip.remap_value)
    value = transport.read_word(mtp_protocol.SECTION_REG)
    logger.debug("0x%04x after reset: 0x%04x", mtp_protocol.SECTION_REG, value)
    return value != TEST_SENTINEL


# ---------------------------------------------------------------------------
# Sub-commands
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def chip_session(args, chip):
    """Open the I2C transport and remind the operator to power cycle after."""
    with I2CTransport(args.bus, chip.i2c_addr) as transport:
        try:
            yield transport
        finally:
            logger.warning("Reset chip power before further use")


def cmd_test(args, chip):
    bootloader = mtp_utils.read_bootloader(chip, BootloaderKind.PROGRAM)
    with chip_session(args, chip) as transport:
        started = smoke_test_procedure(transport, chip, bootloader)
    if not started:
        logger.error("Bootloader failed to start")
        return os.EX_PROTOCOL
    logger.info("Bootloader successfully started")
    return os.EX_OK


def cmd_flash(args, chip):
    firmware_file = Path(args.file)
    if not firmware_file.is_file():
        logger.error("Firmware file not found: %s", firmware_file)
        return os.EX_NOINPUT
    firmware = firmware_file.read_bytes()
    # Reject oversized images before touching the bus
    mtp_protocol.check_firmware_size(firmware)
    if not firmware:
        logger.warning("Firmware file %s is empty, nothing to program", firmware_file)

    bootloader = mtp_utils.read_bootloader(chip, BootloaderKind.PROGRAM)
    with chip_session(args, chip) as transport:
        count = flash_procedure(transport, chip, bootloader, firmware)
    logger.info("Programmed %d sections from %s", count, firmware_file)
    return os.EX_OK


def cmd_check(args, chip):
    region = chip.verify
    if args.verify_addr is not None:
        region = region._replace(addr=args.verify_addr)
    if args.verify_size is not None:
        region = region._replace(size=args.verify_size)
    if args.verify_checksum is not None:
        region = region._replace(checksum=args.verify_checksum)

    bootloader = mtp_utils.read_bootloader(chip, BootloaderKind.VERIFY)
    with chip_session(args, chip) as transport:
        check_procedure(transport, chip, bootloader, region)
    return os.EX_OK


def cmd_repair(args, chip):
    bootloader = mtp_utils.read_bootloader(chip, BootloaderKind.REPAIR)
    with chip_session(args, chip) as transport:
        repair_procedure(transport, chip, bootloader)
    return os.EX_OK


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def auto_int(value):
    return int(value, 0)


def _ranged_int(name, low, high):
    def convert(value):
        try:
            number = auto_int(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f"invalid {name}: {value!r}") from None
        if not low <= number <= high:
            raise argparse.ArgumentTypeError(
                f"{name} 0x{number:x} out of range 0x{low:x}-0x{high:x}"
            )
        return number

    convert.__name__ = name
    return convert


u16 = _ranged_int("u16", 0, 0xFFFF)
i2c_addr = _ranged_int("i2c address", 0x03, 0x77)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="MTP flasher for IDT9320 wireless power receivers",
        allow_abbrev=False,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "bus",
        type=str,
        help="I2C bus number or device node (e.g. 0 or /dev/i2c-0)",
    )
    parser.add_argument(
        "--chip",
        type=str,
        default=mtp_utils.DEFAULT_CHIP,
        help="Chip name as listed in mtp_chips.yaml (default: %(default)s)",
    )
    parser.add_argument(
        "--metadata",
        type=Path,
        default=None,
        help="Override path to the chip metadata file",
    )
    parser.add_argument(
        "--bootloader-dir",
        type=Path,
        default=None,
        help="Directory holding the bootloader images",
    )
    parser.add_argument(
        "--i2c-addr",
        type=i2c_addr,
        default=None,
        help="Override the 7-bit I2C target address",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase logging verbosity (repeat for more)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    test_parser = subparsers.add_parser(
        "test", help="Load the program bootloader and check that it starts"
    )
    test_parser.set_defaults(func=cmd_test)

    flash_parser = subparsers.add_parser("flash", help="Program a firmware image")
    flash_parser.set_defaults(func=cmd_flash)
    flash_parser.add_argument(
        "file",
        type=str,
        help="Raw binary firmware image (at most 16 KiB)",
    )

    check_parser = subparsers.add_parser(
        "check", help="CRC check the firmware already in MTP"
    )
    check_parser.set_defaults(func=cmd_check)
    check_parser.add_argument(
        "--verify-addr",
        type=u16,
        default=None,
        help="Start address of the region to check",
    )
    check_parser.add_argument(
        "--verify-size",
        type=u16,
        default=None,
        help="Size of the firmware, as provided by the vendor",
    )
    check_parser.add_argument(
        "--verify-checksum",
        type=u16,
        default=None,
        help="Checksum of the firmware, as provided by the vendor",
    )

    repair_parser = subparsers.add_parser("repair", help="Repair MTP")
    repair_parser.set_defaults(func=cmd_repair)

    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    level = logging.WARNING
    if args.verbose >= 2:
        level = logging.DEBUG
    elif args.verbose >= 1:
        level = logging.INFO
    logging.basicConfig(level=level, format="%(name)s: %(levelname)s: %(message)s")

    try:
        chip = mtp_utils.get_chip_config(
            args.chip,
            mtp_utils.load_chip_metadata(args.metadata),
            args.bootloader_dir,
        )
        if args.i2c_addr is not None:
            chip = chip._replace(i2c_addr=args.i2c_addr)
        return args.func(args, chip)
    except (SizeLimitError, MetadataError) as e:
        logger.error("%s", e)
        return os.EX_DATAERR
    except FileNotFoundError as e:
        logger.error("%s", e)
        return os.EX_NOINPUT
    except TransportError as e:
        logger.error("%s", e)
        return os.EX_IOERR
    except MtpError as e:
        logger.error("%s", e)
        return os.EX_PROTOCOL


if __name__ == "__main__":
    sys.exit(main())
