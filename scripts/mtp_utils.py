# Copyright (c) 2025 Tenstorrent AI ULC
#
# SPDX-License-Identifier: Apache-2.0

"""
Chip metadata helpers for the MTP flasher.

Loads mtp_chips.yaml, validates it against schemas/mtp-chips-schema.yml and
resolves the bootloader image each procedure needs.
"""

import enum
import logging
from collections import namedtuple
from pathlib import Path

import pykwalify.core
import pykwalify.errors
import yaml

try:
    from yaml import CSafeLoader as SafeLoader
except ImportError:
    from yaml import SafeLoader

logger = logging.getLogger(__name__)

CHIP_METADATA_PATH = Path(__file__).parent / "mtp_chips.yaml"
CHIP_SCHEMA_PATH = Path(__file__).parent / "schemas" / "mtp-chips-schema.yml"
BOOTLOADER_DIR = Path(__file__).parent / "data"
DEFAULT_CHIP = "idt9320"

VerifyRegion = namedtuple("VerifyRegion", ["addr", "size", "checksum"])
ChipConfig = namedtuple(
    "ChipConfig",
    [
        "key",
        "name",
        "i2c_addr",
        "bootloader_base",
        "remap_value",
        "bootloaders",
        "verify",
    ],
)


class MetadataError(Exception):
    """Raised when chip metadata is malformed or names an unknown chip."""


class BootloaderKind(enum.Enum):
    PROGRAM = "program"
    VERIFY = "verify"
    REPAIR = "repair"


def load_chip_metadata(path=None):
    """Load and validate the chip metadata file.

    Args:
        path: Optional override for the metadata file location.
              Defaults to ``CHIP_METADATA_PATH``.

    Raises:
        MetadataError: if the file cannot be parsed or fails validation.
    """
    path = Path(path) if path else CHIP_METADATA_PATH
    with open(CHIP_SCHEMA_PATH) as f:
        schema = yaml.load(f.read(), Loader=SafeLoader)
    try:
        with open(path) as f:
            yml = yaml.load(f.read(), Loader=SafeLoader)
        pykwalify.core.Core(source_data=yml, schema_data=schema).validate()
    except (yaml.YAMLError, pykwalify.errors.SchemaError) as e:
        raise MetadataError(f"Malformed chip metadata {path}: {e}") from e
    return yml


def get_chip_config(chip, metadata=None, bootloader_dir=None):
    """Resolve one chip entry into a ``ChipConfig``.

    Bootloader paths in the metadata are relative to ``bootloader_dir``
    (``BOOTLOADER_DIR`` by default).
    """
    metadata = load_chip_metadata() if metadata is None else metadata
    if chip not in metadata:
        raise MetadataError(
            f"Unknown chip: {chip}. Supported: {list(metadata.keys())}"
        )
    entry = metadata[chip]
    base_dir = Path(bootloader_dir) if bootloader_dir else BOOTLOADER_DIR
    bootloaders = {
        kind: base_dir / entry["bootloaders"][kind.value] for kind in BootloaderKind
    }
    verify = entry["verify"]
    return ChipConfig(
        key=chip,
        name=entry["name"],
        i2c_addr=entry["i2c-addr"],
        bootloader_base=entry["bootloader-base"],
        remap_value=entry["remap-value"],
        bootloaders=bootloaders,
        verify=VerifyRegion(verify["addr"], verify["size"], verify["checksum"]),
    )


def read_bootloader(chip, kind):
    """Return the bootloader image bytes for ``kind``.

    Raises:
        FileNotFoundError: if the image is missing.
        MetadataError: if the image is empty.
    """
    path = chip.bootloaders[kind]
    with open(path, "rb") as f:
        image = f.read()
    if not image:
        raise MetadataError(f"{kind.value} bootloader image {path} is empty")
    logger.debug("Loaded %s bootloader from %s (%d bytes)", kind.value, path, len(image))
    return image
