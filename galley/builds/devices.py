"""Device mapping tables.

Maps build targets to kernel build targets, kernel targets to kernel manifest
names, and targets to the Magisk preinit block device. The built-in tables
can be extended or overridden from a YAML file::

    kernel_targets:
      newdevice: newkernel
    kernel_manifests:
      newkernel: "7"
    preinit_devices:
      newdevice: persist
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

KERNEL_TARGETS: dict[str, str] = {
    "tangorpro": "tangorpro",
    "lynx": "lynx",
    "cheetah": "cheetah",
    "panther": "panther",
    "bluejay": "bluejay",
    "oriole": "oriole",
    "raven": "raven",
    "barbet": "barbet",
    "coral": "coral",
    "flame": "coral",
    "sunfish": "sunfish",
    "bramble": "redbull",
    "redfin": "redbull",
    "caiman": "caimito",
    "tokay": "caimito",
    "komodo": "ripcurrent",
    "comet": "ripcurrent",
}

KERNEL_MANIFESTS: dict[str, str] = {
    "tangorpro": "6",
    "lynx": "6",
    "cheetah": "6",
    "panther": "6",
    "bluejay": "6a",
    "oriole": "6a",
    "raven": "6a",
    "barbet": "5a",
    "coral": "coral",
    "sunfish": "sunfish",
    "redbull": "redbull",
    "caimito": "caimito",
    "ripcurrent": "ripcurrent",
}

PREINIT_DEVICES: dict[str, str] = {
    "tangorpro": "sda5",
    "lynx": "persist",
    "cheetah": "persist",
    "panther": "persist",
    "bluejay": "persist",
    "oriole": "persist",
    "raven": "persist",
    "barbet": "sda10",
    "coral": "sda5",
    "flame": "sda5",
    "sunfish": "sda5",
    "bramble": "sda10",
    "redfin": "sda10",
    "caiman": "sda10",
}

# Kernel targets whose dist images are copied into device/google/<k>-kernel.
# Each entry maps a dist file name to its name in the device tree.
KERNEL_PREBUILT_IMAGES: dict[str, dict[str, str]] = {
    "barbet": {
        "boot.img": "boot.img",
        "vendor_boot.img": "vendor_boot.img",
        "vendor_dlkm.img": "vendor_dlkm.img",
        "dtbo.img": "dtbo.img",
    },
    "coral": {
        "boot.img": "boot.img",
        "dtbo-coral.img": "dtbo.img",
        "vendor_boot.img": "vendor_boot.img",
        "vendor_dlkm.img": "vendor_dlkm.img",
    },
    "sunfish": {
        "boot.img": "boot.img",
        "dtbo.img": "dtbo.img",
        "vendor_boot.img": "vendor_boot.img",
        "vendor_dlkm.img": "vendor_dlkm.img",
    },
}


class DeviceMapOverrides(BaseModel):
    """Schema for a device mapping override file."""

    model_config = ConfigDict(extra="forbid")

    kernel_targets: dict[str, str] = Field(default_factory=dict)
    kernel_manifests: dict[str, str] = Field(default_factory=dict)
    preinit_devices: dict[str, str] = Field(default_factory=dict)


class DeviceMap:
    """Lookup tables for per-target build details."""

    def __init__(
        self,
        kernel_targets: dict[str, str] | None = None,
        kernel_manifests: dict[str, str] | None = None,
        preinit_devices: dict[str, str] | None = None,
    ) -> None:
        self.kernel_targets = dict(KERNEL_TARGETS if kernel_targets is None else kernel_targets)
        self.kernel_manifests = dict(
            KERNEL_MANIFESTS if kernel_manifests is None else kernel_manifests
        )
        self.preinit_devices = dict(
            PREINIT_DEVICES if preinit_devices is None else preinit_devices
        )

    def kernel_target(self, target: str) -> str | None:
        return self.kernel_targets.get(target)

    def kernel_manifest(self, kernel_target: str) -> str | None:
        return self.kernel_manifests.get(kernel_target)

    def preinit_device(self, target: str) -> str | None:
        return self.preinit_devices.get(target)

    def apply(self, overrides: DeviceMapOverrides) -> None:
        """Merge override tables into the current ones."""
        self.kernel_targets.update(overrides.kernel_targets)
        self.kernel_manifests.update(overrides.kernel_manifests)
        self.preinit_devices.update(overrides.preinit_devices)


def load_device_map(path: Path | None = None) -> DeviceMap:
    """Build the device map, applying overrides from a YAML file if given.

    Args:
        path: Optional override file.

    Returns:
        DeviceMap instance.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        pydantic.ValidationError: If the file does not match the schema.
    """
    device_map = DeviceMap()
    if path is None:
        return device_map

    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")

    device_map.apply(DeviceMapOverrides.model_validate(data))
    logger.info("Loaded device map overrides from %s", path)
    return device_map


__all__ = [
    "KERNEL_MANIFESTS",
    "KERNEL_PREBUILT_IMAGES",
    "KERNEL_TARGETS",
    "PREINIT_DEVICES",
    "DeviceMap",
    "DeviceMapOverrides",
    "load_device_map",
]
