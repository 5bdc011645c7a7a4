"""Inventory snapshot assembly.

Attribute specs take the form ``name:value`` or ``name:v1|v2|v3``.  Static
specs pick one value per device (``index % len(values)``) so a fleet fans out
evenly across the list; random specs draw a fresh value on every send.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass

ATTRIBUTE_ROOTFS_IMAGE_VERSION = "rootfs-image.version"
ATTRIBUTE_DEVICE_TYPE = "device_type"
ATTRIBUTE_TIME = "time"


@dataclass(frozen=True)
class AttributeSpec:
    name: str
    values: tuple[str, ...]

    @classmethod
    def parse(cls, text: str) -> AttributeSpec:
        name, sep, raw_values = text.partition(":")
        if not sep or not name:
            raise ValueError(f"Invalid inventory attribute {text!r}, expected name:value[|value...]")
        return cls(name=name, values=tuple(raw_values.split("|")))

    def for_index(self, index: int) -> str:
        return self.values[index % len(self.values)]

    def pick(self, rng: random.Random) -> str:
        return rng.choice(self.values)


class InventoryBuilder:
    """Builds the ordered ``[{name, value}, ...]`` list sent on each inventory update."""

    def __init__(
        self,
        index: int,
        device_type: str,
        static_specs: list[str] | None = None,
        random_specs: list[str] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.index = index
        self.device_type = device_type
        self.static = [AttributeSpec.parse(s) for s in static_specs or []]
        self.random = [AttributeSpec.parse(s) for s in random_specs or []]
        self._rng = rng or random.Random()

    def build(self, artifact_name: str, now: float | None = None) -> list[dict]:
        attributes = [
            {"name": ATTRIBUTE_ROOTFS_IMAGE_VERSION, "value": artifact_name},
            {"name": ATTRIBUTE_DEVICE_TYPE, "value": self.device_type},
        ]
        for spec in self.static:
            attributes.append({"name": spec.name, "value": spec.for_index(self.index)})
        for spec in self.random:
            attributes.append({"name": spec.name, "value": spec.pick(self._rng)})
        attributes.append({
            "name": ATTRIBUTE_TIME,
            "value": int(time.time() if now is None else now),
        })
        return attributes
