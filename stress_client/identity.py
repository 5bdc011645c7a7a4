"""Device identities — MAC-like addresses derived from a prefix and an index."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Iterable

from .config import RunConfig, parse_mac_prefix

logger = logging.getLogger(__name__)

_INDEX_MASK = (1 << 40) - 1


@dataclass(frozen=True)
class DeviceIdentity:
    index: int
    mac: str
    tenant_token: str = ""


def format_mac(buf: bytes) -> str:
    return ":".join(f"{b:02x}" for b in buf)


def mac_from_prefix(prefix: str, index: int) -> str:
    """Derive ``pp:ii:ii:ii:ii:ii`` — prefix byte, then the low 40 bits of *index*."""
    head = parse_mac_prefix(prefix)
    return format_mac(bytes([head]) + (index & _INDEX_MASK).to_bytes(5, "big"))


def random_mac(rng: random.Random | None = None) -> str:
    rng = rng or random.Random()
    return format_mac(bytes(rng.getrandbits(8) for _ in range(6)))


def build_identities(
    config: RunConfig,
    known: Iterable[str] = (),
    rng: random.Random | None = None,
) -> list[DeviceIdentity]:
    """Create the identity of every device in the fleet.

    In random mode, addresses that already have persisted keys are reused
    first so a restarted run keeps the same devices.
    """
    if not config.random_mac:
        return [
            DeviceIdentity(i, mac_from_prefix(config.mac_prefix, i), config.tenant_token)
            for i in range(config.count)
        ]

    rng = rng or random.Random()
    macs = sorted(set(known))[: config.count]
    seen = set(macs)
    while len(macs) < config.count:
        mac = random_mac(rng)
        if mac in seen:
            continue
        seen.add(mac)
        macs.append(mac)
    logger.debug("Reusing %d persisted device identities", min(len(set(known)), config.count))
    return [DeviceIdentity(i, mac, config.tenant_token) for i, mac in enumerate(macs)]
