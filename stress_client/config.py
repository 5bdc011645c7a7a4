"""Run configuration for the fleet stress client — loaded from config.json."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised for configuration that must stop the run before any device starts."""


# Environment variables honoured by the container entrypoint → config field
_ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "COUNT": ("count", int),
    "TENANT_TOKEN": ("tenant_token", str),
    "BACKEND_URL": ("server_url", str),
    "POLL_FREQ": ("update_interval", float),
    "INVENTORY_FREQ": ("inventory_interval", float),
}

_INTERVAL_FIELDS = (
    "auth_interval",
    "inventory_interval",
    "update_interval",
    "websocket_ping_interval",
    "websocket_ping_timeout",
    "request_timeout",
)


def parse_mac_prefix(prefix: str) -> int:
    """Parse a MAC prefix ("ff", "0x1a") into its byte value."""
    text = prefix.strip().lower()
    if text.startswith("0x"):
        text = text[2:]
    try:
        value = int(text, 16)
    except ValueError:
        raise ConfigError(f"Invalid MAC address prefix: {prefix!r}") from None
    if not 0 <= value <= 0xFF:
        raise ConfigError(f"MAC address prefix out of range (00-ff): {prefix!r}")
    return value


@dataclass
class RunConfig:
    """Fleet stress client configuration."""

    server_url: str = "https://localhost"
    tenant_token: str = ""
    count: int = 100
    start_time: float = 0.0  # seconds over which device starts are spread

    # Identity
    mac_prefix: str = "ff"
    random_mac: bool = False
    extra_identity: dict = field(default_factory=dict)

    # Keys
    keys_dir: str = "keys"
    key_bits: int = 3072
    single_key: bool = False

    # Device description
    device_type: str = "test"
    artifact_name: str = "test"
    rootfs_checksum: str = "4d480539cdb23a4aee6330ff80673a5af92b7793eb1c57c4694532f96383b619"

    # Inventory: "name:value1|value2|...". Static values fan out by device
    # index, random values are re-drawn on every send
    inventory_attributes: list = field(default_factory=lambda: [
        "client_version:test",
    ])
    inventory_attributes_random: list = field(default_factory=list)

    # Intervals (seconds)
    auth_interval: float = 600.0
    inventory_interval: float = 1800.0
    update_interval: float = 600.0
    deployment_time: float = 15.0
    deployment_jitter: float = 0.0

    # Deployment outcome
    fail_count: int = 0
    fail_message: str = "failed, damn! failed, damn! failed, damn!"
    substate: bool = False

    # Device connect websocket
    websocket: bool = False
    websocket_ping_interval: float = 3600.0
    websocket_ping_timeout: float = 30.0
    websocket_max_message_size: int = 8192

    # Transport
    insecure_skip_verify: bool = True
    request_timeout: float = 30.0

    debug: bool = False

    @classmethod
    def load(cls, path: str | Path) -> RunConfig:
        path = Path(path)
        if path.exists():
            with open(path) as f:
                data = json.load(f)
            known = {k for k in cls.__dataclass_fields__}
            filtered = {k: v for k, v in data.items() if k in known}
            return cls(**filtered)
        logger.warning("Config not found at %s, using defaults", path)
        return cls()

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)

    def apply_env(self, environ: dict[str, str] | None = None) -> None:
        """Apply the container-style environment overrides (COUNT, BACKEND_URL, ...)."""
        env = os.environ if environ is None else environ
        for var, (name, cast) in _ENV_OVERRIDES.items():
            raw = env.get(var)
            if not raw:
                continue
            try:
                setattr(self, name, cast(raw))
            except ValueError:
                raise ConfigError(f"Invalid value for {var}: {raw!r}") from None

    def validate(self) -> None:
        """Raise :class:`ConfigError` if the configuration cannot be run."""
        from .inventory import AttributeSpec

        parsed = urlparse(self.server_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigError(f"Server URL must be http(s)://host, got {self.server_url!r}")
        if self.count < 1:
            raise ConfigError(f"Device count must be at least 1, got {self.count}")
        if self.start_time < 0:
            raise ConfigError("start_time must not be negative")
        for name in _INTERVAL_FIELDS:
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")
        if self.deployment_time < 0 or self.deployment_jitter < 0:
            raise ConfigError("Deployment delays must not be negative")
        if self.fail_count < 0:
            raise ConfigError("fail_count must not be negative")
        if self.key_bits < 1024:
            raise ConfigError(f"key_bits must be at least 1024, got {self.key_bits}")
        if self.websocket_max_message_size < 1:
            raise ConfigError("websocket_max_message_size must be positive")
        if not self.random_mac:
            parse_mac_prefix(self.mac_prefix)
        if self.count > 1 << 40:
            raise ConfigError("Device count exceeds the 40-bit MAC address space")
        for spec in [*self.inventory_attributes, *self.inventory_attributes_random]:
            try:
                AttributeSpec.parse(spec)
            except ValueError as exc:
                raise ConfigError(str(exc)) from None

    @property
    def startup_delay(self) -> float:
        """Delay between consecutive device starts."""
        return self.start_time / self.count if self.count else 0.0
