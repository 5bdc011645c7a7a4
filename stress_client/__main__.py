"""Fleet stress client entry point.

Usage:
    python -m stress_client [--config CONFIG_PATH] [--count N] [--backend URL] ...

Settings are applied in order: config file, environment (COUNT, TENANT_TOKEN,
BACKEND_URL, POLL_FREQ, INVENTORY_FREQ), then command-line flags.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from .config import ConfigError, RunConfig
from .fleet import Fleet

# CLI flag → config field, for plain value overrides
_FLAG_FIELDS = {
    "count": "count",
    "backend": "server_url",
    "tenant": "tenant_token",
    "startup_interval": "start_time",
    "mac_prefix": "mac_prefix",
    "keys_dir": "keys_dir",
    "key_bits": "key_bits",
    "device_type": "device_type",
    "artifact_name": "artifact_name",
    "checksum": "rootfs_checksum",
    "auth_interval": "auth_interval",
    "invfreq": "inventory_interval",
    "pollfreq": "update_interval",
    "deployment_time": "deployment_time",
    "deployment_jitter": "deployment_jitter",
    "failcount": "fail_count",
    "fail": "fail_message",
}

_SWITCH_FIELDS = {
    "random_mac": "random_mac",
    "single_key": "single_key",
    "substate": "substate",
    "websocket": "websocket",
    "debug": "debug",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fleet stress test client")
    parser.add_argument("--config", "-c", default=None, help="Path to config.json")
    parser.add_argument("--count", type=int, default=None, help="Number of devices to simulate")
    parser.add_argument("--backend", default=None, help="Backend URL (https://host)")
    parser.add_argument("--tenant", default=None, help="Tenant token")
    parser.add_argument("--startup-interval", type=float, default=None,
                        help="Seconds over which device starts are spread")
    parser.add_argument("--mac-prefix", default=None, help="First byte of every device MAC (hex)")
    parser.add_argument("--random-mac", action="store_true", help="Use random device MACs")
    parser.add_argument("--keys-dir", default=None, help="Directory holding device keys")
    parser.add_argument("--key-bits", type=int, default=None, help="RSA key size")
    parser.add_argument("--single-key", action="store_true",
                        help="Share one key between all devices")
    parser.add_argument("--device-type", default=None)
    parser.add_argument("--artifact-name", default=None, help="Initially installed artifact")
    parser.add_argument("--checksum", default=None, help="Root filesystem checksum")
    parser.add_argument("--inventory", action="append", default=None, metavar="NAME:V1|V2",
                        help="Static inventory attribute (repeatable)")
    parser.add_argument("--inventory-random", action="append", default=None, metavar="NAME:V1|V2",
                        help="Inventory attribute re-drawn on every send (repeatable)")
    parser.add_argument("--identity", action="append", default=None, metavar="KEY=VALUE",
                        help="Extra identity attribute (repeatable)")
    parser.add_argument("--auth-interval", type=float, default=None)
    parser.add_argument("--invfreq", type=float, default=None, help="Seconds between inventory updates")
    parser.add_argument("--pollfreq", type=float, default=None, help="Seconds between update checks")
    parser.add_argument("--deployment-time", type=float, default=None,
                        help="Seconds between deployment status reports")
    parser.add_argument("--deployment-jitter", type=float, default=None,
                        help="Random extra seconds added to each deployment step")
    parser.add_argument("--failcount", type=int, default=None,
                        help="Deployments per fleet pass that end in failure")
    parser.add_argument("--fail", default=None, help="Failure message uploaded with failed deployments")
    parser.add_argument("--substate", action="store_true", help="Send substate reporting")
    parser.add_argument("--websocket", action="store_true", help="Open the device-connect websocket")
    parser.add_argument("--verify-tls", action="store_true", help="Verify backend certificates")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def load_config(args: argparse.Namespace) -> RunConfig:
    config = RunConfig.load(args.config) if args.config else RunConfig()
    config.apply_env()

    for flag, name in _FLAG_FIELDS.items():
        value = getattr(args, flag)
        if value is not None:
            setattr(config, name, value)
    for flag, name in _SWITCH_FIELDS.items():
        if getattr(args, flag):
            setattr(config, name, True)
    if args.verify_tls:
        config.insecure_skip_verify = False
    if args.inventory:
        config.inventory_attributes = list(args.inventory)
    if args.inventory_random:
        config.inventory_attributes_random = list(args.inventory_random)
    for item in args.identity or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ConfigError(f"Invalid identity attribute {item!r}, expected KEY=VALUE")
        config.extra_identity[key] = value

    config.validate()
    return config


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args)
    except ConfigError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        sys.exit(2)

    # Logging
    level = logging.DEBUG if config.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    fleet = Fleet(config)
    loop = asyncio.new_event_loop()
    main_task = loop.create_task(fleet.run())

    def _shutdown(sig: int) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", sig)
        main_task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _shutdown, sig)

    try:
        loop.run_until_complete(main_task)
    except asyncio.CancelledError:
        pass
    except ConfigError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        sys.exit(2)
    finally:
        loop.run_until_complete(fleet.stop())
        loop.close()


if __name__ == "__main__":
    main()
