"""Fleet orchestration — spawns every simulated device and keeps them running.

Device starts are spread uniformly over ``start_time`` seconds so the backend
does not see every device authenticate at once.  After start-up the only
state shared between devices is the :class:`FailureBudget`.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import Counter
from typing import Callable, Optional

from .config import RunConfig
from .device import STATUS_FAILURE, STATUS_SUCCESS, DeviceSession
from .identity import DeviceIdentity, build_identities
from .keys import KeyMaterial, KeyStore, KeyStoreError

logger = logging.getLogger(__name__)

SessionFactory = Callable[..., DeviceSession]


class FailureBudget:
    """Decides which deployments end in failure.

    The first ``fail_count`` deployments of every fleet pass fail; a pass ends
    once ``fleet_size`` deployments have been performed, after which the budget
    is refilled.
    """

    def __init__(self, fail_count: int, fleet_size: int, fail_message: str = "failed") -> None:
        self.fail_count = fail_count
        self.fleet_size = max(fleet_size, 1)
        self.fail_message = fail_message
        self._lock = threading.Lock()
        self._left = fail_count
        self._performed = 0

    def next_outcome(self) -> str:
        with self._lock:
            if self._performed > 0 and self._performed % self.fleet_size == 0:
                self._left = self.fail_count
            self._performed += 1
            if self.fail_message and self._left > 0:
                self._left -= 1
                return STATUS_FAILURE
            return STATUS_SUCCESS

    @property
    def performed(self) -> int:
        return self._performed

    @property
    def remaining_failures(self) -> int:
        return self._left


class Fleet:
    """Runs ``config.count`` device sessions concurrently."""

    def __init__(
        self,
        config: RunConfig,
        *,
        keystore: Optional[KeyStore] = None,
        session_factory: SessionFactory = DeviceSession,
    ) -> None:
        self.config = config
        self.keystore = keystore or KeyStore(
            config.keys_dir, key_bits=config.key_bits, single_key=config.single_key,
        )
        self.budget = FailureBudget(config.fail_count, config.count, config.fail_message)
        self.session_factory = session_factory
        self.sessions: list[DeviceSession] = []
        self._tasks: list[asyncio.Task] = []

    def build_identities(self) -> list[DeviceIdentity]:
        """Validate the configuration and derive every device identity.

        Raises :class:`~stress_client.config.ConfigError` before anything starts.
        """
        self.config.validate()
        known = self.keystore.known_addresses() if self.config.random_mac else ()
        return build_identities(self.config, known)

    async def run(self) -> None:
        identities = self.build_identities()
        delay = self.config.startup_delay
        logger.info("Starting %d devices against %s (%.3fs apart)",
                    len(identities), self.config.server_url, delay)

        for n, identity in enumerate(identities):
            if n and delay:
                await asyncio.sleep(delay)
            self._tasks.append(asyncio.create_task(
                self._run_device(identity), name=f"device-{identity.mac}",
            ))
        await asyncio.gather(*self._tasks)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Fleet stopped: %s", self.summary())

    async def _run_device(self, identity: DeviceIdentity) -> None:
        loop = asyncio.get_running_loop()
        try:
            keys: KeyMaterial = await loop.run_in_executor(None, self.keystore.acquire, identity)
        except KeyStoreError as exc:
            logger.error("[%s] cannot start device: %s", identity.mac, exc)
            return

        session = self.session_factory(identity, keys, self.config, budget=self.budget)
        self.sessions.append(session)
        try:
            await session.run()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[%s] device session crashed", identity.mac)

    def summary(self) -> dict[str, int]:
        """Count running devices per state."""
        return dict(Counter(s.state.value for s in self.sessions))
