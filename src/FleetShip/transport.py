"""Shipping staged files into each destination host's drop directory.

:class:`RsyncTransport` pushes with ``rsync -avr`` to ``<host><suffix>:.``;
the remote side is expected to force the drop directory (``rrsync``), so the
suffix selects an SSH host alias per address family.  Transient failures
(connection, protocol, timeout exit codes) are retried with exponential
backoff.  :class:`LocalTransport` copies into ``<root>/<host>/`` instead and
is what tests and single-machine setups use.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import TransportError
from .settings import FleetShipSettings

__all__ = ["Transport", "RsyncTransport", "LocalTransport", "build_transport"]

logger = logging.getLogger("FleetShip.transport")

# rsync exit codes worth another attempt: socket I/O, stream, timeouts, ssh.
TRANSIENT_EXIT_CODES = frozenset({10, 12, 30, 35, 255})


class Transport(Protocol):
    def ship(self, host: str, files: Sequence[Path]) -> None:  # pragma: no cover
        """Deliver ``files`` to ``host``'s drop directory or raise :class:`TransportError`."""


class TransientTransportError(TransportError):
    """A failure that may succeed on retry."""


class RsyncTransport:
    def __init__(
        self,
        rsync: str = "/usr/local/bin/rsync",
        suffix: str = "-distribute",
        *,
        timeout: float = 300.0,
        attempts: int = 3,
        backoff: float = 1.0,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self.rsync = rsync
        self.suffix = suffix
        self.timeout = timeout
        self.attempts = attempts
        self.backoff = backoff
        self._runner = runner

    def command(self, host: str, files: Sequence[Path]) -> List[str]:
        return [self.rsync, "-avr", *(str(path) for path in files), f"{host}{self.suffix}:."]

    def _run_once(self, host: str, files: Sequence[Path]) -> None:
        command = self.command(host, files)
        try:
            completed = self._runner(
                command, capture_output=True, text=True, timeout=self.timeout, check=False
            )
        except FileNotFoundError as exc:
            raise TransportError(f"rsync not found: {self.rsync}", host=host) from exc
        except subprocess.TimeoutExpired as exc:
            raise TransientTransportError(
                f"rsync to {host} timed out after {self.timeout}s", host=host
            ) from exc
        if completed.returncode == 0:
            return
        message = f"rsync to {host} failed with exit code {completed.returncode}: {(completed.stderr or '').strip()}"
        if completed.returncode in TRANSIENT_EXIT_CODES:
            raise TransientTransportError(message, host=host)
        raise TransportError(message, host=host)

    def ship(self, host: str, files: Sequence[Path]) -> None:
        if not files:
            return
        retrying = Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.backoff, max=60),
            retry=retry_if_exception_type(TransientTransportError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                self._run_once(host, files)
        logger.info("Distributed to %s", host, extra={"stage": "ship", "host": host})


class LocalTransport:
    """Copy files into ``<root>/<host>/``."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def ship(self, host: str, files: Sequence[Path]) -> None:
        target = self.root / host
        try:
            target.mkdir(parents=True, exist_ok=True)
            for path in files:
                shutil.copy2(path, target / Path(path).name)
        except OSError as exc:
            raise TransportError(f"copy to {target} failed: {exc}", host=host) from exc
        logger.info("Distributed to %s", host, extra={"stage": "ship", "host": host})


def build_transport(settings: FleetShipSettings, *, use_v6: Optional[bool] = None) -> Transport:
    """Return the transport the settings select."""

    config = settings.transport
    if config.kind == "local":
        return LocalTransport(config.local_root or settings.paths.drop_dir)
    return RsyncTransport(
        config.rsync,
        settings.host_suffix(use_v6),
        timeout=config.timeout_s,
        attempts=config.retries,
        backoff=config.backoff_s,
    )
