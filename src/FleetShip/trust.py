"""Trust policy deciding which signing keys a host accepts.

A signature is accepted on the fast path when it verifies against the
current-year key ``<domain>-<year>-pkg.pub``.  Otherwise the structured
outcome from :mod:`FleetShip.signify` names the key the signature claims; if
that name belongs to the organisation family (``<domain>-<N>-pkg.pub``) or the
vendor family (``openbsd-<N>-pkg.pub``) the exact key is loaded from the
trusted key directory, the signature is checked again, and the key number
must not be below the family floor.  Every other outcome is a rejection.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import SigningError, VerificationFailure
from .signify import PublicKey, Signature, VerifyOutcome, read_signature, verify_bytes

__all__ = ["SignerIdentity", "TrustPolicy"]

logger = logging.getLogger("FleetShip.trust")


@dataclass(frozen=True)
class SignerIdentity:
    """The key a payload was accepted under."""

    key_name: str
    family: str
    number: int
    fast_path: bool

    def __str__(self) -> str:
        return self.key_name


class TrustPolicy:
    """Verify payload signatures against a directory of trusted public keys."""

    def __init__(
        self,
        key_dir: Path,
        domain: str,
        year: int,
        *,
        domain_floor: Optional[int] = None,
        vendor_family: str = "openbsd",
        vendor_floor: Optional[int] = None,
    ) -> None:
        self.key_dir = Path(key_dir)
        self.domain = domain
        self.year = year
        self.domain_floor = year - 1 if domain_floor is None else domain_floor
        self.vendor_family = vendor_family
        self.vendor_floor = vendor_floor
        self._allowed = re.compile(
            rf"^(?P<family>{re.escape(domain)}|{re.escape(vendor_family)})-(?P<number>\d+)-pkg\.pub$"
        )

    @classmethod
    def from_settings(cls, settings, *, vendor_keys: bool = True) -> "TrustPolicy":
        """Build the policy from settings; ``vendor_keys=False`` trusts the domain family only."""

        return cls(
            settings.paths.key_dir,
            settings.domain(),
            settings.key_year(),
            domain_floor=settings.domain_floor(),
            vendor_family=settings.keys.vendor_family,
            vendor_floor=settings.vendor_floor() if vendor_keys else None,
        )

    @property
    def current_key_name(self) -> str:
        return f"{self.domain}-{self.year}-pkg"

    def _load(self, file_name: str) -> Optional[PublicKey]:
        if "/" in file_name or file_name.startswith("."):
            return None
        path = self.key_dir / file_name
        if not path.is_file():
            return None
        return PublicKey.load(path)

    def verify_bytes(self, data: bytes, signature: Signature, *, label: str = "<payload>") -> SignerIdentity:
        """Accept ``data`` under ``signature`` or raise :class:`VerificationFailure`."""

        current_file = f"{self.current_key_name}.pub"
        try:
            current = self._load(current_file)
        except SigningError as exc:
            raise VerificationFailure(f"{label}: {exc}", path=label) from exc
        if current is not None:
            outcome = verify_bytes(data, signature, current)
        else:
            outcome = VerifyOutcome(
                ok=False,
                claimed_key_name=signature.claimed_key or None,
                reason=f"current key {current_file} not found in {self.key_dir}",
            )
        if outcome.ok:
            return SignerIdentity(self.current_key_name, self.domain, self.year, True)

        claimed = outcome.claimed_key_name
        if not claimed or claimed == current_file:
            raise VerificationFailure(f"{label}: {outcome.reason}", path=label, signer=claimed)
        match = self._allowed.match(claimed)
        if not match:
            raise VerificationFailure(
                f"{label}: signed by untrusted key {claimed!r}", path=label, signer=claimed
            )

        try:
            claimed_key = self._load(claimed)
        except SigningError as exc:
            raise VerificationFailure(f"{label}: {exc}", path=label, signer=claimed) from exc
        if claimed_key is None:
            raise VerificationFailure(
                f"{label}: not signed by a key in {self.key_dir}, signed by {claimed}",
                path=label,
                signer=claimed,
            )
        retry = verify_bytes(data, signature, claimed_key)
        if not retry.ok:
            raise VerificationFailure(f"{label}: {retry.reason}", path=label, signer=claimed)

        family = match.group("family")
        number = int(match.group("number"))
        floor = self.domain_floor if family == self.domain else self.vendor_floor
        if floor is None or number < floor:
            raise VerificationFailure(
                f"{label}: not signed by required key version, signed by {claimed}",
                path=label,
                signer=claimed,
            )
        logger.debug(
            "accepted %s via fallback key %s",
            label,
            claimed,
            extra={"stage": "verify"},
        )
        return SignerIdentity(claimed_key.name, family, number, False)

    def verify_path(self, path: Path) -> SignerIdentity:
        """Verify ``path`` against its detached ``.sig`` sibling."""

        path = Path(path)
        try:
            data = path.read_bytes()
            signature = read_signature(path)
        except (OSError, SigningError) as exc:
            raise VerificationFailure(f"{path}: {exc}", path=str(path)) from exc
        return self.verify_bytes(data, signature, label=str(path))
