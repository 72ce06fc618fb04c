# === NAVMAP v1 ===
# {
#   "module": "FleetShip.signify",
#   "purpose": "Ed25519 signing capability with signify-style key and signature files",
#   "sections": [
#     {"id": "keys", "name": "Key Files", "anchor": "KEY", "kind": "api"},
#     {"id": "signatures", "name": "Signature Files", "anchor": "SIG", "kind": "api"},
#     {"id": "verify", "name": "Verification Outcome", "anchor": "VER", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Ed25519 signing capability with signify-style text files.

Every file is two lines of text: an ``untrusted comment:`` line and a base64
payload.  Public keys encode ``b"Ed" + keynum + pubkey``; detached signatures
encode ``b"Ed" + keynum + signature`` and name the key they expect in their
comment (``verify with example.org-2026-pkg.pub``).  Secret keys carry the
keynum line followed by a PKCS#8 PEM block, encrypted with the passphrase
unless the key was generated without one.

The keynum lets a verifier notice that a signature was produced by a
different key than the one it was checked against and report which key the
signature claims, without re-parsing free-form error text.
"""

from __future__ import annotations

import base64
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .errors import SigningError

__all__ = [
    "PKALG",
    "PublicKey",
    "SecretKey",
    "Signature",
    "VerifyOutcome",
    "generate_keypair",
    "signature_path",
    "sign_bytes",
    "sign_file",
    "read_signature",
    "verify_bytes",
]

PKALG = b"Ed"
KEYNUM_LEN = 8
_COMMENT_PREFIX = "untrusted comment: "
_VERIFY_WITH = re.compile(r"^verify with (?P<name>\S+)$")


def _read_two_lines(path: Path, kind: str) -> Tuple[str, bytes, str]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SigningError(f"Cannot read {kind} {path}: {exc}") from exc
    lines = text.splitlines()
    if len(lines) < 2 or not lines[0].startswith(_COMMENT_PREFIX):
        raise SigningError(f"Invalid {kind} file {path}: missing untrusted comment")
    try:
        payload = base64.b64decode(lines[1].strip(), validate=True)
    except ValueError as exc:
        raise SigningError(f"Invalid base64 in {kind} file {path}") from exc
    if not payload.startswith(PKALG):
        raise SigningError(f"Unsupported signature algorithm in {path}")
    rest = "\n".join(lines[2:])
    return lines[0][len(_COMMENT_PREFIX):], payload[len(PKALG):], rest


def _key_name(path: Path) -> str:
    return path.name.rsplit(".", 1)[0]


def signature_path(path: Path) -> Path:
    """Return the detached signature sibling for ``path``."""

    return path.with_name(path.name + ".sig")


@dataclass(frozen=True)
class PublicKey:
    name: str
    keynum: bytes
    key: Ed25519PublicKey
    path: Optional[Path] = None

    @property
    def file_name(self) -> str:
        return f"{self.name}.pub"

    @classmethod
    def load(cls, path: Path) -> "PublicKey":
        _comment, body, _rest = _read_two_lines(path, "public key")
        if len(body) != KEYNUM_LEN + 32:
            raise SigningError(f"Invalid public key length in {path}")
        key = Ed25519PublicKey.from_public_bytes(body[KEYNUM_LEN:])
        return cls(_key_name(path), body[:KEYNUM_LEN], key, path)

    def raw(self) -> bytes:
        return self.key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    def dump(self) -> str:
        payload = base64.b64encode(PKALG + self.keynum + self.raw()).decode("ascii")
        return f"{_COMMENT_PREFIX}{self.name} public key\n{payload}\n"


@dataclass(frozen=True)
class SecretKey:
    name: str
    keynum: bytes
    key: Ed25519PrivateKey
    path: Optional[Path] = None

    @classmethod
    def load(cls, path: Path, passphrase: Optional[str]) -> "SecretKey":
        """Load and decrypt a secret key file.

        Raises:
            SigningError: If the file is malformed or the passphrase is wrong.
        """

        _comment, body, pem = _read_two_lines(path, "secret key")
        if len(body) != KEYNUM_LEN:
            raise SigningError(f"Invalid secret key header in {path}")
        password = passphrase.encode("utf-8") if passphrase else None
        try:
            key = serialization.load_pem_private_key(pem.encode("ascii"), password=password)
        except (TypeError, ValueError) as exc:
            raise SigningError(f"Cannot decrypt secret key {path}: incorrect passphrase?") from exc
        if not isinstance(key, Ed25519PrivateKey):
            raise SigningError(f"Secret key {path} is not an Ed25519 key")
        return cls(_key_name(path), body, key, path)

    def public_key(self) -> PublicKey:
        return PublicKey(self.name, self.keynum, self.key.public_key())

    def dump(self, passphrase: Optional[str]) -> str:
        if passphrase:
            encryption: serialization.KeySerializationEncryption = (
                serialization.BestAvailableEncryption(passphrase.encode("utf-8"))
            )
        else:
            encryption = serialization.NoEncryption()
        pem = self.key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        ).decode("ascii")
        header = base64.b64encode(PKALG + self.keynum).decode("ascii")
        return f"{_COMMENT_PREFIX}{self.name} secret key\n{header}\n{pem}"


@dataclass(frozen=True)
class Signature:
    claimed_key: str
    keynum: bytes
    value: bytes

    @classmethod
    def parse(cls, path: Path) -> "Signature":
        comment, body, _rest = _read_two_lines(path, "signature")
        if len(body) != KEYNUM_LEN + 64:
            raise SigningError(f"Invalid signature length in {path}")
        match = _VERIFY_WITH.match(comment.strip())
        claimed = match.group("name") if match else ""
        return cls(claimed, body[:KEYNUM_LEN], body[KEYNUM_LEN:])

    def dump(self) -> str:
        payload = base64.b64encode(PKALG + self.keynum + self.value).decode("ascii")
        return f"{_COMMENT_PREFIX}verify with {self.claimed_key}\n{payload}\n"


@dataclass(frozen=True)
class VerifyOutcome:
    """Structured result of checking one signature against one key.

    ``claimed_key_name`` is set whenever the signature names a key, so a
    caller can decide whether that key is worth a second, targeted attempt.
    """

    ok: bool
    key_name: Optional[str] = None
    claimed_key_name: Optional[str] = None
    reason: str = ""


def generate_keypair(key_dir: Path, name: str, passphrase: Optional[str]) -> Tuple[Path, Path]:
    """Create ``<name>.pub`` and ``<name>.sec`` in ``key_dir``.

    Existing files are never overwritten.
    """

    pub_path = key_dir / f"{name}.pub"
    sec_path = key_dir / f"{name}.sec"
    for path in (pub_path, sec_path):
        if path.exists():
            raise SigningError(f"Refusing to overwrite existing key {path}")
    key_dir.mkdir(parents=True, exist_ok=True)
    secret = SecretKey(name, os.urandom(KEYNUM_LEN), Ed25519PrivateKey.generate())
    sec_path.write_text(secret.dump(passphrase), encoding="ascii")
    os.chmod(sec_path, 0o600)
    pub_path.write_text(secret.public_key().dump(), encoding="ascii")
    return pub_path, sec_path


def sign_bytes(data: bytes, secret: SecretKey) -> Signature:
    return Signature(f"{secret.name}.pub", secret.keynum, secret.key.sign(data))


def sign_file(path: Path, secret: SecretKey) -> Path:
    """Write a detached signature for ``path`` next to it and return its path."""

    try:
        data = path.read_bytes()
    except OSError as exc:
        raise SigningError(f"Could not read {path} to sign: {exc}") from exc
    sig_path = signature_path(path)
    sig_path.write_text(sign_bytes(data, secret).dump(), encoding="ascii")
    return sig_path


def read_signature(path: Path) -> Signature:
    """Read the detached signature for ``path``."""

    sig_path = signature_path(path)
    if not sig_path.exists():
        raise SigningError(f"Missing signature file {sig_path}")
    return Signature.parse(sig_path)


def verify_bytes(data: bytes, signature: Signature, public_key: PublicKey) -> VerifyOutcome:
    claimed = signature.claimed_key or None
    if signature.keynum != public_key.keynum:
        return VerifyOutcome(
            ok=False,
            claimed_key_name=claimed,
            reason=(
                f"verification failed: checked against wrong key; public key is "
                f"{public_key.file_name!r} but signature claims {claimed!r}"
            ),
        )
    try:
        public_key.key.verify(signature.value, data)
    except InvalidSignature:
        return VerifyOutcome(
            ok=False,
            claimed_key_name=claimed,
            reason=f"signature verification failed with {public_key.file_name}",
        )
    return VerifyOutcome(ok=True, key_name=public_key.name, claimed_key_name=claimed)
