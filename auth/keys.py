"""
auth/keys.py -- RSA signing key pair, loaded once at process start.

load_signing_keys() reads the PEM pair from Settings (inline text first, then
the *_FILE paths), parses both halves with `cryptography`, and checks that the
public key actually belongs to the private key. Any failure raises
KeyConfigurationError, which aborts application startup.

The result is a frozen SigningKeys value. The FastAPI lifespan builds it once
and hands the same object to TokenService; nothing reads keys from module
globals.

Layer rule: no imports from api/ or cache/. Import from core/ is allowed.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from auth.errors import KeyConfigurationError
from core.config import Settings

ALGORITHM = "RS256"


@dataclass(frozen=True)
class SigningKeys:
    """Immutable RS256 key pair. private_pem signs; public_pem verifies."""

    private_pem: str
    public_pem: str
    algorithm: str = ALGORITHM

    def __repr__(self) -> str:
        # Never print key material in tracebacks or logs.
        return f"SigningKeys(algorithm={self.algorithm!r})"


def _read_pem(inline: str, path: str, label: str) -> str:
    if inline:
        # .env files commonly carry PEMs with literal "\n" sequences.
        return inline.replace("\\n", "\n")
    if path:
        try:
            return Path(path).read_text(encoding="ascii")
        except OSError as exc:
            raise KeyConfigurationError(f"Could not read {label} from {path!r}: {exc}") from exc
    raise KeyConfigurationError(f"{label} is not configured.")


def load_signing_keys(settings: Settings) -> SigningKeys:
    """Build SigningKeys from settings, validating both PEMs and their pairing."""
    private_pem = _read_pem(settings.jwt_private_key, settings.jwt_private_key_file, "JWT_PRIVATE_KEY")
    public_pem = _read_pem(settings.jwt_public_key, settings.jwt_public_key_file, "JWT_PUBLIC_KEY")

    try:
        private_key = serialization.load_pem_private_key(private_pem.encode("ascii"), password=None)
    except (ValueError, TypeError) as exc:
        raise KeyConfigurationError("JWT_PRIVATE_KEY is not a valid unencrypted PEM private key.") from exc
    try:
        public_key = serialization.load_pem_public_key(public_pem.encode("ascii"))
    except ValueError as exc:
        raise KeyConfigurationError("JWT_PUBLIC_KEY is not a valid PEM public key.") from exc

    if not isinstance(private_key, rsa.RSAPrivateKey) or not isinstance(public_key, rsa.RSAPublicKey):
        raise KeyConfigurationError("Signing keys must be RSA keys.")
    if private_key.public_key().public_numbers() != public_key.public_numbers():
        raise KeyConfigurationError("JWT_PUBLIC_KEY does not match JWT_PRIVATE_KEY.")

    return SigningKeys(private_pem=private_pem, public_pem=public_pem)
