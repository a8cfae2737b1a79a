"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for LedgerGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_private_key -> JWT_PRIVATE_KEY). Type coercion and validation
      are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used to implement the DEBUG-conditional
      signing key policy: dev mode generates an ephemeral RSA pair with a
      warning, production mode refuses to start without one.

Security notes:
  [K1] Access and refresh tokens are RS256-signed. The private key only lives
       in this process; anything that holds the public key can verify.

  [K2] In production mode (DEBUG not set or false), missing signing keys are a
       hard startup failure. A generated key would invalidate every issued
       token on restart and differ between replicas.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or cache/.
"""

import logging
from functools import lru_cache

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("ledgergate.config")


def generate_rsa_pem_pair(key_size: int = 2048) -> tuple[str, str]:
    """Return a freshly generated (private_pem, public_pem) RSA pair.

    Used for DEBUG startup and by the test suite. Production keys are
    provisioned out of band and supplied through JWT_PRIVATE_KEY /
    JWT_PUBLIC_KEY or the *_FILE variants.
    """
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = (
        private_key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode("ascii")
    )
    return private_pem, public_pem


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (provided DEBUG=true or keys are
    supplied). The model_validator enforces production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    app_name: str = "LedgerGate Identity"
    version: str = "0.3.0"

    # ------------------------------------------------------------------
    # Backing stores
    # ------------------------------------------------------------------

    # SQLite by default; any SQLAlchemy URL works (postgresql+psycopg://...).
    database_url: str = "sqlite:///ledgergate_identity.db"
    redis_url: str = "redis://localhost:6379/0"
    # Upper bounds for a single external call. Requests never block longer.
    cache_timeout_seconds: float = 5.0
    db_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Signing keys [K1] [K2]
    # ------------------------------------------------------------------

    # PEM text. Empty string means "not configured"; the *_file variants are
    # read by auth.keys.load_signing_keys() when the inline value is empty.
    jwt_private_key: str = ""
    jwt_public_key: str = ""
    jwt_private_key_file: str = ""
    jwt_public_key_file: str = ""
    jwt_issuer: str = "ledgergate-api"

    # ------------------------------------------------------------------
    # Token and session lifetimes
    # ------------------------------------------------------------------

    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 7 * 24 * 60 * 60
    # Idle window for a session. Every refresh slides it forward. Refresh
    # requires a live session, so this may not be shorter than the refresh TTL.
    session_ttl_seconds: int = 7 * 24 * 60 * 60
    # Revoke the presented refresh token's jti when a new pair is issued.
    revoke_rotated_refresh: bool = True

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    lockout_threshold: int = 5
    lockout_minutes: int = 15

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    invitation_ttl_hours: int = 72
    invite_base_url: str = "http://localhost:3000"

    # First-run administrator. Created at startup only when the users table
    # is empty and both values are set; ignored afterwards.
    bootstrap_admin_email: str = ""
    bootstrap_admin_password: str = ""
    # Password for the create-admin CLI command; prompted for when empty.
    ledgergate_admin_password: str = ""

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    secure_cookies: bool = True
    login_rate_limit: str = "10/minute"
    rate_limit_storage_uri: str = "memory://"
    allowed_hosts: list[str] = ["*"]
    cors_origins: list[str] = ["http://localhost:3000"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_lifetimes(self) -> "Settings":
        if self.session_ttl_seconds < self.refresh_token_ttl_seconds:
            raise ValueError(
                "SESSION_TTL_SECONDS must be at least REFRESH_TOKEN_TTL_SECONDS; "
                "a session that expires first would reject every later refresh."
            )
        return self

    @model_validator(mode="after")
    def validate_signing_keys(self) -> "Settings":
        """Enforce the signing key policy [K2].

        Dev mode (DEBUG=true): auto-generate an RSA pair with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode: refuse to start unless both halves of the pair are
            configured, inline or by file path. The PEM contents themselves are
            parsed and cross-checked by auth.keys.load_signing_keys().
        """
        has_private = bool(self.jwt_private_key or self.jwt_private_key_file)
        has_public = bool(self.jwt_public_key or self.jwt_public_key_file)
        if has_private and has_public:
            return self
        if has_private != has_public:
            raise ValueError("JWT_PRIVATE_KEY and JWT_PUBLIC_KEY must be configured together.")
        if not self.debug:
            raise ValueError(
                "JWT_PRIVATE_KEY and JWT_PUBLIC_KEY are required in production mode. "
                "Set them (or the *_FILE variants) in your environment or .env file. "
                "To run in development mode, set DEBUG=true."
            )
        self.jwt_private_key, self.jwt_public_key = generate_rsa_pem_pair()
        logger.warning("WARNING: Using an auto-generated RSA signing key. Tokens will not persist across restarts.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
