"""
core/config.py -- TimeTrack auth settings, read once from the environment.

Every tunable the auth service has lives on Settings: the signing key, the
database URL, session and pending-MFA lifetimes, lockout thresholds, and
recovery-code parameters. Other modules take a Settings instance (or call
get_settings()) rather than reading os.environ themselves.

Values come from environment variables or a .env file through
pydantic-settings, so DATABASE_URL populates database_url and so on.
get_settings() is wrapped in lru_cache and returns the same instance for the
life of the process.

SECRET_KEY rules:
  - DEBUG=true with no key: a random key is generated and a warning logged.
    Sessions and trusted devices then die with the process.
  - DEBUG unset or false with no key: startup fails.
  - Any key under 32 characters: startup fails. It signs JWTs and keys the
    HMAC over trusted-device tokens.

The TOTP step tolerance is pinned in auth/totp.py (TOTP_VALID_WINDOW) and is
deliberately absent here.

Layer rule: core/ may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("timetrack.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'timetrack_auth.db'}"


class Settings(BaseSettings):
    """Auth service settings. Every field has a default, so tests build
    Settings(secret_key=..., ...) directly without touching the environment.
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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL
    app_name: str = "TimeTrack"  # issuer label shown in authenticator apps
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_expire_seconds: int = 7 * 24 * 3600
    # Time the client has to complete the second factor after a password login.
    mfa_pending_expire_seconds: int = 5 * 60

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    # Coarse per-IP limit on POST /auth/login, enforced by slowapi.
    login_rate_limit: str = "10/minute"

    # Sliding-window lockout shared by password and MFA code checks.
    mfa_max_attempts: int = 5
    mfa_window_seconds: int = 15 * 60
    mfa_lockout_seconds: int = 15 * 60
    rate_limit_sweep_seconds: int = 30 * 60
    # "client_and_account" keys on IP + account id. "account" drops the IP,
    # which is stricter behind shared NATs.
    rate_limit_key_policy: Literal["client_and_account", "account"] = "client_and_account"
    # Honour the first X-Forwarded-For entry. Disable when not behind a proxy.
    trust_forwarded_for: bool = True

    # Per-IP failed-login monitor. Failures against any accounts count
    # together; crossing the threshold writes a security.brute_force_detected
    # audit event, at most once per cooldown per address.
    brute_force_threshold: int = 5
    brute_force_window_seconds: int = 15 * 60
    brute_force_alert_cooldown_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    trusted_device_days: int = 30
    recovery_code_count: int = 8
    recovery_code_bcrypt_rounds: int = 10

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    # bcrypt cost for account passwords set through the API.
    password_bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def check_security_settings(self) -> "Settings":
        """Fill in or reject SECRET_KEY, then sanity-check the bcrypt costs."""
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("SECRET_KEY not set; generated a throwaway key. Sessions and trusted devices end on restart.")
            else:
                raise ValueError("SECRET_KEY is not set. Configure it, or set DEBUG=true for a throwaway dev key.")
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.recovery_code_bcrypt_rounds < 4:
            raise ValueError("RECOVERY_CODE_BCRYPT_ROUNDS must be at least 4.")
        if self.password_bcrypt_rounds < 4:
            raise ValueError("PASSWORD_BCRYPT_ROUNDS must be at least 4.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Process-wide Settings. Tests construct Settings directly instead of clearing this cache."""
    return Settings()
