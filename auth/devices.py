"""
auth/devices.py -- Trusted devices: a bounded MFA bypass for a known browser.

After a successful second factor the client may ask to trust the device. It
receives a raw token (256 bits) which it presents as X-Device-Token on later
password logins. A valid token skips the TOTP/recovery step; it never skips
the password.

Lifetime is fixed at issue time (trusted_device_days, default 30). Successful
checks update last_used_at but never move expires_at, so trust always ends.
Revocation deletes the row and takes effect on the next check.

Device labels (browser, OS, "Chrome on Windows") are best-effort parses of the
User-Agent header for display in the device list only.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import timedelta

from auth.clock import Clock, SystemClock
from auth.models import ClientInfo, TrustedDevice
from auth.store import AccountStore
from auth.tokens import generate_device_token, hash_device_token

logger = logging.getLogger("timetrack.auth.devices")

# Order matters: Edge and Opera UAs also contain "Chrome", Chrome UAs also contain "Safari".
_BROWSERS: list[tuple[str, re.Pattern]] = [
    ("Edge", re.compile(r"Edg(?:e|A|iOS)?/(\d+)")),
    ("Opera", re.compile(r"(?:OPR|Opera)/(\d+)")),
    ("Firefox", re.compile(r"(?:Firefox|FxiOS)/(\d+)")),
    ("Chrome", re.compile(r"(?:Chrome|CriOS)/(\d+)")),
    ("Safari", re.compile(r"Version/(\d+)[\d.]* (?:Mobile/\S+ )?Safari/")),
]

_OPERATING_SYSTEMS: list[tuple[str, re.Pattern]] = [
    ("Windows", re.compile(r"Windows NT (\d+(?:\.\d+)?)")),
    ("iOS", re.compile(r"(?:iPhone|iPad|iPod).*? OS (\d+)")),
    ("Android", re.compile(r"Android (\d+(?:\.\d+)?)")),
    ("macOS", re.compile(r"Mac OS X (\d+[_.]\d+)")),
    ("Chrome OS", re.compile(r"CrOS \S+ (\d+)")),
    ("Linux", re.compile(r"Linux()")),
]

_WINDOWS_VERSIONS = {"10.0": "10", "6.3": "8.1", "6.2": "8", "6.1": "7"}


def parse_user_agent(user_agent: str | None) -> tuple[str, str, str]:
    """Return (browser, os, device_name) labels for a User-Agent string.

    Unknown parts come back as "Unknown". Never raises.
    """
    if not user_agent:
        return "Unknown", "Unknown", "Unknown Device"

    browser_name, browser = "Unknown", "Unknown"
    for name, pattern in _BROWSERS:
        match = pattern.search(user_agent)
        if match:
            browser_name, browser = name, f"{name} {match.group(1)}"
            break

    os_name, os_label = "Unknown", "Unknown"
    for name, pattern in _OPERATING_SYSTEMS:
        match = pattern.search(user_agent)
        if match:
            version = match.group(1).replace("_", ".")
            if name == "Windows":
                version = _WINDOWS_VERSIONS.get(version, version)
            os_name, os_label = name, f"{name} {version}".strip()
            break

    if browser_name == "Unknown" and os_name == "Unknown":
        return browser, os_label, "Unknown Device"
    return browser, os_label, f"{browser_name} on {os_name}"


class TrustedDeviceStore:
    def __init__(
        self,
        store: AccountStore,
        secret_key: str,
        trust_days: int = 30,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._secret_key = secret_key
        self.trust_duration = timedelta(days=trust_days)
        self._clock = clock or SystemClock()

    def issue(self, account_id: int, client: ClientInfo) -> tuple[str, TrustedDevice]:
        """Create a trusted device and return (raw_token, record).

        The raw token is not recoverable afterwards; only its HMAC is stored.
        """
        raw_token = generate_device_token()
        browser, os_label, device_name = parse_user_agent(client.user_agent)
        now = self._clock.now()
        device = TrustedDevice(
            id=str(uuid.uuid4()),
            account_id=account_id,
            token_hash=hash_device_token(self._secret_key, raw_token),
            device_name=device_name,
            browser=browser,
            os=os_label,
            ip_address=client.ip_address,
            created_at=now,
            last_used_at=now,
            expires_at=now + self.trust_duration,
        )
        self._store.create_trusted_device(device)
        logger.info("Trusted device %s issued for account %s (%s)", device.id, account_id, device_name)
        return raw_token, device

    def check(self, account_id: int, raw_token: str | None) -> bool:
        """Return True if the token belongs to this account and now < expires_at."""
        if not raw_token:
            return False
        device = self._store.get_trusted_device(account_id, hash_device_token(self._secret_key, raw_token))
        if device is None:
            return False
        now = self._clock.now()
        if now >= device.expires_at:
            return False
        self._store.touch_trusted_device(device.id, now)
        return True

    def list(self, account_id: int) -> list[TrustedDevice]:
        """Return the account's unexpired devices, most recently used first."""
        now = self._clock.now()
        devices = [d for d in self._store.list_trusted_devices(account_id) if now < d.expires_at]
        return sorted(devices, key=lambda d: d.last_used_at, reverse=True)

    def revoke(self, account_id: int, device_id: str) -> bool:
        return self._store.delete_trusted_device(account_id, device_id)

    def revoke_all(self, account_id: int) -> int:
        return self._store.delete_trusted_devices(account_id)
