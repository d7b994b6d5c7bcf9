"""
auth/totp.py -- TOTP (RFC 6238) secrets, provisioning URIs, and code checks.

Compatible with Google Authenticator, Authy, Aegis and friends:
  - 6-digit codes
  - 30-second time step
  - HMAC-SHA1
  - Base32 secret (32 chars = 160 bits)

The step tolerance is pinned here rather than inherited from a library
default. TOTP_VALID_WINDOW = 1 accepts the previous, current and next time
step (roughly +/- 30 seconds of clock skew). Widening it multiplies the
number of codes an attacker can hit per guess.
"""

from __future__ import annotations

import base64
import hmac
import io
import re

import pyotp
import qrcode

from auth.clock import Clock, SystemClock

TOTP_DIGITS = 6
TOTP_INTERVAL = 30
TOTP_VALID_WINDOW = 1

_CODE_RE = re.compile(r"^\d{6}$")


class TOTPManager:
    def __init__(self, clock: Clock | None = None, issuer: str = "TimeTrack") -> None:
        self._clock = clock or SystemClock()
        self.issuer = issuer

    def generate_secret(self) -> str:
        """Return a new random Base32 secret (160 bits of entropy)."""
        return pyotp.random_base32(length=32)

    def provisioning_uri(self, secret: str, account_label: str, issuer_label: str | None = None) -> str:
        """Build the otpauth://totp/... URI that authenticator apps scan.

        Pure function of its inputs.
        """
        totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL)
        return totp.provisioning_uri(name=account_label, issuer_name=issuer_label or self.issuer)

    def qr_code_data_url(self, uri: str) -> str:
        """Render the provisioning URI as a PNG QR code data URL.

        Frontend can display this directly: <img src="data:image/png;base64,...">
        """
        qr = qrcode.QRCode(
            version=None,
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=8,
            border=4,
        )
        qr.add_data(uri)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")

        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")

    def code_at(self, secret: str, offset: int = 0) -> str:
        """Return the code for the current step plus `offset` steps."""
        totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL)
        return totp.at(self._clock.now(), counter_offset=offset)

    def verify(self, code: str, secret: str | None) -> bool:
        """Return True if `code` matches any step within TOTP_VALID_WINDOW of now.

        Every candidate is compared with hmac.compare_digest so timing does not
        reveal how many leading digits were right.
        """
        if not secret or not code:
            return False
        code = normalize_code(code)
        if not _CODE_RE.match(code):
            return False
        try:
            totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL)
            now = self._clock.now()
            matched = False
            for offset in range(-TOTP_VALID_WINDOW, TOTP_VALID_WINDOW + 1):
                candidate = totp.at(now, counter_offset=offset)
                if hmac.compare_digest(candidate.encode("ascii"), code.encode("ascii")):
                    matched = True
            return matched
        except (ValueError, TypeError):
            # Corrupt secret in the DB. Never a match.
            return False


def normalize_code(code: str) -> str:
    """Strip whitespace and the grouping characters users type ("123 456", "ABCD-EFGH")."""
    return re.sub(r"[\s-]", "", code)
