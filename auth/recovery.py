"""
auth/recovery.py -- One-time backup codes for when the authenticator is unavailable.

Codes are 8 characters from A-Z and 0-9 (about 41 bits each), generated with
`secrets`, shown to the user exactly once, and stored only as bcrypt hashes.
Submitted codes are compared by hash; plaintext codes are never persisted.

Consumption is a linear scan over at most a handful of hashes. The scan and
the removal happen under a per-account lock, and the removal itself is a
compare-and-swap UPDATE against the list that was scanned. Two concurrent
requests presenting the same valid code therefore cannot both succeed, even
across processes: the loser's CAS affects zero rows and it reports failure.
"""

from __future__ import annotations

import logging
import re
import secrets
import string
import threading
from collections import defaultdict

from auth.store import AccountStore
from auth.tokens import hash_password, verify_password

logger = logging.getLogger("timetrack.auth.recovery")

RECOVERY_CODE_LENGTH = 8
_ALPHABET = string.ascii_uppercase + string.digits
_RECOVERY_RE = re.compile(rf"^[A-Z0-9]{{{RECOVERY_CODE_LENGTH}}}$")


def looks_like_recovery_code(code: str) -> bool:
    return bool(_RECOVERY_RE.match(code.upper()))


class RecoveryCodeVault:
    def __init__(self, store: AccountStore, count: int = 8, bcrypt_rounds: int = 10) -> None:
        self._store = store
        self.count = count
        self._rounds = bcrypt_rounds
        self._locks: defaultdict[int, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _lock_for(self, account_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._locks[account_id]

    def generate(self, count: int | None = None) -> list[str]:
        """Return `count` fresh plaintext codes. The caller shows them once."""
        n = self.count if count is None else count
        return ["".join(secrets.choice(_ALPHABET) for _ in range(RECOVERY_CODE_LENGTH)) for _ in range(n)]

    def hash_codes(self, codes: list[str]) -> list[str]:
        return [hash_password(code, rounds=self._rounds) for code in codes]

    def persist(self, account_id: int, codes: list[str]) -> None:
        """Hash each code and replace the stored list wholesale.

        Every previously issued code stops working in the same statement.
        """
        hashes = self.hash_codes(codes)
        with self._lock_for(account_id):
            self._store.replace_recovery_codes(account_id, hashes)

    def remaining(self, account_id: int) -> int:
        return len(self._store.get_recovery_code_hashes(account_id))

    def consume(self, account_id: int, submitted: str) -> bool:
        """Use up one recovery code. Returns True exactly once per issued code.

        No match leaves the stored list untouched.
        """
        code = submitted.strip().upper()
        if not _RECOVERY_RE.match(code):
            return False
        with self._lock_for(account_id):
            hashes = self._store.get_recovery_code_hashes(account_id)
            for index, hashed in enumerate(hashes):
                if verify_password(code, hashed):
                    remaining = hashes[:index] + hashes[index + 1 :]
                    if not self._store.swap_recovery_codes(account_id, hashes, remaining):
                        logger.warning("Recovery code list for account %s changed concurrently", account_id)
                        return False
                    logger.info("Recovery code used for account %s (%d remaining)", account_id, len(remaining))
                    return True
        return False
