"""Secret generation and comparison helpers for device bootstrap."""

from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import string

_PAIRING_CODE_ALPHABET = string.ascii_uppercase + string.digits
_ENROLLMENT_TOKEN_PREFIX = "et_"
_DEVICE_ID_PATTERN = re.compile(r"[A-Za-z0-9._-]{1,128}")
_PAIRING_CODE_PATTERN = re.compile(r"[!-~]{4,64}")


class Crypto:
    """Static helpers for key generation, hashing and validation."""

    @staticmethod
    def generate_pairing_code() -> str:
        """Generate XXXX-XXXX pairing code (uppercase alphanumeric)."""
        left = "".join(secrets.choice(_PAIRING_CODE_ALPHABET) for _ in range(4))
        right = "".join(secrets.choice(_PAIRING_CODE_ALPHABET) for _ in range(4))
        return f"{left}-{right}"

    @staticmethod
    def generate_enrollment_token() -> str:
        """Generate a one-time enrollment token with the ``et_`` prefix."""
        return _ENROLLMENT_TOKEN_PREFIX + secrets.token_urlsafe(32)

    @staticmethod
    def secrets_match(supplied: str | None, stored: str | None) -> bool:
        """Exact, constant-time string equality. ``None`` never matches."""
        if supplied is None or stored is None:
            return False
        return hmac.compare_digest(supplied.encode(), stored.encode())

    @staticmethod
    def fingerprint(der: bytes) -> str:
        """SHA-256 hex digest of a DER-encoded certificate."""
        return hashlib.sha256(der).hexdigest()

    @staticmethod
    def is_valid_device_id(device_id: str) -> bool:
        """True if the id is usable as a certificate common name."""
        return bool(_DEVICE_ID_PATTERN.fullmatch(device_id))

    @staticmethod
    def is_valid_pairing_code(pairing_code: str) -> bool:
        """True for 4-64 printable ASCII characters without whitespace."""
        return bool(_PAIRING_CODE_PATTERN.fullmatch(pairing_code))
