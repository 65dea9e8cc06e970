"""
Device Credential Verification
Validates device secrets against stored hashes while migrating legacy
SHA-256 digests to salted Werkzeug hashes
"""
import enum
import hashlib
import hmac
import re
from typing import NamedTuple

from werkzeug.security import generate_password_hash, check_password_hash


_LEGACY_DIGEST = re.compile(r'^[0-9a-f]{64}$')


class HashScheme(enum.Enum):
    """Storage scheme of a device secret hash"""
    LEGACY_SHA256 = 'legacy_sha256'   # Unsalted hex digest from early firmware provisioning
    WERKZEUG = 'werkzeug'             # '<method>:<params>$<salt>$<hash>'

    @classmethod
    def detect(cls, stored_hash: str) -> 'HashScheme':
        """Resolve the scheme tag carried by a stored hash"""
        if _LEGACY_DIGEST.match(stored_hash or ''):
            return cls.LEGACY_SHA256
        return cls.WERKZEUG

    @property
    def is_current(self) -> bool:
        return self is HashScheme.WERKZEUG


class Verification(NamedTuple):
    valid: bool
    needs_upgrade: bool


def legacy_digest(secret: str) -> str:
    """Hex SHA-256 digest used by the legacy scheme"""
    return hashlib.sha256(secret.encode('utf-8')).hexdigest()


def hash_secret(secret: str) -> str:
    """Hash a device secret under the current scheme"""
    return generate_password_hash(secret)


def _verify_legacy(secret: str, stored_hash: str) -> bool:
    return hmac.compare_digest(legacy_digest(secret).encode('ascii'), stored_hash.encode('ascii'))


def _verify_werkzeug(secret: str, stored_hash: str) -> bool:
    try:
        return check_password_hash(stored_hash, secret)
    except ValueError:
        # Unknown method prefix or malformed hash
        return False


_VERIFIERS = {
    HashScheme.LEGACY_SHA256: _verify_legacy,
    HashScheme.WERKZEUG: _verify_werkzeug,
}


def verify(presented_secret: str, stored_hash: str) -> Verification:
    """
    Check a presented device secret against its stored hash

    Args:
        presented_secret: Plaintext secret sent by the device
        stored_hash: Value of Device.secret_hash

    Returns:
        Verification(valid, needs_upgrade); needs_upgrade is only ever True
        for a valid secret stored under a non-current scheme
    """
    if not presented_secret or not stored_hash:
        return Verification(False, False)

    scheme = HashScheme.detect(stored_hash)
    valid = _VERIFIERS[scheme](presented_secret, stored_hash)
    return Verification(valid, valid and not scheme.is_current)
