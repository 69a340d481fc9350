"""Secret generation and pairing code derivation.

Security notes:
- Secrets and ids come from the `secrets` module (platform CSPRNG)
- The pairing code is a one-way function of the signing secret, so it
  changes exactly when the secret is rotated
- The code space is 10^6 and attempts are not throttled; see DESIGN.md
"""

import hashlib
import secrets

__all__ = [
    "ACCESS_CODE_LENGTH",
    "derive_access_code",
    "generate_id",
    "generate_secret",
]

# Constants
SECRET_LENGTH = 32  # bytes, 256 bits
ID_LENGTH = 16  # bytes, 32 hex chars
ACCESS_CODE_LENGTH = 6
_CODE_SLICE = 8  # hex digits of the digest used for the code
_CODE_MODULUS = 10**ACCESS_CODE_LENGTH


def generate_secret() -> str:
    """Generate a signing secret.

    Returns:
        64-char lowercase hex string (32 random bytes).
    """
    return secrets.token_hex(SECRET_LENGTH)


def generate_id() -> str:
    """Generate an opaque device or request identifier.

    Returns:
        32-char lowercase hex string.
    """
    return secrets.token_hex(ID_LENGTH)


def derive_access_code(secret: str) -> str:
    """Derive the 6-digit pairing code from the signing secret.

    SHA-256 the secret, read the first 8 hex digits as an integer,
    reduce modulo 1,000,000 and left-pad with zeros.

    Args:
        secret: Store signing secret.

    Returns:
        Six-digit decimal string, e.g. "004217".
    """
    digest = hashlib.sha256(secret.encode("utf-8")).hexdigest()
    value = int(digest[:_CODE_SLICE], 16) % _CODE_MODULUS
    return str(value).zfill(ACCESS_CODE_LENGTH)
