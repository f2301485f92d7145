"""
Constant-time verification code checks shared by the repository adapters.

bcrypt always runs, whether or not a pending session exists, so response
time does not reveal which emails have outstanding codes.
"""

import bcrypt

# Pre-computed bcrypt hash used when there is no stored hash to compare with.
_DUMMY_BCRYPT_HASH = bcrypt.hashpw(b"dummy_code_for_timing_safety", bcrypt.gensalt(10)).decode()

# bcrypt only considers the first 72 bytes of its input.
_BCRYPT_MAX_BYTES = 72


def code_matches(code: str, stored_hash: str | None) -> bool:
    """Compare code against stored_hash, running bcrypt even when it is None."""
    candidate = stored_hash if stored_hash is not None else _DUMMY_BCRYPT_HASH
    matched = bcrypt.checkpw(code.encode()[:_BCRYPT_MAX_BYTES], candidate.encode())
    return matched and stored_hash is not None
