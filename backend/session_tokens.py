import hashlib
import hmac
import secrets
from typing import Optional, Tuple

TOKEN_BYTES = 32


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def issue_token() -> Tuple[str, str]:
    """Return a fresh ``(plaintext, hash)`` pair. Only the hash may be stored."""
    token = secrets.token_hex(TOKEN_BYTES)
    return token, hash_token(token)


def verify_token(token: Optional[str], stored_hash: Optional[str]) -> bool:
    if not token or not stored_hash:
        return False
    return hmac.compare_digest(hash_token(token), stored_hash)
