# billsync/security.py
import hashlib
import hmac
import json
import uuid

import bcrypt


def hash_password(plain: str) -> str:
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError, AttributeError):
        return False


def new_id() -> str:
    return str(uuid.uuid4())


def sign_payload(payload: dict, secret: str) -> str:
    """HMAC-SHA256 over a canonical JSON rendering of ``payload``."""
    message = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(payload: dict, signature: str, secret: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(payload, secret), signature)
