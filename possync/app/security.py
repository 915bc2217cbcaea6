import hashlib
import hmac
from typing import Optional

from passlib.context import CryptContext
from passlib.exc import MissingBackendError

from .config import settings
from .logs import json_log

_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Unsalted SHA-256 is NOT a credential hash. It only exists so a developer build
# without a bcrypt backend can still create staff; production refuses it.
INSECURE_PREFIX = "devsha256:"

PIN_MASK = "****"


class PinHashUnavailable(RuntimeError):
    pass


def is_valid_pin(pin: str) -> bool:
    pin = pin or ""
    return 4 <= len(pin) <= 6 and all(c in "0123456789" for c in pin)


def insecure_fallback_allowed() -> bool:
    if settings.is_production:
        return False
    return bool(settings.allow_insecure_pin_hash)


def _insecure_hash(pin: str) -> str:
    return INSECURE_PREFIX + hashlib.sha256(pin.encode("utf-8")).hexdigest()


def is_insecure_hash(hashed: Optional[str]) -> bool:
    return bool(hashed) and hashed.startswith(INSECURE_PREFIX)


def hash_pin(pin: str) -> str:
    pin = (pin or "").strip()
    if not is_valid_pin(pin):
        raise ValueError("Invalid PIN. Must be 4-6 digits")
    try:
        return _pwd_context.hash(pin)
    except MissingBackendError as ex:
        if not insecure_fallback_allowed():
            raise PinHashUnavailable("secure PIN hashing is unavailable on this device") from ex
        json_log(
            "warning",
            "security.pin_hash.insecure_fallback",
            env=settings.env,
            error=str(ex),
        )
        return _insecure_hash(pin)


def verify_pin(pin: str, hashed: Optional[str]) -> bool:
    pin = (pin or "").strip()
    if not pin or not hashed:
        return False
    if is_insecure_hash(hashed):
        if settings.is_production:
            return False
        return hmac.compare_digest(_insecure_hash(pin), hashed)
    try:
        return _pwd_context.verify(pin, hashed)
    except (ValueError, TypeError, MissingBackendError):
        return False


def needs_rehash(hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    if is_insecure_hash(hashed):
        return True
    try:
        return _pwd_context.needs_update(hashed)
    except ValueError:
        return True
