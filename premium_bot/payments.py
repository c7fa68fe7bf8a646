import enum
import hashlib
import hmac
from typing import Mapping


class SignaturePhase(enum.Enum):
    PREPARE = "prepare"
    COMPLETE = "complete"


# Click action kodlari
CLICK_ACTION_PREPARE = 0
CLICK_ACTION_COMPLETE = 1

_CLICK_FIELDS = {
    SignaturePhase.PREPARE: (
        "click_trans_id", "service_id", None, "merchant_trans_id",
        "amount", "action", "sign_time",
    ),
    SignaturePhase.COMPLETE: (
        "click_trans_id", "service_id", None, "merchant_trans_id",
        "merchant_prepare_id", "amount", "action", "sign_time",
    ),
}


def phase_for_action(action) -> SignaturePhase | None:
    try:
        action = int(action)
    except (TypeError, ValueError):
        return None
    if action == CLICK_ACTION_PREPARE:
        return SignaturePhase.PREPARE
    if action == CLICK_ACTION_COMPLETE:
        return SignaturePhase.COMPLETE
    return None


def _field(data: Mapping, name: str) -> str:
    value = data[name]
    if value is None:
        raise KeyError(name)
    return str(value)


def build_click_signature(data: Mapping, secret: str, phase: SignaturePhase) -> str:
    """MD5 over the phase-specific field order; None marks the secret slot.

    Raises KeyError when a field is missing.
    """
    parts = [secret if name is None else _field(data, name) for name in _CLICK_FIELDS[phase]]
    return hashlib.md5("".join(parts).encode()).hexdigest()


def verify_click_signature(data: Mapping, secret: str, phase: SignaturePhase) -> bool:
    received = data.get("sign_string")
    if not received or not secret:
        return False
    try:
        expected = build_click_signature(data, secret, phase)
    except KeyError:
        return False
    return hmac.compare_digest(expected.encode(), str(received).encode())
