import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Optional
from stockledger.common.custom_exceptions import ValidationError
from stockledger.config.settings import config_settings
from stockledger.schema.full_schema import LedgerTransactionType


def compute_new_quantity(transaction_type: str, previous_quantity: int, quantity: int) -> int:
    """Quantity a ledger entry must end on: additions add, reductions and adjustments subtract."""
    if transaction_type == LedgerTransactionType.ADDITION.value:
        return previous_quantity + quantity
    return previous_quantity - quantity


def parse_public_id(value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError("Invalid product ID", details={"product_id": str(value)})


def try_parse_public_id(value: Any) -> Optional[uuid.UUID]:
    try:
        return parse_public_id(value)
    except ValidationError:
        return None


def _cursor_secret() -> bytes:
    return config_settings.CURSOR_SECRET.encode()


def _sign(payload_bytes: bytes) -> str:
    sig = hmac.new(_cursor_secret(), payload_bytes, hashlib.sha256).digest()
    return base64.urlsafe_b64encode(sig).decode().rstrip("=")


def encode_cursor(last_id: int) -> str:
    payload = {"t": int(time.time()), "s": int(last_id)}
    raw_bytes = json.dumps(payload, separators=(",", ":")).encode()
    bytes_encoded = base64.urlsafe_b64encode(raw_bytes).decode().rstrip("=")
    return f"{bytes_encoded}.{_sign(raw_bytes)}"


def decode_cursor(token: str, max_age: Optional[int] = None) -> int:
    try:
        token_part, sig_part = token.split(".")
        padded = token_part + "=" * ((4 - len(token_part) % 4) % 4)
        raw = base64.urlsafe_b64decode(padded)
    except ValueError:
        raise ValidationError("Invalid cursor format")

    if not hmac.compare_digest(_sign(raw), sig_part):
        raise ValidationError("Cursor signature mismatch")

    payload = json.loads(raw.decode())
    if max_age is not None and int(time.time()) - payload.get("t", 0) > max_age:
        raise ValidationError("Cursor expired")
    return int(payload["s"])
