"""
Helper utilities
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timezone
from typing import Any, Union
import hashlib
import json
import random
import secrets
import string
import time

CENT = Decimal("0.01")

Number = Union[int, float, str, Decimal]

def utcnow() -> datetime:
    """Naive UTC timestamp, the form every datetime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))

def quantize_money(value: Number) -> Decimal:
    """Round to two decimal places, half up"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)

def centavos_to_amount(centavos: int) -> Decimal:
    """
    Convert integer minor units to a wallet amount

    Args:
        centavos: Amount in centavos

    Returns:
        Amount in pesos with two decimals
    """
    return quantize_money(Decimal(int(centavos)) / 100)

def percentage_fee(amount: int, rate: Number) -> int:
    """
    Fee in minor units for a percentage rate, rounded half up

    Args:
        amount: Amount in centavos
        rate: Percentage, e.g. 1.5 for 1.5%

    Returns:
        Fee in centavos
    """
    fee = Decimal(int(amount)) * to_decimal(rate) / Decimal(100)
    return int(fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

def format_currency(amount: Number, currency: str = "PHP") -> str:
    """
    Format amount as currency

    Args:
        amount: Amount to format
        currency: Currency code

    Returns:
        Formatted currency string
    """
    value = quantize_money(amount)
    if currency == "PHP":
        return f"₱{value:,.2f}"
    return f"{currency} {value:,.2f}"

def sha256_hex(value: Union[str, bytes]) -> str:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return hashlib.sha256(value).hexdigest()

def stable_json(data: Any) -> str:
    """Deterministic JSON used for request hashing"""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)

def hash_payload(data: Any) -> str:
    return sha256_hex(stable_json(data))

def generate_tracking_number(prefix: str = "DSTRK") -> str:
    """Generate unique shipment tracking number"""
    timestamp = int(time.time() * 1000)
    return f"{prefix}{timestamp}{secrets.token_hex(4).upper()}"

def generate_order_number(prefix: str = "ORD") -> str:
    """Generate unique order number"""
    timestamp = utcnow().strftime('%Y%m%d%H%M%S')
    random_suffix = ''.join(random.choices(string.ascii_uppercase + string.digits, k=6))

    return f"{prefix}{timestamp}{random_suffix}"

def generate_idempotency_key(prefix: str) -> str:
    """Fresh key for a single outbound gateway call"""
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(6)}"
