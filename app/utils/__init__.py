"""Utilities package"""

from .helpers import (
    utcnow,
    quantize_money,
    centavos_to_amount,
    percentage_fee,
    format_currency,
    sha256_hex,
    hash_payload,
    generate_tracking_number,
    generate_order_number,
)
from .metadata import flatten_metadata

__all__ = [
    "utcnow",
    "quantize_money",
    "centavos_to_amount",
    "percentage_fee",
    "format_currency",
    "sha256_hex",
    "hash_payload",
    "generate_tracking_number",
    "generate_order_number",
    "flatten_metadata",
]
