"""Custom validators for payout destinations"""

import re
from typing import Any, Dict, Optional

# PH mobile numbers: 09XXXXXXXXX, 639XXXXXXXXX or +639XXXXXXXXX
PH_MOBILE_PATTERN = re.compile(r"^(?:\+63|63|0)9\d{9}$")

PAYOUT_METHODS = {"gcash", "paymaya"}

ACCOUNT_NAME_MIN = 2
ACCOUNT_NAME_MAX = 100

def validate_ph_mobile(number: str) -> str:
    """Validate PH mobile wallet number"""
    number = re.sub(r"[\s-]", "", number or "")
    if not PH_MOBILE_PATTERN.match(number):
        raise ValueError("Invalid PH mobile number (use 09XXXXXXXXX or +639XXXXXXXXX)")
    return number

def validate_payout_method(method: Optional[str]) -> str:
    method = (method or "").strip().lower()
    if method not in PAYOUT_METHODS:
        raise ValueError("Withdrawal payout method must be GCash or PayMaya")
    return method

def validate_bank_account(bank_account: Optional[Dict[str, Any]], payout_method: str) -> Dict[str, str]:
    """
    Validate and normalize payout destination details

    Args:
        bank_account: Dict with account_number, account_name and optional bank_name
        payout_method: Already validated payout method

    Returns:
        Normalized destination dict

    Raises:
        ValueError: On any invalid field
    """
    if not bank_account:
        raise ValueError("Payout details are required")

    account_number = validate_ph_mobile(str(bank_account.get("account_number") or ""))

    account_name = str(bank_account.get("account_name") or "").strip()
    if not ACCOUNT_NAME_MIN <= len(account_name) <= ACCOUNT_NAME_MAX:
        raise ValueError(
            f"Account name must be between {ACCOUNT_NAME_MIN} and {ACCOUNT_NAME_MAX} characters"
        )

    bank_name = str(bank_account.get("bank_name") or "").strip()
    if bank_name and bank_name.lower() != payout_method:
        raise ValueError("bank_name must match payout method (GCash/PayMaya)")

    return {
        "account_number": account_number,
        "account_name": account_name,
        "bank_name": bank_name or payout_method,
    }
