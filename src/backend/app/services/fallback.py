"""
Regex salvage for near-JSON model replies.

Used only after strict JSON parsing fails, typically on a reply with a
single syntax error. Kept separate from the normalizer so a profile can
swap or disable it.
"""

import re
from typing import Dict, Optional, Tuple


_MERCHANT = re.compile(r'"merchant"\s*:\s*"([^"]+)"')
_AMOUNT = re.compile(r'"amount"\s*:\s*"?([0-9][0-9.,]*)"?')
_CATEGORY = re.compile(r'"category"\s*:\s*"([^"]+)"')
_CURRENCY = re.compile(r'"currency"\s*:\s*"([^"]+)"')


def _string_field(key: str) -> re.Pattern:
    return re.compile(r'"' + re.escape(key) + r'"\s*:\s*"([^"]+)"')


def fallback_extraction(raw_text: Optional[str], date_keys: Tuple[str, ...] = ('date',)) -> Optional[Dict]:
    """
    Pull date, merchant and amount out of broken JSON text.

    Args:
        raw_text: Unparsed model reply
        date_keys: Keys accepted for the purchase date, in priority order

    Returns:
        Dict with date/merchant/amount/category/currency and
        confidence 'low', or None if any required field is missing
    """
    if not raw_text:
        return None

    date_match = None
    for key in date_keys:
        date_match = _string_field(key).search(raw_text)
        if date_match:
            break

    merchant_match = _MERCHANT.search(raw_text)
    amount_match = _AMOUNT.search(raw_text)

    if not (date_match and merchant_match and amount_match):
        return None

    category_match = _CATEGORY.search(raw_text)
    currency_match = _CURRENCY.search(raw_text)

    return {
        'date': date_match.group(1),
        'merchant': merchant_match.group(1),
        'amount': amount_match.group(1),
        'category': category_match.group(1) if category_match else 'other',
        'currency': currency_match.group(1) if currency_match else 'USD',
        'items': None,
        'confidence': 'low',
    }
