"""
Normalization and validation of language-model receipt output.

Turns raw model text into an ExtractedReceipt:
clean -> json.loads -> normalize -> validate, with optional regex salvage
when the JSON step fails. The email and vision pipelines share these
helpers and differ only in their ExtractionProfile.
"""

import json
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, time, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Optional, Tuple, Union

from app.models.receipt import ExtractedReceipt, LineItem
from app.services.errors import EmptyResponseError, MalformedJSONError, MissingFieldError
from app.services.fallback import fallback_extraction
from app.utils.money import parse_amount, stringify_amount

logger = logging.getLogger(__name__)


VALID_CATEGORIES = (
    'groceries',
    'dining',
    'shopping',
    'transportation',
    'utilities',
    'entertainment',
    'health',
    'travel',
    'other',
)

VALID_CONFIDENCE = ('high', 'medium', 'low')

_FENCE_JSON = re.compile(r'```json\s*', re.IGNORECASE)
_FENCE = re.compile(r'```\s*')
_CHATTY_PREFIXES = (
    re.compile(r"^Here's the extracted data:?\s*", re.IGNORECASE),
    re.compile(r'^Here is the JSON:?\s*', re.IGNORECASE),
    re.compile(r'^The extracted receipt data is:?\s*', re.IGNORECASE),
    re.compile(r'^Based on the email.*?:\s*', re.IGNORECASE),
)
_OUTER_OBJECT = re.compile(r'\{[\s\S]*\}')
_DATE_ONLY = re.compile(r'^\d{4}-\d{2}-\d{2}$')
_DATE_FORMATS = ('%Y/%m/%d', '%m/%d/%Y', '%B %d, %Y', '%b %d, %Y', '%d %B %Y', '%d %b %Y')


@dataclass(frozen=True)
class ExtractionProfile:
    """
    Field set and validation strictness for one extraction pipeline.

    Attributes:
        name: Profile name used in logs
        date_keys: JSON keys tried, in order, for the purchase date
        line_items: Whether items/tax/tip are structured fields
        require_currency: Reject records without a currency
        require_positive_amount: Reject records with amount <= 0
        default_currency: Currency used when the model gives none
        date_only_time: Time of day assumed for date-only values
        fallback: Regex salvage used when JSON parsing fails, or None
    """
    name: str
    date_keys: Tuple[str, ...]
    line_items: bool
    require_currency: bool
    require_positive_amount: bool
    default_currency: Optional[str] = None
    date_only_time: time = time(0, 0)
    fallback: Optional[Callable[..., Optional[Dict[str, Any]]]] = None


EMAIL_PROFILE = ExtractionProfile(
    name='email',
    date_keys=('date', 'datetime'),
    line_items=False,
    require_currency=False,
    require_positive_amount=True,
    default_currency='USD',
    fallback=fallback_extraction,
)

VISION_PROFILE = ExtractionProfile(
    name='vision',
    date_keys=('datetime', 'date'),
    line_items=True,
    require_currency=True,
    require_positive_amount=False,
    date_only_time=time(12, 0),
)


def clean_response(text: Optional[str]) -> str:
    """
    Isolate the JSON object in a model reply.

    Strips fences and chatty prefixes, then keeps the span from the first
    '{' to the last '}'. Not a tokenizer: assumes one object per reply.

    Raises:
        EmptyResponseError: If there is no text at all
    """
    if text is None or not str(text).strip():
        raise EmptyResponseError("Empty response from LLM")

    cleaned = _FENCE_JSON.sub('', str(text))
    cleaned = _FENCE.sub('', cleaned)
    cleaned = cleaned.strip()

    for prefix in _CHATTY_PREFIXES:
        cleaned = prefix.sub('', cleaned)

    match = _OUTER_OBJECT.search(cleaned)
    if match:
        cleaned = match.group(0)

    return cleaned.strip()


def parse_json(text: Optional[str]) -> Dict[str, Any]:
    """Clean and decode a model reply into a dict."""
    cleaned = clean_response(text)
    try:
        parsed = json.loads(cleaned)
    except ValueError as e:
        # JSONDecodeError, or an integer literal past the int-conversion limit
        raise MalformedJSONError(str(e)) from e

    if not isinstance(parsed, dict):
        raise MalformedJSONError(f"expected a JSON object, got {type(parsed).__name__}")

    return parsed


def _clean_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_category(value: Any) -> str:
    """Lower-case a category and collapse unknown values to 'other'."""
    category = _clean_str(value)
    if not category:
        return 'other'
    category = category.lower()
    return category if category in VALID_CATEGORIES else 'other'


def normalize_confidence(value: Any) -> str:
    """Lower-case a confidence tag; unknown or missing becomes 'medium'."""
    confidence = _clean_str(value)
    if not confidence:
        return 'medium'
    confidence = confidence.lower()
    return confidence if confidence in VALID_CONFIDENCE else 'medium'


def normalize_currency(value: Any, default: Optional[str] = None) -> Optional[str]:
    currency = _clean_str(value)
    if not currency:
        return default
    return currency.upper()


def _parse_datetime(text: str, date_only_time: time) -> Optional[datetime]:
    if _DATE_ONLY.match(text):
        try:
            day = datetime.strptime(text, '%Y-%m-%d').date()
        except ValueError:
            return None
        return datetime.combine(day, date_only_time, tzinfo=timezone.utc)

    try:
        return datetime.fromisoformat(text.replace('Z', '+00:00'))
    except ValueError:
        pass

    # Email Date headers: "Wed, 01 May 2024 12:00:00 +0000"
    try:
        return parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        pass

    for fmt in _DATE_FORMATS:
        try:
            day = datetime.strptime(text, fmt).date()
        except ValueError:
            continue
        return datetime.combine(day, date_only_time, tzinfo=timezone.utc)

    return None


def normalize_datetime(value: Any, date_only_time: time = time(0, 0)) -> Optional[str]:
    """
    Render a timestamp as a canonical UTC instant.

    Args:
        value: ISO-8601 string, plain date, email date header, or datetime
        date_only_time: Time of day to assume when only a date is given

    Returns:
        'YYYY-MM-DDTHH:MM:SS.mmmZ' or None if unparseable

    Examples:
        >>> normalize_datetime("2024-05-01T12:00:00Z")
        '2024-05-01T12:00:00.000Z'
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        text = _clean_str(value)
        if not text:
            return None
        parsed = _parse_datetime(text, date_only_time)
        if parsed is None:
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)

    try:
        parsed = parsed.astimezone(timezone.utc)
    except (OverflowError, ValueError):
        # e.g. 0001-01-01 with a positive offset
        return None
    return parsed.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def _coerce_quantity(value: Any) -> Optional[Union[int, float]]:
    if value is None or value == '' or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def normalize_item(raw: Any) -> Optional[LineItem]:
    """
    Normalize one line item; returns None for entries that should be dropped.
    """
    if not raw or not isinstance(raw, dict):
        return None

    item = LineItem(
        description=_clean_str(raw.get('description')),
        quantity=_coerce_quantity(raw.get('quantity')),
        price=stringify_amount(raw.get('price')),
        total=stringify_amount(raw.get('total')),
    )

    if item.description is None and item.quantity is None and item.price is None and item.total is None:
        return None

    return item


def _first_present(data: Dict[str, Any], keys: Tuple[str, ...]) -> Any:
    for key in keys:
        if data.get(key) not in (None, ''):
            return data[key]
    return None


def normalize(parsed: Dict[str, Any], profile: ExtractionProfile) -> ExtractedReceipt:
    """
    Map a decoded model object onto the canonical receipt shape.

    Never raises; missing or invalid values become None or their defaults.
    Validation is a separate step (see validate).
    """
    notes = parsed.get('notes')
    items = []
    tax = None
    tip = None

    if profile.line_items:
        raw_items = parsed.get('items')
        if isinstance(raw_items, list):
            items = [item for item in (normalize_item(raw) for raw in raw_items) if item]
        tax = parse_amount(parsed.get('tax'))
        tip = parse_amount(parsed.get('tip'))
    elif notes in (None, '') and isinstance(parsed.get('items'), str):
        # Email prompt asks for a one-line purchase description under "items"
        notes = parsed.get('items')

    return ExtractedReceipt(
        datetime=normalize_datetime(_first_present(parsed, profile.date_keys), profile.date_only_time),
        merchant=_clean_str(parsed.get('merchant')),
        category=normalize_category(parsed.get('category')),
        amount=parse_amount(parsed.get('amount')),
        currency=normalize_currency(parsed.get('currency'), profile.default_currency),
        notes=_clean_str(notes),
        confidence=normalize_confidence(parsed.get('confidence')),
        items=items,
        tax=tax,
        tip=tip,
    )


def validate(record: ExtractedReceipt, profile: ExtractionProfile, source: str = "The model") -> None:
    """
    Enforce the minimum a receipt needs before it is accepted.

    Raises:
        MissingFieldError: Naming merchant, amount or currency
    """
    if not record.merchant:
        raise MissingFieldError('merchant', f"{source} did not provide a merchant name")

    if record.amount is None:
        raise MissingFieldError('amount', f"{source} did not provide a total amount")

    if profile.require_positive_amount and record.amount <= 0:
        raise MissingFieldError('amount', f"{source} did not provide a positive total amount")

    if profile.require_currency and not record.currency:
        raise MissingFieldError('currency', f"{source} did not provide a currency")


def parse_response(raw_text: Optional[str], profile: ExtractionProfile, source: str = "The model") -> ExtractedReceipt:
    """
    Run the full clean -> parse -> normalize -> validate chain.

    When the JSON step fails and the profile has a fallback, the regex
    salvage is tried; salvaged records are always low confidence.

    Raises:
        EmptyResponseError: No text to parse
        MalformedJSONError: JSON unusable and salvage found nothing
        MissingFieldError: Record failed validation
    """
    logger.debug("Raw LLM response", extra={
        "profile": profile.name,
        "preview": (raw_text or '')[:200]
    })

    try:
        parsed = parse_json(raw_text)
    except MalformedJSONError as e:
        salvaged = profile.fallback(raw_text, profile.date_keys) if profile.fallback else None
        if salvaged is None:
            raise MalformedJSONError(f"{source} response was not valid JSON: {e}") from e

        logger.info("Using fallback extraction", extra={
            "profile": profile.name,
            "merchant": salvaged.get('merchant')
        })
        record = normalize(salvaged, profile).model_copy(update={'confidence': 'low'})
        validate(record, profile, source)
        return record

    record = normalize(parsed, profile)
    validate(record, profile, source)
    return record
