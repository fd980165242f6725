"""
Tests for cleaning, normalizing and validating model output.

Covers:
- Fence and prefix stripping before JSON decoding
- Canonical datetime, category, confidence and currency
- Line item normalization on the vision profile
- Validation rules per profile
- Regex salvage on the email profile
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from datetime import time
import pytest

from app.models.receipt import ExtractedReceipt
from app.services.errors import EmptyResponseError, ExtractionRejectedError, MalformedJSONError, MissingFieldError
from app.services.normalizer import (
    EMAIL_PROFILE,
    VALID_CATEGORIES,
    VISION_PROFILE,
    clean_response,
    normalize,
    normalize_category,
    normalize_confidence,
    normalize_currency,
    normalize_datetime,
    parse_json,
    parse_response,
    validate,
)


class TestCleanResponse:

    def test_strips_json_fence(self):
        assert clean_response('```json\n{"merchant": "Acme"}\n```') == '{"merchant": "Acme"}'

    def test_strips_bare_fence(self):
        assert clean_response('```\n{"a": 1}\n```') == '{"a": 1}'

    def test_strips_chatty_prefix(self):
        text = "Here's the extracted data:\n{\"merchant\": \"Acme\"}"
        assert clean_response(text) == '{"merchant": "Acme"}'

    def test_keeps_outer_object_only(self):
        text = 'Sure! {"merchant": "Acme", "items": [{"a": 1}]} Hope this helps.'
        assert clean_response(text) == '{"merchant": "Acme", "items": [{"a": 1}]}'

    @pytest.mark.parametrize("text", [None, "", "   \n"])
    def test_empty_text_raises(self, text):
        with pytest.raises(EmptyResponseError):
            clean_response(text)


class TestParseJson:

    def test_decodes_object(self):
        assert parse_json('```json\n{"amount": "12.00"}\n```') == {"amount": "12.00"}

    def test_rejects_non_object(self):
        with pytest.raises(MalformedJSONError):
            parse_json('[1, 2, 3]')

    def test_rejects_broken_json(self):
        with pytest.raises(MalformedJSONError):
            parse_json('{"merchant": "Acme" "amount": 3}')


class TestFieldNormalizers:

    def test_datetime_utc_z(self):
        assert normalize_datetime("2024-05-01T12:00:00Z") == "2024-05-01T12:00:00.000Z"

    def test_datetime_offset_converted_to_utc(self):
        assert normalize_datetime("2024-05-01T10:00:00+02:00") == "2024-05-01T08:00:00.000Z"

    def test_datetime_naive_assumed_utc(self):
        assert normalize_datetime("2024-05-01T12:30:00") == "2024-05-01T12:30:00.000Z"

    def test_date_only_uses_time_of_day(self):
        assert normalize_datetime("2024-05-01") == "2024-05-01T00:00:00.000Z"
        assert normalize_datetime("2024-05-01", time(12, 0)) == "2024-05-01T12:00:00.000Z"

    def test_email_date_header(self):
        assert normalize_datetime("Wed, 01 May 2024 12:00:00 +0000") == "2024-05-01T12:00:00.000Z"

    @pytest.mark.parametrize("value", [None, "", "not a date", "2024-13-45"])
    def test_unparseable_datetime_is_none(self, value):
        assert normalize_datetime(value) is None

    @pytest.mark.parametrize("category", VALID_CATEGORIES)
    def test_canonical_categories_pass_through(self, category):
        assert normalize_category(category) == category
        assert normalize_category(category.upper()) == category
        assert normalize_category(f" {category.title()} ") == category

    def test_category(self):
        assert normalize_category("Dining") == "dining"
        assert normalize_category(" GROCERIES ") == "groceries"
        assert normalize_category("food") == "other"
        assert normalize_category(None) == "other"

    def test_confidence(self):
        assert normalize_confidence("HIGH") == "high"
        assert normalize_confidence("sure") == "medium"
        assert normalize_confidence(None) == "medium"

    def test_currency(self):
        assert normalize_currency("eur") == "EUR"
        assert normalize_currency(None) is None
        assert normalize_currency("", "USD") == "USD"


class TestNormalize:

    def test_vision_line_items(self):
        parsed = {
            "datetime": "2024-05-01",
            "merchant": " Blue Bottle ",
            "category": "Dining",
            "amount": "$9.72",
            "currency": "usd",
            "confidence": "high",
            "items": [
                {"description": "Latte", "quantity": "2", "price": "$4.50", "total": 9},
                {"description": None, "quantity": None, "price": None, "total": None},
                "not an item",
            ],
            "tax": "0.72",
            "tip": None,
        }

        record = normalize(parsed, VISION_PROFILE)

        assert record.datetime == "2024-05-01T12:00:00.000Z"
        assert record.merchant == "Blue Bottle"
        assert record.category == "dining"
        assert record.amount == 9.72
        assert record.currency == "USD"
        assert len(record.items) == 1
        item = record.items[0]
        assert item.description == "Latte"
        assert item.quantity == 2
        assert item.price == "4.50"
        assert item.total == "9.00"
        assert record.tax == 0.72
        assert record.tip is None

    def test_email_items_string_becomes_notes(self):
        parsed = {
            "date": "2024-03-01",
            "merchant": "Acme",
            "amount": "42.10",
            "items": "2x widgets",
        }

        record = normalize(parsed, EMAIL_PROFILE)

        assert record.notes == "2x widgets"
        assert record.items == []
        assert record.currency == "USD"
        assert record.datetime == "2024-03-01T00:00:00.000Z"
        assert record.confidence == "medium"

    def test_unparseable_values_become_none(self):
        record = normalize({"merchant": "", "amount": "N/A", "date": "someday"}, EMAIL_PROFILE)

        assert record.merchant is None
        assert record.amount is None
        assert record.datetime is None
        assert record.category == "other"

    @pytest.mark.parametrize("profile", [EMAIL_PROFILE, VISION_PROFILE])
    def test_normalize_is_idempotent(self, profile):
        parsed = {
            "datetime": "2024-05-01T18:45:00-04:00",
            "merchant": "Corner Store",
            "category": "groceries",
            "amount": "15.5",
            "currency": "cad",
            "notes": "snacks",
            "items": [{"description": "Chips", "quantity": 1, "price": "3.00", "total": "3.00"}],
        }

        first = normalize(parsed, profile)
        second = normalize(first.model_dump(), profile)

        assert second == first


class TestValidate:

    def _record(self, **overrides):
        fields = {"merchant": "Acme", "amount": 10.0, "currency": "USD"}
        fields.update(overrides)
        return ExtractedReceipt(**fields)

    def test_missing_merchant(self):
        with pytest.raises(MissingFieldError) as exc_info:
            validate(self._record(merchant=None), EMAIL_PROFILE, source="Gemini")

        assert exc_info.value.field == "merchant"
        assert "merchant" in str(exc_info.value)
        assert "Gemini" in str(exc_info.value)

    def test_missing_amount(self):
        with pytest.raises(MissingFieldError) as exc_info:
            validate(self._record(amount=None), VISION_PROFILE)

        assert exc_info.value.field == "amount"

    def test_email_requires_positive_amount(self):
        with pytest.raises(MissingFieldError):
            validate(self._record(amount=0.0), EMAIL_PROFILE)

    def test_vision_accepts_zero_amount(self):
        validate(self._record(amount=0.0), VISION_PROFILE)

    def test_vision_requires_currency(self):
        with pytest.raises(MissingFieldError) as exc_info:
            validate(self._record(currency=None), VISION_PROFILE)

        assert exc_info.value.field == "currency"

    def test_email_does_not_require_currency(self):
        validate(self._record(currency=None), EMAIL_PROFILE)


class TestParseResponse:

    def test_full_chain(self):
        raw = '```json\n{"date": "2024-02-10", "merchant": "Uber", "category": "transportation", "amount": "$23.40", "currency": "usd", "confidence": "high"}\n```'

        record = parse_response(raw, EMAIL_PROFILE, source="Gemini")

        assert record.merchant == "Uber"
        assert record.amount == 23.4
        assert record.currency == "USD"
        assert record.category == "transportation"
        assert record.confidence == "high"

    def test_email_salvages_broken_json_with_low_confidence(self):
        raw = '{"date": "2024-03-01", "merchant": "Acme", "amount": "42.10", "category": "shopping" "currency": "EUR", "confidence": "high"}'

        record = parse_response(raw, EMAIL_PROFILE)

        assert record.merchant == "Acme"
        assert record.amount == 42.1
        assert record.currency == "EUR"
        assert record.category == "shopping"
        assert record.confidence == "low"

    def test_email_salvage_needs_date_merchant_and_amount(self):
        raw = '{"merchant": "Acme" "amount": "42.10"}'

        with pytest.raises(MalformedJSONError) as exc_info:
            parse_response(raw, EMAIL_PROFILE, source="OpenAI")

        assert "OpenAI response was not valid JSON" in str(exc_info.value)

    def test_vision_has_no_salvage(self):
        raw = '{"datetime": "2024-03-01", "merchant": "Acme", "amount": "42.10" "currency": "EUR"}'

        with pytest.raises(MalformedJSONError):
            parse_response(raw, VISION_PROFILE, source="Gemini")

    def test_validation_error_propagates(self):
        with pytest.raises(MissingFieldError):
            parse_response('{"merchant": "Acme", "amount": "12.00"}', VISION_PROFILE)

    def test_vision_reply_end_to_end(self):
        raw = '{"datetime":"2024-05-01T12:00:00Z","merchant":"Test Store","category":"dining","amount":"45.32","currency":"usd","confidence":"HIGH"}'

        record = parse_response(raw, VISION_PROFILE, source="Gemini")

        assert record.model_dump() == {
            "datetime": "2024-05-01T12:00:00.000Z",
            "merchant": "Test Store",
            "category": "dining",
            "amount": 45.32,
            "currency": "USD",
            "notes": None,
            "confidence": "high",
            "items": [],
            "tax": None,
            "tip": None,
        }


class TestOutOfRangeValues:
    """Values that are valid JSON but exceed float or datetime range."""

    def test_huge_amount_normalizes_to_none(self):
        record = normalize({"merchant": "Acme", "amount": 10**400, "tax": 10**400}, VISION_PROFILE)

        assert record.amount is None
        assert record.tax is None

    def test_huge_quantity_dropped(self):
        record = normalize(
            {"merchant": "Acme", "items": [{"description": "Bolt", "quantity": 10**400}]},
            VISION_PROFILE
        )

        assert record.items[0].description == "Bolt"
        assert record.items[0].quantity is None

    @pytest.mark.parametrize("value", ["0001-01-01T00:00:00+01:00", "9999-12-31T23:00:00-05:00"])
    def test_datetime_outside_utc_range_is_none(self, value):
        assert normalize_datetime(value) is None

    def test_vision_huge_amount_is_rejected(self):
        raw = '{"datetime": "2024-05-01", "merchant": "Acme", "amount": 1' + '0' * 400 + ', "currency": "USD"}'

        with pytest.raises(MissingFieldError) as exc_info:
            parse_response(raw, VISION_PROFILE)

        assert exc_info.value.field == "amount"

    @pytest.mark.skipif(not hasattr(sys, "get_int_max_str_digits"), reason="no int digit limit before 3.11")
    def test_integer_past_digit_limit_is_malformed(self):
        raw = '{"merchant": "Acme", "amount": ' + '1' * 5000 + ', "currency": "USD"}'

        with pytest.raises(MalformedJSONError):
            parse_json(raw)
        with pytest.raises(ExtractionRejectedError):
            parse_response(raw, VISION_PROFILE)
