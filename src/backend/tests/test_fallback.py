"""
Tests for regex salvage of near-JSON replies.
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from app.services.fallback import fallback_extraction


class TestFallbackExtraction:

    def test_extracts_required_fields(self):
        raw = '{"date": "2024-01-15", "merchant": "Starbucks", "amount": 5.75, "category": "dining",}'

        result = fallback_extraction(raw)

        assert result['date'] == "2024-01-15"
        assert result['merchant'] == "Starbucks"
        assert result['amount'] == "5.75"
        assert result['category'] == "dining"
        assert result['confidence'] == "low"

    def test_defaults_category_and_currency(self):
        raw = '"date": "2024-01-15" "merchant": "Shell" "amount": "1,204.10"'

        result = fallback_extraction(raw)

        assert result['amount'] == "1,204.10"
        assert result['category'] == "other"
        assert result['currency'] == "USD"
        assert result['items'] is None

    def test_date_keys_in_priority_order(self):
        raw = '{"datetime": "2024-01-15T09:00:00Z", "merchant": "Shell", "amount": "40"'

        assert fallback_extraction(raw) is None
        assert fallback_extraction(raw, ('date', 'datetime'))['date'] == "2024-01-15T09:00:00Z"

    def test_missing_required_field_returns_none(self):
        assert fallback_extraction('{"date": "2024-01-15", "merchant": "Shell"') is None
        assert fallback_extraction('{"merchant": "Shell", "amount": "3.00"') is None

    def test_empty_text(self):
        assert fallback_extraction(None) is None
        assert fallback_extraction("") is None
