"""Tests for subscription event filters."""

import pytest

from src.webhooks.errors import ValidationError
from src.webhooks.filters import (
    Equals,
    GreaterOrEqual,
    In,
    LessOrEqual,
    NotIn,
    matches_filters,
    parse_filters,
)

# ============================================================================
# Parsing Tests
# ============================================================================


class TestParseFilters:
    """Tests for parse_filters function."""

    def test_none_and_empty(self):
        assert parse_filters(None) == {}
        assert parse_filters({}) == {}

    def test_literal(self):
        assert parse_filters({"status": "paid"}) == {"status": [Equals("paid")]}

    def test_operators(self):
        parsed = parse_filters({"amount": {"$gte": 10, "$lte": 100}})
        assert parsed == {"amount": [GreaterOrEqual(10), LessOrEqual(100)]}

    def test_in_and_nin(self):
        parsed = parse_filters({"region": {"$in": ["eu", "us"]}, "tier": {"$nin": ["free"]}})
        assert parsed == {"region": [In(("eu", "us"))], "tier": [NotIn(("free",))]}

    def test_plain_object_is_literal(self):
        """Test mappings without operator keys compare literally."""
        parsed = parse_filters({"address": {"city": "Oslo"}})
        assert parsed == {"address": [Equals({"city": "Oslo"})]}

    def test_in_requires_list(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_filters({"region": {"$in": "eu"}})
        assert exc_info.value.field == "event_filters"


# ============================================================================
# Matching Tests
# ============================================================================


class TestMatchesFilters:
    """Tests for matches_filters function."""

    def test_no_filter_matches_everything(self):
        assert matches_filters({"anything": 1}, None) is True
        assert matches_filters("opaque", None) is True

    def test_literal_equality(self):
        assert matches_filters({"status": "paid"}, {"status": "paid"}) is True
        assert matches_filters({"status": "void"}, {"status": "paid"}) is False

    def test_range(self):
        filters = {"amount": {"$gte": 100, "$lte": 500}}
        assert matches_filters({"amount": 100}, filters) is True
        assert matches_filters({"amount": 500}, filters) is True
        assert matches_filters({"amount": 99}, filters) is False
        assert matches_filters({"amount": 501}, filters) is False

    def test_in(self):
        filters = {"region": {"$in": ["eu", "us"]}}
        assert matches_filters({"region": "eu"}, filters) is True
        assert matches_filters({"region": "apac"}, filters) is False

    def test_nin(self):
        filters = {"tier": {"$nin": ["free"]}}
        assert matches_filters({"tier": "pro"}, filters) is True
        assert matches_filters({"tier": "free"}, filters) is False

    def test_all_fields_must_match(self):
        filters = {"status": "paid", "amount": {"$gte": 100}}
        assert matches_filters({"status": "paid", "amount": 150}, filters) is True
        assert matches_filters({"status": "paid", "amount": 50}, filters) is False

    def test_missing_field(self):
        """Test absent fields fail every operator except $nin."""
        assert matches_filters({}, {"status": "paid"}) is False
        assert matches_filters({}, {"amount": {"$gte": 0}}) is False
        assert matches_filters({}, {"amount": {"$lte": 0}}) is False
        assert matches_filters({}, {"region": {"$in": ["eu"]}}) is False
        assert matches_filters({}, {"region": {"$nin": ["eu"]}}) is True

    def test_incomparable_types(self):
        """Test a range bound on a non-comparable value fails instead of raising."""
        assert matches_filters({"amount": "lots"}, {"amount": {"$gte": 100}}) is False

    def test_non_mapping_data_with_filter(self):
        assert matches_filters(["a", "b"], {"status": "paid"}) is False
