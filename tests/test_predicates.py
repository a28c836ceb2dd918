"""
Tests for condition predicates: evaluation, composition and serialization
"""

import pytest
from decimal import Decimal

from approval_engine.predicates import (
    RangePredicate, EqualsPredicate, InPredicate, AllOf, AnyOf,
    evaluate, predicate_to_dict, predicate_from_dict,
    amount_between, all_of, any_of
)


attributes = {
    "request_type": "expense",
    "request_category": "equipment",
    "amount": Decimal("500"),
    "context": {"department": "science", "campus": {"name": "north"}},
}


class TestRangePredicate:

    def test_inclusive_bounds(self):
        assert evaluate(amount_between(500, 500), attributes)
        assert evaluate(amount_between(0, 10000), attributes)
        assert not evaluate(amount_between(501, None), attributes)
        assert not evaluate(amount_between(None, 499.99), attributes)

    def test_open_range_matches_any_number(self):
        assert evaluate(RangePredicate("amount"), attributes)

    def test_missing_or_non_numeric_field_never_matches(self):
        assert not evaluate(amount_between(0, 100), {"amount": None})
        assert not evaluate(amount_between(0, 100), {})
        assert not evaluate(RangePredicate("context.department", Decimal(0)), attributes)

    def test_accepts_numeric_strings(self):
        assert evaluate(amount_between(100, 200), {"amount": "150.25"})


class TestLeafPredicates:

    def test_equals_reaches_into_context(self):
        assert evaluate(EqualsPredicate("context.department", "science"), attributes)
        assert evaluate(EqualsPredicate("context.campus.name", "north"), attributes)
        assert not evaluate(EqualsPredicate("context.department", "arts"), attributes)

    def test_equals_missing_field_is_false_even_for_none(self):
        assert not evaluate(EqualsPredicate("context.unknown", None), attributes)

    def test_in_predicate(self):
        assert evaluate(InPredicate("request_category", ("equipment", "travel")), attributes)
        assert not evaluate(InPredicate("request_category", ("travel",)), attributes)


class TestComposition:

    def test_all_of(self):
        predicate = all_of(amount_between(0, 1000), EqualsPredicate("context.department", "science"))
        assert evaluate(predicate, attributes)
        assert not evaluate(all_of(amount_between(0, 1000), EqualsPredicate("request_type", "fee")), attributes)

    def test_any_of(self):
        predicate = any_of(amount_between(5000, None), EqualsPredicate("request_category", "equipment"))
        assert evaluate(predicate, attributes)

    def test_empty_compositions(self):
        assert evaluate(AllOf(()), attributes)
        assert not evaluate(AnyOf(()), attributes)

    def test_unknown_predicate_type_raises(self):
        with pytest.raises(TypeError):
            evaluate({"kind": "range"}, attributes)


class TestSerialization:

    def test_nested_tree_survives_dict_form(self):
        predicate = all_of(
            amount_between("10.50", 1000),
            any_of(EqualsPredicate("context.department", "science"),
                   InPredicate("request_category", ("equipment", "books")))
        )
        data = predicate_to_dict(predicate)
        assert data["kind"] == "all"
        assert data["predicates"][0] == {"kind": "range", "field": "amount", "min": "10.50", "max": "1000"}
        assert predicate_from_dict(data) == predicate

    def test_legacy_amount_rule(self):
        predicate = predicate_from_dict({"amount": {"min_amount": 0, "max_amount": 5000}})
        assert predicate == AnyOf((
            EqualsPredicate("amount", None),
            RangePredicate("amount", Decimal("0"), Decimal("5000")),
        ))
        assert evaluate(predicate, attributes)
        assert not evaluate(predicate, {**attributes, "amount": Decimal("5001")})

    def test_legacy_amount_rule_with_open_bound(self):
        predicate = predicate_from_dict({"amount": {"min_amount": 5000}})
        assert predicate.predicates[1].max_value is None
        assert not evaluate(predicate, attributes)

    def test_legacy_amount_rule_passes_without_amount(self):
        predicate = predicate_from_dict({"amount": {"min_amount": 5000, "max_amount": 10000}})
        assert evaluate(predicate, {**attributes, "amount": None})
        assert not evaluate(amount_between(5000, 10000), {**attributes, "amount": None})

    def test_legacy_amount_rule_survives_round_trip(self):
        predicate = predicate_from_dict({"amount": {"max_amount": 5000}})
        assert predicate_from_dict(predicate_to_dict(predicate)) == predicate

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            predicate_from_dict({"kind": "regex", "field": "x"})
