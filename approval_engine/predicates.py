"""
Condition Predicates Module

Closed set of predicate variants used for template matching and
auto-approval: range, equality, set membership, and AND/OR composition.

Predicates read request attributes by name. Dotted names reach into the
context payload, e.g. ``context.department``.
"""

from decimal import Decimal, InvalidOperation
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union


_MISSING = object()


@dataclass(frozen=True)
class RangePredicate:
    """Numeric value within [min_value, max_value]; either bound may be open"""
    field: str
    min_value: Optional[Decimal] = None
    max_value: Optional[Decimal] = None


@dataclass(frozen=True)
class EqualsPredicate:
    field: str
    value: Any


@dataclass(frozen=True)
class InPredicate:
    field: str
    values: Tuple[Any, ...]


@dataclass(frozen=True)
class AllOf:
    predicates: Tuple['Predicate', ...]


@dataclass(frozen=True)
class AnyOf:
    predicates: Tuple['Predicate', ...]


Predicate = Union[RangePredicate, EqualsPredicate, InPredicate, AllOf, AnyOf]


def _lookup(attributes: Dict[str, Any], path: str) -> Any:
    current: Any = attributes
    for part in path.split('.'):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _to_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def evaluate(predicate: Predicate, attributes: Dict[str, Any]) -> bool:
    """
    Evaluate a predicate against request attributes.

    A field that is absent (or not numeric, for a range) never satisfies a
    leaf predicate. An empty AllOf is true; an empty AnyOf is false.
    """
    if isinstance(predicate, RangePredicate):
        value = _to_decimal(_lookup(attributes, predicate.field))
        if value is None:
            return False
        if predicate.min_value is not None and value < predicate.min_value:
            return False
        if predicate.max_value is not None and value > predicate.max_value:
            return False
        return True

    if isinstance(predicate, EqualsPredicate):
        value = _lookup(attributes, predicate.field)
        return value is not _MISSING and value == predicate.value

    if isinstance(predicate, InPredicate):
        value = _lookup(attributes, predicate.field)
        return value is not _MISSING and value in predicate.values

    if isinstance(predicate, AllOf):
        return all(evaluate(p, attributes) for p in predicate.predicates)

    if isinstance(predicate, AnyOf):
        return any(evaluate(p, attributes) for p in predicate.predicates)

    raise TypeError(f"Unknown predicate type: {type(predicate).__name__}")


def predicate_to_dict(predicate: Predicate) -> Dict[str, Any]:
    """Serialize a predicate to a tagged dictionary"""
    if isinstance(predicate, RangePredicate):
        return {
            'kind': 'range',
            'field': predicate.field,
            'min': str(predicate.min_value) if predicate.min_value is not None else None,
            'max': str(predicate.max_value) if predicate.max_value is not None else None,
        }
    if isinstance(predicate, EqualsPredicate):
        return {'kind': 'equals', 'field': predicate.field, 'value': predicate.value}
    if isinstance(predicate, InPredicate):
        return {'kind': 'in', 'field': predicate.field, 'values': list(predicate.values)}
    if isinstance(predicate, AllOf):
        return {'kind': 'all', 'predicates': [predicate_to_dict(p) for p in predicate.predicates]}
    if isinstance(predicate, AnyOf):
        return {'kind': 'any', 'predicates': [predicate_to_dict(p) for p in predicate.predicates]}
    raise TypeError(f"Unknown predicate type: {type(predicate).__name__}")


def _legacy_amount_rule(data: Dict[str, Any]) -> Predicate:
    # {"amount": {"min_amount": 0, "max_amount": 5000}} as stored by older templates.
    # Requests without an amount always satisfied these rules.
    amount = data['amount']
    return AnyOf((
        EqualsPredicate(field='amount', value=None),
        RangePredicate(
            field='amount',
            min_value=_to_decimal(amount.get('min_amount')),
            max_value=_to_decimal(amount.get('max_amount')),
        ),
    ))


def predicate_from_dict(data: Dict[str, Any]) -> Predicate:
    """Deserialize a tagged dictionary (or a legacy amount rule) into a predicate"""
    kind = data.get('kind')
    if kind is None and isinstance(data.get('amount'), dict):
        return _legacy_amount_rule(data)
    if kind == 'range':
        return RangePredicate(
            field=data['field'],
            min_value=_to_decimal(data.get('min')),
            max_value=_to_decimal(data.get('max')),
        )
    if kind == 'equals':
        return EqualsPredicate(field=data['field'], value=data['value'])
    if kind == 'in':
        return InPredicate(field=data['field'], values=tuple(data['values']))
    if kind == 'all':
        return AllOf(tuple(predicate_from_dict(p) for p in data['predicates']))
    if kind == 'any':
        return AnyOf(tuple(predicate_from_dict(p) for p in data['predicates']))
    raise ValueError(f"Unknown predicate kind: {kind!r}")


def amount_between(min_value: Any = None, max_value: Any = None) -> RangePredicate:
    """Shorthand for the common amount-range rule"""
    return RangePredicate('amount', _to_decimal(min_value), _to_decimal(max_value))


def all_of(*predicates: Predicate) -> AllOf:
    return AllOf(tuple(predicates))


def any_of(*predicates: Predicate) -> AnyOf:
    return AnyOf(tuple(predicates))
