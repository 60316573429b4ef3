"""
Cardinality Engine

Pure functions over item counts and transformation types, plus the
structural checks applied to mapping filters. Nothing here touches
storage; every function either returns or raises InvalidArgumentError.
"""

from typing import Any, Dict, FrozenSet, Mapping, Optional, Union

from ..contracts.transformation_registry import TransformationTypes
from ..lib.exceptions import InvalidArgumentError
from ..models.enums import Cardinality, FilterOperator, FilterType

# Transformation types restricted to a fixed set of cardinalities.
# Types absent from this table are accepted with any cardinality.
TRANSFORMATION_CARDINALITIES: Dict[str, FrozenSet[Cardinality]] = {
    TransformationTypes.GENERATOR: frozenset({Cardinality.GENERATOR}),
    TransformationTypes.SINK: frozenset({Cardinality.SINK}),
    TransformationTypes.PASSTHROUGH: frozenset({Cardinality.ONE_TO_ONE, Cardinality.ONE_TO_MANY}),
    TransformationTypes.AGGREGATION: frozenset({Cardinality.MANY_TO_ONE}),
    TransformationTypes.MERGE: frozenset({Cardinality.MANY_TO_ONE}),
    TransformationTypes.SPLIT: frozenset({Cardinality.ONE_TO_MANY}),
    TransformationTypes.FANOUT: frozenset({Cardinality.ONE_TO_MANY, Cardinality.MANY_TO_MANY}),
}

_SUPPORTED_ORDER = [c for c in Cardinality if c is not Cardinality.INVALID]


def infer_cardinality(source_count: int, target_count: int) -> Cardinality:
    """
    Derive the cardinality implied by item counts

    Returns Cardinality.INVALID when both sides are empty.
    """
    if source_count == 0 and target_count > 0:
        return Cardinality.GENERATOR
    if source_count > 0 and target_count == 0:
        return Cardinality.SINK
    if source_count == 1 and target_count == 1:
        return Cardinality.ONE_TO_ONE
    if source_count == 1 and target_count > 1:
        return Cardinality.ONE_TO_MANY
    if source_count > 1 and target_count == 1:
        return Cardinality.MANY_TO_ONE
    if source_count > 1 and target_count > 1:
        return Cardinality.MANY_TO_MANY
    return Cardinality.INVALID


def parse_cardinality(label: Union[str, Cardinality]) -> Cardinality:
    """Convert a wire label to Cardinality, rejecting unknown labels"""
    try:
        return Cardinality(label)
    except ValueError:
        supported = ", ".join(c.value for c in _SUPPORTED_ORDER)
        raise InvalidArgumentError(
            f"unknown cardinality '{label}': supported values are {supported}",
            {'cardinality': str(label)}
        )


def validate_cardinality(label: Union[str, Cardinality], source_count: int, target_count: int) -> Cardinality:
    """
    Check that item counts satisfy a claimed cardinality

    Args:
        label: Claimed cardinality
        source_count: Number of source items
        target_count: Number of target items

    Returns:
        The validated Cardinality

    Raises:
        InvalidArgumentError: If the label is unknown or the counts disagree
    """
    cardinality = parse_cardinality(label)
    counts = {'cardinality': cardinality.value, 'source_count': source_count, 'target_count': target_count}

    def fail(expectation: str) -> None:
        raise InvalidArgumentError(
            f"cardinality '{cardinality.value}' requires {expectation}, "
            f"got {source_count} source item(s) and {target_count} target item(s)",
            counts
        )

    if cardinality is Cardinality.ONE_TO_ONE:
        if source_count != 1 or target_count != 1:
            fail("exactly 1 source and 1 target")
    elif cardinality is Cardinality.ONE_TO_MANY:
        if source_count != 1 or target_count < 2:
            fail("exactly 1 source and at least 2 targets")
    elif cardinality is Cardinality.MANY_TO_ONE:
        if source_count < 2 or target_count != 1:
            fail("at least 2 sources and exactly 1 target")
    elif cardinality is Cardinality.MANY_TO_MANY:
        if source_count < 2 or target_count < 2:
            fail("at least 2 sources and at least 2 targets")
    elif cardinality is Cardinality.GENERATOR:
        if source_count != 0 or target_count < 1:
            fail("no sources and at least 1 target")
    elif cardinality is Cardinality.SINK:
        if source_count < 1 or target_count != 0:
            fail("at least 1 source and no targets")
    else:
        raise InvalidArgumentError("a rule must reference at least one source or target item", counts)

    return cardinality


def validate_transformation_cardinality(transformation_type: str, cardinality: Union[str, Cardinality]) -> None:
    """
    Check a transformation type against a rule cardinality

    Raises:
        InvalidArgumentError: If the type is restricted and the cardinality
            is outside its supported set
    """
    cardinality = parse_cardinality(cardinality)
    supported = TRANSFORMATION_CARDINALITIES.get(transformation_type)
    if supported is None:
        return
    if cardinality not in supported:
        names = [c.value for c in _SUPPORTED_ORDER if c in supported]
        raise InvalidArgumentError(
            f"transformation type '{transformation_type}' does not support cardinality "
            f"'{cardinality.value}' (supported: {', '.join(names)})",
            {
                'transformation_type': transformation_type,
                'cardinality': cardinality.value,
                'supported': names,
            }
        )


def validate_transformation_shape(transformation_type: Optional[str], source_count: int, target_count: int) -> None:
    """
    Check item presence against the transformation's declared type

    generator needs targets and no sources, null_returning needs sources
    and no targets, passthrough needs both.
    """
    if transformation_type == TransformationTypes.GENERATOR:
        if source_count > 0:
            raise InvalidArgumentError("generator transformations cannot have source items")
        if target_count == 0:
            raise InvalidArgumentError("generator transformations require at least one target item")
    elif transformation_type == TransformationTypes.NULL_RETURNING:
        if target_count > 0:
            raise InvalidArgumentError("null_returning transformations cannot have target items")
        if source_count == 0:
            raise InvalidArgumentError("null_returning transformations require at least one source item")
    elif transformation_type == TransformationTypes.PASSTHROUGH:
        if source_count == 0 or target_count == 0:
            raise InvalidArgumentError("passthrough transformations require both source and target items")


def validate_filter(filter_type: Union[str, FilterType], expression: Optional[Mapping[str, Any]]) -> FilterType:
    """
    Check that a filter expression carries the fields its type needs

    Raises:
        InvalidArgumentError: For unknown types or missing fields
    """
    try:
        kind = FilterType(filter_type)
    except ValueError:
        raise InvalidArgumentError(
            f"unknown filter type '{filter_type}': expected where, limit, order_by or custom",
            {'filter_type': str(filter_type)}
        )

    expression = expression or {}

    def require(*keys: str) -> None:
        missing = [key for key in keys if key not in expression or expression[key] in (None, "")]
        if missing:
            raise InvalidArgumentError(
                f"{kind.value} filter requires {' and '.join(repr(k) for k in keys)}",
                {'filter_type': kind.value, 'missing': missing}
            )

    if kind is FilterType.WHERE:
        # value is optional so IS NULL / IS NOT NULL checks work
        require('field', 'operator')
    elif kind is FilterType.LIMIT:
        require('count')
    elif kind is FilterType.ORDER_BY:
        require('field', 'direction')
    elif kind is FilterType.CUSTOM:
        if not expression:
            raise InvalidArgumentError("custom filter expression cannot be empty", {'filter_type': kind.value})

    return kind


def validate_filter_operator(operator: Union[str, FilterOperator, None]) -> FilterOperator:
    """Accept AND or OR; an empty operator defaults to AND"""
    if operator in (None, ""):
        return FilterOperator.AND
    try:
        return FilterOperator(str(getattr(operator, "value", operator)).upper())
    except ValueError:
        raise InvalidArgumentError(
            f"invalid filter operator '{operator}': expected AND or OR",
            {'filter_operator': str(operator)}
        )
