import logging
import math
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Type, TypeVar, Union
from pydantic import BaseModel, Field, TypeAdapter, ValidationError
from .conditions import evaluate, is_number
from .models import (
    Band,
    Bands,
    Condition,
    IfThenRule,
    NegativeRule,
    Number,
    ScoringRule,
    TraceEntry,
    WeightRule,
)
from .resolver import as_mapping, resolve


logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
R = TypeVar("R")

_SCORING_RULE = TypeAdapter(ScoringRule)


class SideEffects(BaseModel):
    tags: List[str] = Field(default_factory=list)
    route: Optional[str] = None
    sla: Optional[Number] = None
    assign: Optional[str] = None
    priority: Optional[Number] = None


class RuleOutcome(BaseModel):
    total: float
    trace: List[TraceEntry] = Field(default_factory=list)
    effects: SideEffects = Field(default_factory=SideEffects)


def parse_items(raw: Any, model: Type[M]) -> List[M]:
    """Decode a list of rule payloads, dropping the ones that do not fit ``model``."""
    if not isinstance(raw, (list, tuple)):
        return []
    items: List[M] = []
    for item in raw:
        if isinstance(item, model):
            items.append(item)
            continue
        try:
            items.append(model.model_validate(item))
        except ValidationError:
            logger.debug("skipping malformed %s: %r", model.__name__, item)
    return items


def parse_scoring_rules(raw: Any) -> List[Union[IfThenRule, WeightRule]]:
    if not isinstance(raw, (list, tuple)):
        return []
    rules: List[Union[IfThenRule, WeightRule]] = []
    for item in raw:
        if isinstance(item, (IfThenRule, WeightRule)):
            rules.append(item)
            continue
        try:
            rules.append(_SCORING_RULE.validate_python(item))
        except ValidationError:
            logger.debug("skipping malformed scoring rule: %r", item)
    return rules


def parse_weights(raw: Any) -> List[tuple]:
    if not isinstance(raw, Mapping):
        return []
    return [(field, weight) for field, weight in raw.items() if isinstance(field, str) and is_number(weight)]


def parse_bands(raw: Any) -> Optional[Bands]:
    if isinstance(raw, Bands) or raw is None:
        return raw
    try:
        return Bands.model_validate(raw)
    except ValidationError:
        logger.debug("ignoring malformed bands: %r", raw)
        return None


def ordered(rules: Iterable[R]) -> List[R]:
    """Enabled rules in ascending ``order``; ties keep their input order."""
    return sorted((r for r in rules if r.enabled), key=lambda r: r.order)


def is_present(value: Any) -> bool:
    return value is not None and value != ""


def describe_conditions(conditions: Sequence[Condition]) -> str:
    return " AND ".join(f"{c.field} {c.op} {c.value!r}" for c in conditions)


def conditions_match(lead: Any, conditions: Sequence[Condition]) -> bool:
    return all(evaluate(resolve(lead, c.field), c.op, c.value) for c in conditions)


def as_float(value: Any) -> float:
    """Numeric lead value as a float; integers past the float range become signed infinity."""
    try:
        return float(value)
    except OverflowError:
        return math.inf if value > 0 else -math.inf


def weight_points(value: Any, weight: float) -> float:
    if not weight:
        return 0.0
    if isinstance(value, bool):
        return weight if value else 0
    if is_number(value):
        return as_float(value) * weight
    if isinstance(value, str):
        return min(len(value) / 10, 1) * weight
    return weight


def apply_weights(lead: Any, weights: Any, total: float, trace: List[TraceEntry]) -> float:
    for field, weight in parse_weights(weights):
        value = resolve(lead, field)
        if not is_present(value):
            continue
        points = weight_points(value, weight)
        if points == 0:
            continue
        total += points
        trace.append(TraceEntry(
            step="weights",
            field=field,
            value=value,
            operation="weight_application",
            points_delta=points,
            running_total=total,
            reason=f"Field '{field}' with value '{value}' applied weight {weight} for {points} points",
        ))
    return total


def apply_negative_rules(lead: Any, negative_rules: Any, total: float, trace: List[TraceEntry]) -> float:
    for rule in parse_items(negative_rules, NegativeRule):
        value = resolve(lead, rule.field)
        if not evaluate(value, rule.op, rule.value):
            continue
        total -= rule.penalty
        trace.append(TraceEntry(
            step="negative",
            field=rule.field,
            value=value,
            operation="penalty",
            points_delta=-rule.penalty,
            running_total=total,
            reason=rule.reason,
        ))
    return total


def apply_if_then_rules(lead: Any, rules: Sequence[IfThenRule], total: float, trace: List[TraceEntry], effects: SideEffects) -> float:
    for rule in ordered(rules):
        if rule.when is None or rule.then is None:
            logger.debug("skipping IF_THEN rule %s without if/then", rule.id)
            continue
        if not conditions_match(lead, rule.when):
            continue
        then = rule.then
        before = total
        if then.add:
            total += then.add
        if then.multiply:
            # Scales everything accumulated so far, so position in the order matters.
            total *= then.multiply
        if then.tag:
            effects.tags.append(then.tag)
        if then.route:
            effects.route = then.route
        if then.sla:
            effects.sla = then.sla
        if then.assign:
            effects.assign = then.assign
        if then.priority:
            effects.priority = then.priority
        actions = then.model_dump(exclude_none=True)
        trace.append(TraceEntry(
            step="if_then",
            rule_id=rule.id,
            value=actions,
            operation="rule_application",
            points_delta=total - before,
            running_total=total,
            reason=f"IF_THEN rule triggered: {describe_conditions(rule.when)} -> {actions}",
        ))
    return total


def apply_weight_rules(lead: Any, rules: Sequence[WeightRule], total: float, trace: List[TraceEntry]) -> float:
    for rule in ordered(rules):
        if not rule.field or not rule.weight:
            logger.debug("skipping WEIGHT rule %s without field/weight", rule.id)
            continue
        value = resolve(lead, rule.field)
        if not is_present(value):
            continue
        points = as_float(value) * rule.weight if is_number(value) else rule.weight
        total += points
        trace.append(TraceEntry(
            step="weight_rules",
            rule_id=rule.id,
            field=rule.field,
            value=value,
            operation="weight_rule",
            points_delta=points,
            running_total=total,
            reason=f"Weight rule applied to field '{rule.field}'",
        ))
    return total


def apply_rules(
    lead: Any,
    weights: Any = None,
    negative_rules: Any = None,
    conditional_rules: Any = None,
    weight_rules: Any = None,
) -> RuleOutcome:
    """Run the four scoring layers in their fixed order.

    Every trace entry carries the running total across all layers. Nothing is
    clamped here; see :func:`clamp_score`.
    """
    lead = as_mapping(lead)
    trace: List[TraceEntry] = []
    effects = SideEffects()
    if_then = [r for r in parse_scoring_rules(conditional_rules) if isinstance(r, IfThenRule)]
    weighted = [r for r in parse_scoring_rules(weight_rules) if isinstance(r, WeightRule)]
    total = apply_weights(lead, weights, 0.0, trace)
    total = apply_negative_rules(lead, negative_rules, total, trace)
    total = apply_if_then_rules(lead, if_then, total, trace, effects)
    total = apply_weight_rules(lead, weighted, total, trace)
    return RuleOutcome(total=total, trace=trace, effects=effects)


def clamp_score(total: float) -> int:
    if math.isnan(total):
        return 0
    bounded = max(0.0, min(100.0, total))
    return int(math.floor(bounded + 0.5))


def calculate_band(score: float, bands: Any) -> Band:
    bands = parse_bands(bands)
    if bands is None:
        return "LOW"
    if bands.high.min <= score <= bands.high.max:
        return "HIGH"
    if bands.medium.min <= score <= bands.medium.max:
        return "MEDIUM"
    return "LOW"
