import logging
from typing import Any, List, Mapping, Optional, Tuple
from .conditions import evaluate
from .engine import describe_conditions, ordered, parse_items
from .models import RoutingResult, RoutingRule, TraceEntry
from .pools import PoolRegistry, assign_from_pool
from .resolver import as_mapping, resolve


logger = logging.getLogger(__name__)

NO_MATCH = "no matching rule"


def display_name(rule: RoutingRule) -> str:
    if rule.name:
        return rule.name
    if not rule.when:
        return "Unnamed Rule"
    target = rule.then.assign if rule.then and rule.then.assign else "unassigned"
    return f"If {describe_conditions(rule.when)} then assign to {target}"


def _entry(step: str, operation: str, reason: str, rule_id: Optional[str] = None, field: Optional[str] = None, value: Any = None) -> TraceEntry:
    return TraceEntry(step=step, rule_id=rule_id, field=field, value=value, operation=operation, reason=reason)


def _rule_matches(lead: Mapping[str, Any], rule: RoutingRule, trace: List[TraceEntry]) -> bool:
    trace.append(_entry("rule_evaluation", "evaluate_rule", f'Evaluating rule "{display_name(rule)}"', rule_id=rule.id))
    for condition in rule.when or []:
        value = resolve(lead, condition.field)
        matched = evaluate(value, condition.op, condition.value)
        verdict = "matches" if matched else "does not match"
        trace.append(_entry(
            "condition",
            "condition_check",
            f"Field '{condition.field}' with value '{value}' {verdict} {condition.op} {condition.value!r}",
            rule_id=rule.id,
            field=condition.field,
            value=value,
        ))
        if not matched:
            return False
    trace.append(_entry("rule_match", "rule_match", f'Rule "{display_name(rule)}" matched - all conditions satisfied', rule_id=rule.id))
    return True


def _assign(target: str, registry: Optional[PoolRegistry], trace: List[TraceEntry], alerts: List[str]) -> Tuple[Optional[str], Optional[str]]:
    if registry is None:
        trace.append(_entry("pool_hint", "pool_hint", f'No pool registry available, leaving lead on pool "{target}"', value=target))
        return None, target
    assignment = assign_from_pool(registry, target)
    if assignment.status == "assigned":
        trace.append(_entry(
            "pool_assignment",
            "select_owner",
            f'Selected owner {assignment.owner_id} from pool "{target}" using {assignment.strategy} strategy',
            value=assignment.owner_id,
        ))
        return assignment.owner_id, target
    if assignment.status == "exhausted":
        message = f'No available owners in pool "{target}" - all at capacity'
        trace.append(_entry("no_available_owners", "select_owner", message, value=target))
        alerts.append(message)
        return None, target
    if assignment.status == "contention":
        message = f'Round-robin cursor for pool "{target}" kept changing, lead left unassigned'
        trace.append(_entry("cursor_contention", "select_owner", message, value=target))
        alerts.append(message)
        return None, target
    owner = registry.get_owner(target)
    if owner is not None:
        trace.append(_entry("direct_assignment", "direct_assignment", f"Direct assignment to owner {owner.id}", value=owner.id))
        return owner.id, None
    trace.append(_entry("pool_not_found", "select_owner", f'Pool "{target}" not found', value=target))
    return None, target


def _alert_message(lead: Mapping[str, Any], rule: RoutingRule, destination: Optional[str]) -> str:
    then = rule.then
    channel = f"{then.alert} {then.webhook}" if then.webhook else then.alert
    who = lead.get("name") or lead.get("email") or "lead"
    return f'[{channel}] Lead {who} routed to {destination or "nobody"} via rule "{display_name(rule)}"'


def route_lead(lead: Any, rules: Any, registry: Optional[PoolRegistry] = None) -> RoutingResult:
    """Route a lead with the first enabled rule (ascending ``order``) that matches.

    Later rules are not evaluated once one matches. The registry, when given,
    turns the matched pool into a concrete owner.
    """
    lead = as_mapping(lead)
    trace: List[TraceEntry] = []
    alerts: List[str] = []
    trace.append(_entry(
        "start",
        "initialize",
        f"Starting routing for lead with score {lead.get('score')} ({lead.get('scoreBand')})",
    ))

    for rule in ordered(parse_items(rules, RoutingRule)):
        if rule.when is None or rule.then is None:
            logger.debug("skipping routing rule %s without if/then", rule.id)
            continue
        if not _rule_matches(lead, rule, trace):
            continue

        then = rule.then
        owner_id, pool = None, None
        if then.assign:
            owner_id, pool = _assign(then.assign, registry, trace, alerts)
        if then.alert:
            alerts.append(_alert_message(lead, rule, pool or owner_id))
        destination = owner_id or pool
        trace.append(_entry(
            "assignment",
            "rule_application",
            f'Rule "{display_name(rule)}" matched and assigned to {destination}',
            rule_id=rule.id,
            value=destination,
        ))
        if owner_id:
            reason = f"Assigned to owner {owner_id}" + (f" from pool {pool}" if pool else "")
        elif pool:
            reason = f"Assigned to pool {pool} without an owner"
        else:
            reason = f'Rule "{display_name(rule)}" matched without an assignment'
        trace.append(_entry("final", "route", reason, value=destination))
        return RoutingResult(
            owner_id=owner_id,
            pool=pool,
            sla_minutes=then.sla or None,
            priority=then.priority or None,
            reason=reason,
            trace=trace,
            alerts=alerts,
        )

    trace.append(_entry("final", "route", NO_MATCH))
    return RoutingResult(reason=NO_MATCH, trace=trace, alerts=alerts)
