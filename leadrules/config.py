import copy
import json
import os
import threading
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple, Union, get_args
from pydantic import TypeAdapter
from .engine import parse_items, parse_scoring_rules
from .models import IfThenRule, Operator, Owner, OwnerPool, RoutingRule, ScoringConfig, ScoringRule, WeightRule
from .pools import PoolRegistry


DEFAULT_SCORING_CONFIG: Dict[str, Any] = {
    "weights": {
        "email": 5,
        "name": 3,
        "company": 8,
        "phone": 4,
        "fields.budget": 0.001,
        "fields.employees": 0.1,
        "fields.title": 5,
        "utm.source": 2,
        "utm.medium": 2,
    },
    "bands": {
        "low": {"min": 0, "max": 30},
        "medium": {"min": 31, "max": 70},
        "high": {"min": 71, "max": 100},
    },
    "negative": [
        {"field": "email", "op": "contains", "value": "test", "penalty": 20, "reason": "Test email detected"},
        {"field": "name", "op": "contains", "value": "test", "penalty": 15, "reason": "Test name detected"},
        {"field": "company", "op": "equals", "value": "", "penalty": 10, "reason": "Missing company information"},
    ],
    "enrichment": {},
    "version": 1,
}

DEFAULT_SCORING_RULES: List[Dict[str, Any]] = [
    {
        "id": "high_budget",
        "type": "IF_THEN",
        "if": [{"field": "fields.budget", "op": "greater_equal", "value": 10000}],
        "then": {"add": 15, "tag": "high_budget", "route": "AE_POOL_A", "sla": 15},
        "enabled": True,
        "order": 1,
    },
    {
        "id": "decision_maker",
        "type": "IF_THEN",
        "if": [{"field": "fields.title", "op": "regex", "value": "ceo|founder"}],
        "then": {"add": 20, "tag": "decision_maker", "route": "SENIOR_AE_POOL"},
        "enabled": True,
        "order": 2,
    },
    {
        "id": "paid_search",
        "type": "IF_THEN",
        "if": [
            {"field": "utm.source", "op": "equals", "value": "google"},
            {"field": "utm.medium", "op": "equals", "value": "cpc"},
        ],
        "then": {"add": 10, "tag": "paid_search"},
        "enabled": True,
        "order": 3,
    },
    {"id": "company_size", "type": "WEIGHT", "field": "fields.company_size", "weight": 0.1, "enabled": True, "order": 4},
]

DEFAULT_ROUTING_RULES: List[Dict[str, Any]] = [
    {
        "id": "high_score",
        "name": "High Score to AE Pool A",
        "if": [{"field": "scoreBand", "op": "equals", "value": "HIGH"}],
        "then": {"assign": "AE_POOL_A", "alert": "SLACK", "sla": 15, "priority": 1},
        "enabled": True,
        "order": 1,
    },
    {
        "id": "enterprise",
        "name": "Enterprise Leads to Senior AEs",
        "if": [
            {"field": "fields.employees", "op": "greater_equal", "value": 1000},
            {"field": "fields.budget", "op": "greater_equal", "value": 100000},
        ],
        "then": {"assign": "SENIOR_AE_POOL", "alert": "SLACK", "sla": 10, "priority": 1},
        "enabled": True,
        "order": 2,
    },
    {
        "id": "medium_score",
        "name": "Medium Score to AE Pool B",
        "if": [{"field": "scoreBand", "op": "equals", "value": "MEDIUM"}],
        "then": {"assign": "AE_POOL_B", "sla": 30},
        "enabled": True,
        "order": 3,
    },
    {
        "id": "low_score",
        "name": "Low Score to SDR Pool",
        "if": [{"field": "scoreBand", "op": "equals", "value": "LOW"}],
        "then": {"assign": "SDR_POOL", "sla": 60},
        "enabled": True,
        "order": 4,
    },
]

HISTORY_LIMIT = 10
OPERATORS = set(get_args(Operator))

_CACHE: Dict[str, Tuple[float, Dict[str, Any]]] = {}
_LOCK = threading.RLock()
_SCORING_RULE = TypeAdapter(ScoringRule)
_POOLS = TypeAdapter(List[OwnerPool])

Rule = Union[IfThenRule, WeightRule, RoutingRule]


def _rules_path() -> str:
    override = os.environ.get("LEADRULES_CONFIG_PATH")
    if override:
        return override
    base = os.path.dirname(__file__)
    return os.path.join(base, "rules.json")


def ensure_rules_file() -> None:
    path = _rules_path()
    if not os.path.exists(path):
        with open(path, "w", encoding="utf-8") as f:
            json.dump({"teams": {}}, f, indent=2)


def _load_document() -> Dict[str, Any]:
    ensure_rules_file()
    path = _rules_path()
    mtime = os.path.getmtime(path)
    cached = _CACHE.get(path)
    if cached and cached[0] == mtime:
        return copy.deepcopy(cached[1])
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    data.setdefault("teams", {})
    _CACHE[path] = (mtime, data)
    return copy.deepcopy(data)


def _write_document(data: Dict[str, Any]) -> None:
    path = _rules_path()
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    mtime = os.path.getmtime(path)
    _CACHE[path] = (mtime, copy.deepcopy(data))


def _default_team() -> Dict[str, Any]:
    return {
        "scoring": copy.deepcopy(DEFAULT_SCORING_CONFIG),
        "scoring_rules": copy.deepcopy(DEFAULT_SCORING_RULES),
        "routing_rules": copy.deepcopy(DEFAULT_ROUTING_RULES),
        "pools": [],
        "history": [],
    }


def load_team(team_id: str) -> Dict[str, Any]:
    """Stored settings for a team, or the defaults when the team has none yet."""
    team = _load_document()["teams"].get(team_id)
    return team if team is not None else _default_team()


def _update_team(team_id: str, change: Callable[[Dict[str, Any]], Any]) -> Any:
    with _LOCK:
        data = _load_document()
        team = data["teams"].get(team_id)
        if team is None:
            team = _default_team()
        result = change(team)
        data["teams"][team_id] = team
        _write_document(data)
        return result


def initialize_defaults(team_id: str) -> Dict[str, Any]:
    return _update_team(team_id, lambda team: copy.deepcopy(team))


def _check_order(order: Any, errors: List[str]) -> None:
    if not isinstance(order, int) or isinstance(order, bool) or order < 0:
        errors.append("Rule order must be a non-negative integer")


def _check_operators(conditions: List[Any], errors: List[str]) -> None:
    for condition in conditions:
        if condition.op not in OPERATORS:
            errors.append(f"Unknown operator '{condition.op}' on field '{condition.field}'")


def validate_scoring_config(data: Dict[str, Any]) -> ScoringConfig:
    config = ScoringConfig.model_validate(data)
    errors: List[str] = []
    for field, weight in config.weights.items():
        if weight < 0:
            errors.append(f"Invalid weight for field '{field}': must be a positive number")
    if config.bands is None:
        errors.append("All score bands (low, medium, high) must be defined")
    else:
        low, medium, high = config.bands.low, config.bands.medium, config.bands.high
        if low.min >= low.max or medium.min >= medium.max or high.min >= high.max:
            errors.append("Band minimums must be less than maximums")
        if low.max >= medium.min or medium.max >= high.min:
            errors.append("Score bands must not overlap")
    for rule in config.negative:
        if rule.penalty < 0:
            errors.append("Penalty values must be positive numbers")
    _check_operators(config.negative, errors)
    if errors:
        raise ValueError("; ".join(errors))
    return config


def validate_scoring_rule(data: Dict[str, Any]) -> Union[IfThenRule, WeightRule]:
    rule = _SCORING_RULE.validate_python(data)
    errors: List[str] = []
    if isinstance(rule, IfThenRule):
        if rule.when is None:
            errors.append('IF_THEN rules must have an "if" condition array')
        else:
            _check_operators(rule.when, errors)
        if rule.then is None:
            errors.append('IF_THEN rules must have a "then" action')
    elif not rule.field or not rule.weight:
        errors.append("WEIGHT rules must have field and weight defined")
    _check_order(rule.order, errors)
    if errors:
        raise ValueError("; ".join(errors))
    return rule


def validate_routing_rule(data: Dict[str, Any]) -> RoutingRule:
    rule = RoutingRule.model_validate(data)
    errors: List[str] = []
    if not rule.name.strip():
        errors.append("Rule name is required")
    if not rule.when:
        errors.append('Rule must have at least one condition in "if" array')
    else:
        _check_operators(rule.when, errors)
    then = rule.then
    if then is None:
        errors.append('Rule must have "then" actions')
    else:
        if not then.assign:
            errors.append('Rule must specify assignment target in "then.assign"')
        if then.sla is not None and (then.sla <= 0 or isinstance(then.sla, float) and not then.sla.is_integer()):
            errors.append("SLA must be a positive integer (minutes)")
        if then.priority is not None and (then.priority <= 0 or isinstance(then.priority, float) and not then.priority.is_integer()):
            errors.append("Priority must be a positive integer")
        if then.alert == "WEBHOOK" and not then.webhook:
            errors.append("Webhook URL is required when alert type is WEBHOOK")
    _check_order(rule.order, errors)
    if errors:
        raise ValueError("; ".join(errors))
    return rule


def validate_pools(data: Any) -> List[OwnerPool]:
    pools = _POOLS.validate_python(data)
    errors: List[str] = []
    ids = [p.id for p in pools]
    if len(ids) != len(set(ids)):
        errors.append("Pool ids must be unique")
    for pool in pools:
        for owner in pool.owners:
            if owner.capacity < 0 or owner.current_load < 0:
                errors.append(f"Owner '{owner.id}' in pool '{pool.id}' has negative capacity or load")
    if errors:
        raise ValueError("; ".join(errors))
    return pools


def _dump(model: Any) -> Dict[str, Any]:
    return model.model_dump(by_alias=True, exclude_none=True)


def get_scoring_config(team_id: str) -> ScoringConfig:
    return ScoringConfig.model_validate(load_team(team_id)["scoring"])


def save_scoring_config(team_id: str, data: Dict[str, Any]) -> ScoringConfig:
    config = validate_scoring_config(data)

    def change(team: Dict[str, Any]) -> ScoringConfig:
        current = team["scoring"]
        history = team.setdefault("history", [])
        history.append(current)
        del history[:-HISTORY_LIMIT]
        config.version = int(current.get("version", 0)) + 1
        team["scoring"] = _dump(config)
        return config

    return _update_team(team_id, change)


def get_scoring_config_history(team_id: str, limit: int = HISTORY_LIMIT) -> List[ScoringConfig]:
    history = load_team(team_id).get("history", [])
    return [ScoringConfig.model_validate(item) for item in reversed(history[-limit:])] if limit > 0 else []


def _rules_of(team_id: str, kind: str) -> List[Dict[str, Any]]:
    return load_team(team_id).get(kind, [])


def get_scoring_rules(team_id: str) -> List[Union[IfThenRule, WeightRule]]:
    return parse_scoring_rules(_rules_of(team_id, "scoring_rules"))


def get_routing_rules(team_id: str) -> List[RoutingRule]:
    return parse_items(_rules_of(team_id, "routing_rules"), RoutingRule)


def _add_rule(team_id: str, kind: str, data: Dict[str, Any], validate: Callable[[Dict[str, Any]], Rule]) -> Rule:
    payload = dict(data)
    payload["id"] = payload.get("id") or uuid.uuid4().hex
    rule = validate(payload)

    def change(team: Dict[str, Any]) -> Rule:
        rules = team.setdefault(kind, [])
        if any(item.get("id") == rule.id for item in rules):
            raise ValueError(f"Rule id '{rule.id}' already exists")
        rules.append(_dump(rule))
        return rule

    return _update_team(team_id, change)


def _update_rule(team_id: str, kind: str, rule_id: str, updates: Dict[str, Any], validate: Callable[[Dict[str, Any]], Rule]) -> Rule:
    def change(team: Dict[str, Any]) -> Rule:
        rules = team.setdefault(kind, [])
        for i, item in enumerate(rules):
            if item.get("id") == rule_id:
                rule = validate({**item, **updates, "id": rule_id})
                rules[i] = _dump(rule)
                return rule
        raise KeyError(rule_id)

    return _update_team(team_id, change)


def _delete_rule(team_id: str, kind: str, rule_id: str) -> None:
    def change(team: Dict[str, Any]) -> None:
        rules = team.setdefault(kind, [])
        kept = [item for item in rules if item.get("id") != rule_id]
        if len(kept) == len(rules):
            raise KeyError(rule_id)
        team[kind] = kept

    _update_team(team_id, change)


def _reorder_rules(team_id: str, kind: str, rule_ids: List[str]) -> None:
    def change(team: Dict[str, Any]) -> None:
        by_id = {item.get("id"): item for item in team.setdefault(kind, [])}
        missing = [rid for rid in rule_ids if rid not in by_id]
        if missing:
            raise KeyError(missing[0])
        for position, rid in enumerate(rule_ids, start=1):
            by_id[rid]["order"] = position

    _update_team(team_id, change)


def add_scoring_rule(team_id: str, data: Dict[str, Any]) -> Union[IfThenRule, WeightRule]:
    return _add_rule(team_id, "scoring_rules", data, validate_scoring_rule)


def update_scoring_rule(team_id: str, rule_id: str, updates: Dict[str, Any]) -> Union[IfThenRule, WeightRule]:
    return _update_rule(team_id, "scoring_rules", rule_id, updates, validate_scoring_rule)


def delete_scoring_rule(team_id: str, rule_id: str) -> None:
    _delete_rule(team_id, "scoring_rules", rule_id)


def reorder_scoring_rules(team_id: str, rule_ids: List[str]) -> None:
    _reorder_rules(team_id, "scoring_rules", rule_ids)


def add_routing_rule(team_id: str, data: Dict[str, Any]) -> RoutingRule:
    return _add_rule(team_id, "routing_rules", data, validate_routing_rule)


def update_routing_rule(team_id: str, rule_id: str, updates: Dict[str, Any]) -> RoutingRule:
    return _update_rule(team_id, "routing_rules", rule_id, updates, validate_routing_rule)


def delete_routing_rule(team_id: str, rule_id: str) -> None:
    _delete_rule(team_id, "routing_rules", rule_id)


def reorder_routing_rules(team_id: str, rule_ids: List[str]) -> None:
    _reorder_rules(team_id, "routing_rules", rule_ids)


def get_pools(team_id: str) -> List[OwnerPool]:
    return _POOLS.validate_python(load_team(team_id).get("pools", []))


def save_pools(team_id: str, data: Any) -> List[OwnerPool]:
    pools = validate_pools(data)

    def change(team: Dict[str, Any]) -> List[OwnerPool]:
        team["pools"] = [_dump(p) for p in pools]
        return pools

    return _update_team(team_id, change)


class JsonPoolRegistry(PoolRegistry):
    """Pools of one team, read from and written back to the rules file."""

    def __init__(self, team_id: str) -> None:
        self.team_id = team_id

    def get_pool(self, pool_id: str) -> Optional[OwnerPool]:
        for pool in get_pools(self.team_id):
            if pool.id == pool_id:
                return pool
        return None

    def get_owner(self, owner_id: str) -> Optional[Owner]:
        for pool in get_pools(self.team_id):
            for owner in pool.owners:
                if owner.id == owner_id:
                    return owner
        return None

    def compare_and_set_cursor(self, pool_id: str, expected: int, new: int) -> bool:
        def change(team: Dict[str, Any]) -> bool:
            for pool in team.get("pools", []):
                if pool.get("id") == pool_id:
                    if pool.get("cursor", -1) != expected:
                        return False
                    pool["cursor"] = new
                    return True
            return False

        with _LOCK:
            if self.get_pool(pool_id) is None:
                return False
            return _update_team(self.team_id, change)
