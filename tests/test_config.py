import json
import pytest
from leadrules import config
from leadrules.models import IfThenRule


BANDS = {"low": {"min": 0, "max": 30}, "medium": {"min": 31, "max": 70}, "high": {"min": 71, "max": 100}}


def test_unknown_team_gets_defaults(rules_file):
    cfg = config.get_scoring_config("new-team")
    assert cfg.weights["email"] == 5
    assert cfg.bands.high.min == 71
    assert [r.id for r in config.get_scoring_rules("new-team")][:2] == ["high_budget", "decision_maker"]
    assert len(config.get_routing_rules("new-team")) == 4


def test_save_scoring_config_versions_and_history(rules_file):
    saved = config.save_scoring_config("t", {"weights": {"email": 2}, "bands": BANDS, "negative": []})
    assert saved.version == 2
    again = config.save_scoring_config("t", {"weights": {"email": 3}, "bands": BANDS, "negative": []})
    assert again.version == 3
    history = config.get_scoring_config_history("t")
    assert [h.version for h in history] == [2, 1]
    assert config.get_scoring_config("t").weights == {"email": 3}
    stored = json.loads(rules_file.read_text())
    assert stored["teams"]["t"]["scoring"]["version"] == 3


def test_history_is_capped(rules_file):
    for i in range(config.HISTORY_LIMIT + 3):
        config.save_scoring_config("t", {"weights": {"email": i}, "bands": BANDS})
    assert len(config.load_team("t")["history"]) == config.HISTORY_LIMIT


@pytest.mark.parametrize("data,message", [
    ({"weights": {"email": -1}, "bands": BANDS}, "must be a positive number"),
    ({"weights": {}}, "must be defined"),
    ({"bands": {**BANDS, "medium": {"min": 20, "max": 70}}}, "must not overlap"),
    ({"bands": {**BANDS, "low": {"min": 10, "max": 5}}}, "less than maximums"),
    ({"bands": BANDS, "negative": [{"field": "email", "op": "contains", "value": "x", "penalty": -3}]}, "Penalty"),
    ({"bands": BANDS, "negative": [{"field": "email", "op": "resembles", "value": "x", "penalty": 3}]}, "Unknown operator"),
])
def test_invalid_scoring_config_rejected(data, message):
    with pytest.raises(ValueError) as exc:
        config.save_scoring_config("t", data)
    assert message in str(exc.value)


def test_scoring_rule_crud(rules_file):
    rule = config.add_scoring_rule("t", {"type": "IF_THEN", "if": [{"field": "source", "op": "equals", "value": "ads"}], "then": {"add": 5}, "order": 9})
    assert isinstance(rule, IfThenRule)
    assert rule.id
    updated = config.update_scoring_rule("t", rule.id, {"enabled": False})
    assert updated.enabled is False
    assert updated.when[0].field == "source"
    config.delete_scoring_rule("t", rule.id)
    assert rule.id not in [r.id for r in config.get_scoring_rules("t")]
    with pytest.raises(KeyError):
        config.delete_scoring_rule("t", rule.id)
    with pytest.raises(KeyError):
        config.update_scoring_rule("t", "missing", {"order": 1})


@pytest.mark.parametrize("data", [
    {"type": "IF_THEN", "then": {"add": 5}},
    {"type": "IF_THEN", "if": []},
    {"type": "WEIGHT", "field": "email"},
    {"type": "WEIGHT", "field": "email", "weight": 1, "order": -1},
    {"type": "OTHER"},
])
def test_invalid_scoring_rules_rejected(data):
    with pytest.raises(ValueError):
        config.add_scoring_rule("t", data)


def test_reorder_rules(rules_file):
    config.reorder_scoring_rules("t", ["company_size", "paid_search", "decision_maker", "high_budget"])
    orders = {r.id: r.order for r in config.get_scoring_rules("t")}
    assert orders == {"company_size": 1, "paid_search": 2, "decision_maker": 3, "high_budget": 4}
    with pytest.raises(KeyError):
        config.reorder_routing_rules("t", ["nope"])


@pytest.mark.parametrize("data,message", [
    ({"name": "", "if": [{"field": "a", "op": "exists"}], "then": {"assign": "P"}}, "name is required"),
    ({"name": "r", "if": [], "then": {"assign": "P"}}, "at least one condition"),
    ({"name": "r", "if": [{"field": "a", "op": "exists"}], "then": {}}, "assignment target"),
    ({"name": "r", "if": [{"field": "a", "op": "exists"}], "then": {"assign": "P", "sla": 0}}, "SLA"),
    ({"name": "r", "if": [{"field": "a", "op": "exists"}], "then": {"assign": "P", "priority": -1}}, "Priority"),
    ({"name": "r", "if": [{"field": "a", "op": "exists"}], "then": {"assign": "P", "sla": 7.5}}, "SLA"),
    ({"name": "r", "if": [{"field": "a", "op": "exists"}], "then": {"assign": "P", "alert": "WEBHOOK"}}, "Webhook URL"),
])
def test_invalid_routing_rules_rejected(data, message):
    with pytest.raises(ValueError) as exc:
        config.add_routing_rule("t", data)
    assert message in str(exc.value)


def test_pools_and_json_registry_cursor(rules_file):
    config.save_pools("t", [{"id": "P", "owners": [{"id": "a", "capacity": 2}, {"id": "b", "capacity": 2, "currentLoad": 1}]}])
    registry = config.JsonPoolRegistry("t")
    assert registry.get_pool("P").owners[1].current_load == 1
    assert registry.get_owner("b").id == "b"
    assert registry.compare_and_set_cursor("P", -1, 1) is True
    assert registry.compare_and_set_cursor("P", -1, 0) is False
    assert config.get_pools("t")[0].cursor == 1
    assert registry.compare_and_set_cursor("Q", -1, 0) is False


def test_duplicate_pool_ids_rejected():
    with pytest.raises(ValueError):
        config.save_pools("t", [{"id": "P"}, {"id": "P"}])


def test_initialize_defaults_persists(rules_file):
    team = config.initialize_defaults("fresh")
    assert team["scoring"]["version"] == 1
    assert "fresh" in json.loads(rules_file.read_text())["teams"]
