import pytest
from leadrules.config import DEFAULT_SCORING_CONFIG, DEFAULT_SCORING_RULES
from leadrules.models import Lead, ScoringConfig
from leadrules.scoring import score_lead, score_one


DEFAULT_BANDS = {"low": {"min": 0, "max": 30}, "medium": {"min": 31, "max": 70}, "high": {"min": 71, "max": 100}}


def test_test_email_penalty_clamps_to_zero():
    config = {
        "weights": {"email": 5},
        "bands": DEFAULT_BANDS,
        "negative": [{"field": "email", "op": "contains", "value": "test", "penalty": 20, "reason": "test email"}],
    }
    result = score_lead({"email": "test@x.com", "company": ""}, config, [])
    assert result.score == 0
    assert result.band == "LOW"
    steps = [e.step for e in result.trace]
    assert steps == ["weights", "negative", "final"]
    assert result.trace[0].points_delta == 5
    assert result.trace[1].running_total == -15
    assert result.trace[-1].reason == "Final score 0 maps to LOW band"


def test_budget_weight_rule_contributes_fifty_points():
    rules = [{"id": "budget", "type": "WEIGHT", "field": "fields.budget", "weight": 0.001, "enabled": True, "order": 1}]
    result = score_lead({"fields": {"budget": 50000}}, {"bands": DEFAULT_BANDS}, rules)
    assert result.score == 50
    assert result.band == "MEDIUM"


def test_side_effects_surface_on_result():
    config = ScoringConfig.model_validate({"weights": {"fields.budget": 0.001}, "bands": DEFAULT_BANDS})
    lead = Lead.model_validate({"email": "cfo@acme.com", "fields": {"budget": 60000, "title": "CEO"}})
    result = score_lead(lead, config, DEFAULT_SCORING_RULES)
    assert result.score == 95
    assert result.band == "HIGH"
    assert result.tags == ["high_budget", "decision_maker"]
    assert result.route_hint == "SENIOR_AE_POOL"
    assert result.sla_hint == 15


def test_score_is_bounded_above():
    rules = [{"id": "big", "type": "IF_THEN", "if": [], "then": {"add": 500}}]
    result = score_lead({}, {"bands": DEFAULT_BANDS}, rules)
    assert result.score == 100
    assert result.band == "HIGH"


def test_malformed_config_still_scores():
    result = score_lead({"email": "someone@acme.com"}, {"weights": {"email": "five"}, "bands": {"high": 1}, "negative": "nope"}, None)
    assert result.score == 0
    assert result.band == "LOW"
    result = score_lead({"email": "someone@acme.com"}, None, None)
    assert result.band == "LOW"


def test_scoring_is_deterministic():
    lead = {"email": "ceo@acme.com", "name": "Dana", "company": "Acme", "fields": {"budget": 20000, "title": "Founder"}, "utm": {"source": "google", "medium": "cpc"}}
    first = score_lead(lead, DEFAULT_SCORING_CONFIG, DEFAULT_SCORING_RULES)
    second = score_lead(lead, DEFAULT_SCORING_CONFIG, DEFAULT_SCORING_RULES)
    assert first.model_dump() == second.model_dump()
    assert first.model_dump_json() == second.model_dump_json()


@pytest.mark.parametrize("lead", [
    {},
    {"email": "test@test.com", "name": "test", "company": ""},
    {"fields": {"budget": 10 ** 9, "employees": 10 ** 6}},
    {"fields": {"budget": -10 ** 9}},
    {"email": None, "fields": None, "utm": "x"},
])
def test_default_config_bounds(lead):
    result = score_lead(lead, DEFAULT_SCORING_CONFIG, DEFAULT_SCORING_RULES)
    assert 0 <= result.score <= 100
    assert result.band in ("LOW", "MEDIUM", "HIGH")


@pytest.mark.parametrize("budget,expected", [(10 ** 400, 100), (-10 ** 400, 0)])
def test_integers_beyond_float_range_clamp(budget, expected):
    config = {"weights": {"fields.budget": 0.001}}
    rules = [{"id": "budget", "type": "WEIGHT", "field": "fields.budget", "weight": 0.5}]
    assert score_lead({"fields": {"budget": budget}}, config).score == expected
    assert score_lead({"fields": {"budget": budget}}, {}, rules).score == expected


def test_zero_weight_ignores_huge_values():
    result = score_lead({"fields": {"budget": 10 ** 400}}, {"weights": {"fields.budget": 0}})
    assert result.score == 0
    assert [e.step for e in result.trace] == ["final"]


def test_score_one_uses_team_defaults():
    result = score_one({"email": "jane@acme.com", "company": "Acme Corp"}, "team-a")
    # email 5*1, company 8*0.9
    assert result.score == 12
    assert result.band == "LOW"
