from typing import Any, Dict, Optional
from .engine import apply_rules, calculate_band, clamp_score
from .models import ScoringConfig, ScoringResult, TraceEntry
from .config import get_scoring_config, get_scoring_rules


def _config_parts(config: Any) -> Dict[str, Any]:
    if isinstance(config, ScoringConfig):
        return {"weights": config.weights, "negative": config.negative, "bands": config.bands}
    if isinstance(config, dict):
        return {"weights": config.get("weights"), "negative": config.get("negative"), "bands": config.get("bands")}
    return {"weights": None, "negative": None, "bands": None}


def score_lead(lead: Any, config: Any, rules: Optional[Any] = None) -> ScoringResult:
    parts = _config_parts(config)
    outcome = apply_rules(
        lead,
        weights=parts["weights"],
        negative_rules=parts["negative"],
        conditional_rules=rules,
        weight_rules=rules,
    )
    score = clamp_score(outcome.total)
    band = calculate_band(score, parts["bands"])
    trace = list(outcome.trace)
    trace.append(TraceEntry(
        step="final",
        value=band,
        operation="band_calculation",
        points_delta=0,
        running_total=score,
        reason=f"Final score {score} maps to {band} band",
    ))
    effects = outcome.effects
    return ScoringResult(
        score=score,
        band=band,
        trace=trace,
        tags=effects.tags,
        route_hint=effects.route,
        sla_hint=effects.sla,
    )


def score_one(lead: Any, team_id: str = "default") -> ScoringResult:
    return score_lead(lead, get_scoring_config(team_id), get_scoring_rules(team_id))
