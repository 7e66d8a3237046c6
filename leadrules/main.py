import io
import json
import logging
import time
from typing import Any, Dict, List, Optional
import pandas as pd
from fastapi import Body, FastAPI, File, Header, HTTPException, Request, Response, UploadFile
from fastapi.responses import StreamingResponse
from .config import (
    JsonPoolRegistry,
    add_routing_rule,
    add_scoring_rule,
    delete_routing_rule,
    delete_scoring_rule,
    get_pools,
    get_routing_rules,
    get_scoring_config,
    get_scoring_config_history,
    get_scoring_rules,
    initialize_defaults,
    reorder_routing_rules,
    reorder_scoring_rules,
    save_pools,
    save_scoring_config,
    update_routing_rule,
    update_scoring_rule,
)
from .models import BatchRequest, BatchResponse, Lead, ProcessedLead, ReorderRequest, RoutingResult, ScoringResult, Summary
from .routing import route_lead
from .scoring import score_one


app = FastAPI(title="Lead Scoring + Routing Rules API")


logger = logging.getLogger("leadrules")
logging.basicConfig(level=logging.INFO, format="%(message)s")

LEAD_COLUMNS = {"email", "name", "phone", "company", "domain", "source"}


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(int(time.time() * 1000))
    start = time.time()
    status = 500
    try:
        response: Response = await call_next(request)
        status = response.status_code
    finally:
        duration_ms = int((time.time() - start) * 1000)
        logger.info(json.dumps({
            "request_id": rid,
            "team_id": request.headers.get("X-Team-ID", "default"),
            "endpoint": request.url.path,
            "method": request.method,
            "status": status,
            "latency_ms": duration_ms,
        }))
    response.headers["X-Request-ID"] = rid
    return response


def _dump(model: Any) -> Dict[str, Any]:
    return model.model_dump(by_alias=True, exclude_none=True)


def _invalid(e: Exception) -> HTTPException:
    return HTTPException(status_code=422, detail=str(e))


def _not_found(rule_id: Any) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Rule {rule_id} not found")


@app.get("/health")
def health() -> Dict[str, bool]:
    return {"ok": True}


@app.get("/scoring/config")
def read_scoring_config(x_team_id: str = Header(default="default")) -> Dict[str, Any]:
    return {
        "config": _dump(get_scoring_config(x_team_id)),
        "rules": [_dump(r) for r in get_scoring_rules(x_team_id)],
    }


@app.put("/scoring/config")
def write_scoring_config(body: Dict[str, Any] = Body(...), x_team_id: str = Header(default="default")) -> Dict[str, Any]:
    try:
        return _dump(save_scoring_config(x_team_id, body))
    except ValueError as e:
        raise _invalid(e)


@app.get("/scoring/config/history")
def read_scoring_history(limit: int = 10, x_team_id: str = Header(default="default")) -> List[Dict[str, Any]]:
    return [_dump(c) for c in get_scoring_config_history(x_team_id, limit)]


@app.post("/scoring/initialize")
def initialize_team(x_team_id: str = Header(default="default")) -> Dict[str, Any]:
    return initialize_defaults(x_team_id)


@app.get("/scoring/rules")
def list_scoring_rules(x_team_id: str = Header(default="default")) -> List[Dict[str, Any]]:
    return [_dump(r) for r in get_scoring_rules(x_team_id)]


@app.post("/scoring/rules", status_code=201)
def create_scoring_rule(body: Dict[str, Any] = Body(...), x_team_id: str = Header(default="default")) -> Dict[str, Any]:
    try:
        return _dump(add_scoring_rule(x_team_id, body))
    except ValueError as e:
        raise _invalid(e)


@app.put("/scoring/rules/{rule_id}")
def change_scoring_rule(rule_id: str, body: Dict[str, Any] = Body(...), x_team_id: str = Header(default="default")) -> Dict[str, Any]:
    try:
        return _dump(update_scoring_rule(x_team_id, rule_id, body))
    except KeyError:
        raise _not_found(rule_id)
    except ValueError as e:
        raise _invalid(e)


@app.delete("/scoring/rules/{rule_id}", status_code=204)
def remove_scoring_rule(rule_id: str, x_team_id: str = Header(default="default")) -> Response:
    try:
        delete_scoring_rule(x_team_id, rule_id)
    except KeyError:
        raise _not_found(rule_id)
    return Response(status_code=204)


@app.post("/scoring/rules/reorder")
def reorder_scoring(req: ReorderRequest, x_team_id: str = Header(default="default")) -> List[Dict[str, Any]]:
    try:
        reorder_scoring_rules(x_team_id, req.rule_ids)
    except KeyError as e:
        raise _not_found(e.args[0])
    return [_dump(r) for r in get_scoring_rules(x_team_id)]


@app.post("/scoring/test", response_model=ScoringResult)
def test_scoring(lead: Lead, x_team_id: str = Header(default="default")) -> ScoringResult:
    return score_one(lead, x_team_id)


@app.get("/routing/rules")
def list_routing_rules(x_team_id: str = Header(default="default")) -> List[Dict[str, Any]]:
    return [_dump(r) for r in get_routing_rules(x_team_id)]


@app.post("/routing/rules", status_code=201)
def create_routing_rule(body: Dict[str, Any] = Body(...), x_team_id: str = Header(default="default")) -> Dict[str, Any]:
    try:
        return _dump(add_routing_rule(x_team_id, body))
    except ValueError as e:
        raise _invalid(e)


@app.put("/routing/rules/{rule_id}")
def change_routing_rule(rule_id: str, body: Dict[str, Any] = Body(...), x_team_id: str = Header(default="default")) -> Dict[str, Any]:
    try:
        return _dump(update_routing_rule(x_team_id, rule_id, body))
    except KeyError:
        raise _not_found(rule_id)
    except ValueError as e:
        raise _invalid(e)


@app.delete("/routing/rules/{rule_id}", status_code=204)
def remove_routing_rule(rule_id: str, x_team_id: str = Header(default="default")) -> Response:
    try:
        delete_routing_rule(x_team_id, rule_id)
    except KeyError:
        raise _not_found(rule_id)
    return Response(status_code=204)


@app.post("/routing/rules/reorder")
def reorder_routing(req: ReorderRequest, x_team_id: str = Header(default="default")) -> List[Dict[str, Any]]:
    try:
        reorder_routing_rules(x_team_id, req.rule_ids)
    except KeyError as e:
        raise _not_found(e.args[0])
    return [_dump(r) for r in get_routing_rules(x_team_id)]


@app.post("/routing/initialize")
def initialize_routing(x_team_id: str = Header(default="default")) -> List[Dict[str, Any]]:
    return initialize_defaults(x_team_id)["routing_rules"]


@app.post("/routing/test", response_model=RoutingResult)
def test_routing(lead: Lead, x_team_id: str = Header(default="default")) -> RoutingResult:
    return route_lead(lead, get_routing_rules(x_team_id), JsonPoolRegistry(x_team_id))


@app.post("/routing/batch-test")
def batch_test_routing(req: BatchRequest, x_team_id: str = Header(default="default")) -> Dict[str, Any]:
    rules = get_routing_rules(x_team_id)
    registry = JsonPoolRegistry(x_team_id)
    results = []
    for lead in req.leads:
        routing = route_lead(lead, rules, registry)
        results.append({"lead": _dump(lead), "routing": routing.model_dump()})
    return {"results": results}


@app.get("/routing/pools")
def list_pools(x_team_id: str = Header(default="default")) -> List[Dict[str, Any]]:
    return [_dump(p) for p in get_pools(x_team_id)]


@app.put("/routing/pools")
def write_pools(body: List[Dict[str, Any]] = Body(...), x_team_id: str = Header(default="default")) -> List[Dict[str, Any]]:
    try:
        return [_dump(p) for p in save_pools(x_team_id, body)]
    except ValueError as e:
        raise _invalid(e)


def process_lead(lead: Lead, team_id: str) -> ProcessedLead:
    """Score a lead, then route it with the score and band it was given.

    A failure in either stage marks the lead instead of failing the batch.
    """
    data = lead.model_dump(by_alias=True)
    try:
        scoring = score_one(data, team_id)
    except Exception:
        logger.exception("scoring failed for lead %s", data.get("email"))
        return ProcessedLead(lead=data, status="unscored", warnings=["scoring_failed"])
    data["score"] = scoring.score
    data["scoreBand"] = scoring.band
    try:
        routing = route_lead(data, get_routing_rules(team_id), JsonPoolRegistry(team_id))
    except Exception:
        logger.exception("routing failed for lead %s", data.get("email"))
        return ProcessedLead(lead=data, status="unrouted", warnings=["routing_failed"], scoring=scoring)
    warnings: List[str] = []
    if routing.owner_id is None:
        warnings.append("no_owner")
    return ProcessedLead(lead=data, scoring=scoring, routing=routing, warnings=warnings)


@app.post("/leads/process", response_model=ProcessedLead)
def process_endpoint(lead: Lead, x_team_id: str = Header(default="default")) -> ProcessedLead:
    return process_lead(lead, x_team_id)


def bulk_process(leads: List[Lead], team_id: str) -> BatchResponse:
    results = [process_lead(lead, team_id) for lead in leads]
    scored = [r.scoring.score for r in results if r.scoring is not None]
    band_counts: Dict[str, int] = {}
    for r in results:
        if r.scoring is not None:
            band_counts[r.scoring.band] = band_counts.get(r.scoring.band, 0) + 1
    routed = sum(1 for r in results if r.routing is not None and r.routing.owner_id is not None)
    summary = Summary(
        count_in=len(leads),
        routed=routed,
        unrouted=len(results) - routed,
        avg_score=round(sum(scored) / len(scored), 2) if scored else 0.0,
        band_counts=band_counts,
    )
    return BatchResponse(results=results, summary=summary)


@app.post("/leads/bulk", response_model=BatchResponse)
def bulk_endpoint(req: BatchRequest, x_team_id: str = Header(default="default")) -> BatchResponse:
    return bulk_process(req.leads, x_team_id)


def _coerce_lead_rows(df: pd.DataFrame) -> List[Lead]:
    """Top-level lead columns map by name, ``utm_*`` columns go to ``utm``, the rest to ``fields``."""
    leads: List[Lead] = []
    for row in df.to_dict(orient="records"):
        payload: Dict[str, Any] = {"fields": {}, "utm": {}}
        for col, value in row.items():
            if pd.isna(value):
                continue
            key = str(col).strip().lower().replace(" ", "_")
            if key in LEAD_COLUMNS:
                payload[key] = str(value)
            elif key.startswith("utm_"):
                payload["utm"][key[4:]] = value
            else:
                payload["fields"][key] = value
        leads.append(Lead.model_validate(payload))
    return leads


def _export_row(r: ProcessedLead) -> Dict[str, Any]:
    return {
        "email": r.lead.get("email"),
        "name": r.lead.get("name"),
        "company": r.lead.get("company"),
        "status": r.status,
        "score": r.scoring.score if r.scoring else None,
        "band": r.scoring.band if r.scoring else None,
        "tags": ";".join(r.scoring.tags) if r.scoring else "",
        "owner_id": r.routing.owner_id if r.routing else None,
        "pool": r.routing.pool if r.routing else None,
        "sla_minutes": r.routing.sla_minutes if r.routing else None,
    }


@app.post("/leads/ingest_csv")
async def ingest_csv(file: UploadFile = File(...), format: Optional[str] = None, x_team_id: str = Header(default="default")):
    if not file.filename or not file.filename.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="Expected a CSV file")
    content = await file.read()
    try:
        df = pd.read_csv(io.BytesIO(content))
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid CSV")
    batch = bulk_process(_coerce_lead_rows(df), x_team_id)
    if format == "csv":
        out = pd.DataFrame([_export_row(r) for r in batch.results])
        buf = io.StringIO()
        out.to_csv(buf, index=False)
        buf.seek(0)
        headers = {"Content-Disposition": f"attachment; filename=routed_{int(time.time())}.csv"}
        return StreamingResponse(iter([buf.getvalue()]), media_type="text/csv", headers=headers)
    return batch
