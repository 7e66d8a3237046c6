from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


Operator = Literal[
    "equals",
    "not_equals",
    "greater_than",
    "less_than",
    "greater_equal",
    "less_equal",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "regex",
    "in",
    "not_in",
    "exists",
    "not_exists",
]

Band = Literal["LOW", "MEDIUM", "HIGH"]
AlertType = Literal["SLACK", "EMAIL", "WEBHOOK"]
Strategy = Literal["round_robin", "least_loaded"]
Number = Union[int, float]


class Lead(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    domain: Optional[str] = None
    source: Optional[str] = None
    score: Optional[float] = None
    score_band: Optional[Band] = Field(default=None, alias="scoreBand")
    custom: Dict[str, Any] = Field(default_factory=dict, alias="fields")
    utm: Dict[str, Any] = Field(default_factory=dict)


class Condition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    field: str
    # Kept as a plain string so an unknown operator evaluates to False instead of failing to parse.
    op: str = Field(validation_alias=AliasChoices("op", "operator"))
    value: Any = None


class RuleAction(BaseModel):
    add: Optional[float] = None
    multiply: Optional[float] = None
    tag: Optional[str] = None
    route: Optional[str] = None
    sla: Optional[Number] = None
    assign: Optional[str] = None
    priority: Optional[Number] = None
    alert: Optional[AlertType] = None
    webhook: Optional[str] = None

    @field_validator("sla", "priority", mode="before")
    @classmethod
    def _lenient_number(cls, value: Any) -> Optional[Number]:
        # Unparseable hints become None.
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str):
            try:
                number = float(value)
            except ValueError:
                return None
            return int(number) if number.is_integer() else number
        return None


class IfThenRule(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    type: Literal["IF_THEN"] = "IF_THEN"
    id: str = ""
    when: Optional[List[Condition]] = Field(default=None, alias="if")
    then: Optional[RuleAction] = None
    enabled: bool = True
    order: int = 0


class WeightRule(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    type: Literal["WEIGHT"] = "WEIGHT"
    id: str = ""
    field: Optional[str] = None
    weight: Optional[float] = None
    enabled: bool = True
    order: int = 0


ScoringRule = Annotated[Union[IfThenRule, WeightRule], Field(discriminator="type")]


class NegativeRule(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    field: str
    op: str = Field(validation_alias=AliasChoices("op", "operator"))
    value: Any = None
    penalty: float = 0
    reason: str = ""


class BandRange(BaseModel):
    min: float
    max: float


class Bands(BaseModel):
    low: BandRange
    medium: BandRange
    high: BandRange


class ScoringConfig(BaseModel):
    weights: Dict[str, float] = Field(default_factory=dict)
    bands: Optional[Bands] = None
    negative: List[NegativeRule] = Field(default_factory=list)
    enrichment: Dict[str, Any] = Field(default_factory=dict)
    version: int = 1


class TraceEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    step: str
    rule_id: Optional[str] = None
    field: Optional[str] = None
    value: Any = None
    operation: str
    points_delta: float = 0
    running_total: float = 0
    reason: str = ""


class ScoringResult(BaseModel):
    score: int
    band: Band
    trace: List[TraceEntry] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    route_hint: Optional[str] = None
    sla_hint: Optional[Number] = None


class RoutingRule(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    id: str = ""
    name: str = ""
    when: Optional[List[Condition]] = Field(default=None, alias="if")
    then: Optional[RuleAction] = None
    enabled: bool = True
    order: int = 0


class Owner(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    capacity: int = 0
    current_load: int = Field(default=0, alias="currentLoad")
    is_active: bool = Field(default=True, alias="isActive")


class OwnerPool(BaseModel):
    id: str
    owners: List[Owner] = Field(default_factory=list)
    strategy: Strategy = "round_robin"
    cursor: int = -1


class RoutingResult(BaseModel):
    owner_id: Optional[str] = None
    pool: Optional[str] = None
    sla_minutes: Optional[Number] = None
    priority: Optional[Number] = None
    reason: str
    trace: List[TraceEntry] = Field(default_factory=list)
    alerts: List[str] = Field(default_factory=list)


class ProcessedLead(BaseModel):
    lead: Dict[str, Any]
    status: Literal["ok", "unscored", "unrouted"] = "ok"
    warnings: List[str] = Field(default_factory=list)
    scoring: Optional[ScoringResult] = None
    routing: Optional[RoutingResult] = None


class BatchRequest(BaseModel):
    leads: List[Lead]


class Summary(BaseModel):
    count_in: int
    routed: int
    unrouted: int
    avg_score: float
    band_counts: Dict[str, int] = Field(default_factory=dict)


class BatchResponse(BaseModel):
    results: List[ProcessedLead]
    summary: Summary


class ReorderRequest(BaseModel):
    rule_ids: List[str]
