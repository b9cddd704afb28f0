"""
Pydantic models for the evaluate contract: the inbound envelope, the two-variant
AI output and the response envelope, plus the smaller operator request bodies.
"""

from datetime import datetime
from typing import Any, Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from ..core.schema import EVENT_TYPES, REFUSAL_CODES, MODEL_REFUSED, REVIEW_RECORD_STATUSES

TASK_TYPES = ['DECISION', 'REVISION']
TRAVELER_TYPES = ['first_time', 'repeat', 'family', 'honeymoon', 'photographer', 'unknown']
BUDGET_BANDS = ['budget', 'fair_value', 'premium', 'unknown']
PACES = ['slow', 'balanced', 'fast', 'unknown']
RISK_TOLERANCES = ['low', 'medium', 'high', 'unknown']
DATE_TYPES = ['fixed_dates', 'month_year', 'flexible', 'unknown']


def _one_of(value: str, valid: List[str], name: str) -> str:
    if value not in valid:
        raise ValueError(f'{name} must be one of: {valid}')
    return value


# Input envelope

class Tracking(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    traveler_id: Optional[str] = None
    lead_id: Optional[str] = None

    @field_validator('session_id')
    @classmethod
    def session_id_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('session_id cannot be empty')
        return v


class DateSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    start: Optional[str] = None
    end: Optional[str] = None
    month: Optional[str] = None
    year: Optional[int] = None

    @field_validator('type')
    @classmethod
    def type_must_be_valid(cls, v):
        return _one_of(v, DATE_TYPES, 'dates.type')

    @field_validator('start', 'end')
    @classmethod
    def date_must_be_iso(cls, v):
        if v is not None:
            try:
                datetime.strptime(v, '%Y-%m-%d')
            except ValueError:
                raise ValueError('date must be in YYYY-MM-DD format')
        return v

    @field_validator('year')
    @classmethod
    def year_must_not_be_past(cls, v):
        if v is not None and v < datetime.now().year:
            raise ValueError('year must be the current year or later')
        return v

    @model_validator(mode='after')
    def fixed_dates_need_range(self):
        if self.type == 'fixed_dates' and (not self.start or not self.end):
            raise ValueError('fixed_dates requires start and end')
        if self.start and self.end and self.end < self.start:
            raise ValueError('end must not be before start')
        return self


class UserContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    traveler_type: str
    budget_band: str
    dates: DateSpec
    pace_preference: str = 'unknown'
    risk_tolerance: str = 'unknown'
    drive_tolerance_hours: float = Field(default=0, ge=0)
    group_size: int = Field(default=0, ge=0)
    prior_decisions: List[str] = Field(default_factory=list)

    @field_validator('traveler_type')
    @classmethod
    def traveler_type_must_be_valid(cls, v):
        return _one_of(v, TRAVELER_TYPES, 'traveler_type')

    @field_validator('budget_band')
    @classmethod
    def budget_band_must_be_valid(cls, v):
        return _one_of(v, BUDGET_BANDS, 'budget_band')

    @field_validator('pace_preference')
    @classmethod
    def pace_must_be_valid(cls, v):
        return _one_of(v, PACES, 'pace_preference')

    @field_validator('risk_tolerance')
    @classmethod
    def risk_tolerance_must_be_valid(cls, v):
        return _one_of(v, RISK_TOLERANCES, 'risk_tolerance')


class DecisionRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    question: str
    scope: str = ''
    destinations_considered: List[str] = Field(default_factory=list)
    constraints: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('question')
    @classmethod
    def question_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('question cannot be empty')
        return v


class Facts(BaseModel):
    model_config = ConfigDict(frozen=True)

    known_constraints: List[str] = Field(default_factory=list)
    known_tradeoffs: List[str] = Field(default_factory=list)
    destination_notes: List[str] = Field(default_factory=list)


class Policy(BaseModel):
    model_config = ConfigDict(frozen=True)

    must_refuse_if: List[str] = Field(default_factory=list)
    forbidden_phrases: List[str] = Field(default_factory=list)


class InputEnvelope(BaseModel):
    """Normalized request bundle. Immutable once received."""

    model_config = ConfigDict(frozen=True)

    task: str = 'DECISION'
    tracking: Tracking
    user_context: UserContext
    request: DecisionRequest
    facts: Facts = Field(default_factory=Facts)
    policy: Policy = Field(default_factory=Policy)

    @field_validator('task')
    @classmethod
    def task_must_be_valid(cls, v):
        return _one_of(v, TASK_TYPES, 'task')


# AI output: exactly two variants, discriminated on "type"

class Assumption(BaseModel):
    model_config = ConfigDict(strict=True, frozen=True)

    id: str = Field(min_length=1)
    text: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)


class Tradeoffs(BaseModel):
    model_config = ConfigDict(strict=True, frozen=True)

    gains: List[str] = Field(min_length=1)
    losses: List[str] = Field(min_length=1)


class DecisionBody(BaseModel):
    model_config = ConfigDict(strict=True, frozen=True)

    outcome: Literal['book', 'wait', 'switch', 'discard']
    headline: str = Field(min_length=1, max_length=90)
    summary: str = Field(min_length=1)
    assumptions: List[Assumption] = Field(min_length=2, max_length=5)
    tradeoffs: Tradeoffs
    change_conditions: List[str] = Field(min_length=2, max_length=4)
    confidence: float = Field(ge=0.0, le=1.0)


class DecisionOutput(BaseModel):
    model_config = ConfigDict(strict=True, frozen=True)

    type: Literal['decision']
    decision: DecisionBody


class RefusalBody(BaseModel):
    model_config = ConfigDict(strict=True, frozen=True)

    code: str = MODEL_REFUSED
    reason: str = Field(min_length=1)
    missing_or_conflicting_inputs: List[str] = Field(max_length=5)
    safe_next_step: str = Field(min_length=1)

    @field_validator('code')
    @classmethod
    def code_must_be_valid(cls, v):
        return _one_of(v, REFUSAL_CODES, 'code')


class RefusalOutput(BaseModel):
    model_config = ConfigDict(strict=True, frozen=True)

    type: Literal['refusal']
    refusal: RefusalBody


AIOutput = Annotated[Union[DecisionOutput, RefusalOutput], Field(discriminator='type')]
AI_OUTPUT_ADAPTER = TypeAdapter(AIOutput)


# Evaluate response

class ResponseMetadata(BaseModel):
    logic_version: str
    ai_used: bool
    retry_count: int = 0
    persisted: bool
    cache: str = 'miss'  # miss|hit|stale|none
    deferred: bool = False
    retry_after_seconds: Optional[int] = None


class EvaluateResponse(BaseModel):
    decision_id: Optional[str]
    output: AIOutput
    metadata: ResponseMetadata


# Operator and collaborator request bodies

class EventRequest(BaseModel):
    event_type: str
    session_id: str
    traveler_id: Optional[str] = None
    lead_id: Optional[str] = None
    decision_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('event_type')
    @classmethod
    def event_type_must_be_valid(cls, v):
        return _one_of(v, EVENT_TYPES, 'event_type')


class ReviewUpdateRequest(BaseModel):
    status: str
    reviewer_id: str
    resolution_notes: Optional[str] = None

    @field_validator('status')
    @classmethod
    def status_must_be_valid(cls, v):
        return _one_of(v, REVIEW_RECORD_STATUSES, 'status')


class GuardrailResetRequest(BaseModel):
    target: str = 'all'

    @field_validator('target')
    @classmethod
    def target_must_be_valid(cls, v):
        return _one_of(v, ['inference', 'artifact', 'all'], 'target')


class AssuranceCreateRequest(BaseModel):
    decision_id: str
    session_id: str
    traveler_id: Optional[str] = None


class PaymentUpdateRequest(BaseModel):
    payment_id: str

    @field_validator('payment_id')
    @classmethod
    def payment_id_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('payment_id cannot be empty')
        return v


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    logic_version: str


class ErrorResponse(BaseModel):
    error: str
    detail: str
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime

    def __init__(self, **data):
        if 'timestamp' not in data:
            data['timestamp'] = datetime.now()
        super().__init__(**data)


class AssuranceRevokeRequest(BaseModel):
    reason: str

    @field_validator('reason')
    @classmethod
    def reason_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('reason cannot be empty')
        return v
