"""Pydantic models for deals, assessments and sessions.

Stored documents keep camelCase keys (``userId``, ``lastScore``) so records
written by earlier deployments stay readable; Python code uses snake_case.
"""
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Tier = Literal["Strong", "Workable", "Weak"]
Decision = Literal["Go", "Hold", "No-go"]
Source = Literal["llm", "heuristic"]

STAGES = ("Qualification", "Discovery", "Evaluation", "Paperwork", "Negotiation", "Closed")

# Form field name -> ScoreSet dimension
SCORE_FIELDS: dict[str, str] = {
    "metrics": "metrics",
    "eb": "economic_buyer",
    "dc": "decision_criteria",
    "dp": "decision_process",
    "pp": "paper_process",
    "ip": "identified_pain",
    "ch": "champion",
    "co": "competition",
}

SCORE_LABELS: dict[str, str] = {
    "metrics": "Metrics",
    "eb": "Economic Buyer",
    "dc": "Decision Criteria",
    "dp": "Decision Process",
    "pp": "Paper Process",
    "ip": "Identified Pain",
    "ch": "Champion",
    "co": "Competition",
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SessionUser(BaseModel):
    sub: str
    email: str | None = None


class Deal(_CamelModel):
    user_id: str
    deal_id: str
    account: str
    title: str
    value: float = 0
    stage: str = "Qualification"
    last_assessment_id: int | None = None
    last_tier: Tier | None = None
    last_score: int | None = None
    updated_at: int = 0


class AssessmentResult(BaseModel):
    """The verdict for one assessment. Field names match the JSON the LLM is asked for."""
    tier: Tier
    go_hold_nogo: Decision
    total_score: int = Field(ge=0, le=100)
    analysis: str


class AssessmentPayload(BaseModel):
    """Deal snapshot plus the submitted scores, as sent to the LLM."""
    account: str
    title: str
    value: float
    stage: str
    scores: dict[str, int]
    notes: str = ""


class AssessmentRecord(AssessmentResult):
    """A stored assessment: the verdict plus when it was made and what was sent."""
    model_config = ConfigDict(populate_by_name=True)

    created_at: int = Field(alias="createdAt")
    payload: AssessmentPayload
    source: Source = "llm"

    @property
    def result(self) -> AssessmentResult:
        return AssessmentResult(**self.model_dump(include=set(AssessmentResult.model_fields)))
