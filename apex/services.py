"""Shared business logic: sessions, deals, assessments and usage metering.

Key layout per namespace::

    sessions     s:<sid>                              -> SessionUser JSON (TTL)
    deals        deal:<userId>:<dealId>               -> Deal JSON
    assessments  assessment:<userId>:<dealId>:<ts>    -> AssessmentRecord JSON
    usage        use:<YYYYMM>                         -> integer counter

User, deal and timestamp segments are percent-encoded, so a ":" inside an
email or a submitted deal id cannot reach into another user's prefix.

The deal summary update after an assessment and the usage counter are plain
read-modify-write sequences. Two concurrent assessments can lose one deal
summary update or undercount usage; the store has no atomic increment, so
this is accepted as approximate.
"""
from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Mapping
from urllib.parse import quote

from pydantic import ValidationError
from sqlalchemy.orm import Session, sessionmaker

from apex.config import Settings, get_settings
from apex.schemas import (
    SCORE_FIELDS,
    STAGES,
    AssessmentPayload,
    AssessmentRecord,
    AssessmentResult,
    Deal,
    SessionUser,
    Source,
)
from apex.scorer import LLMClient
from apex.stores import EnvSecretStore, KVStore, SecretStore
from apex.utils import json_parse, month_key, now_ms

log = logging.getLogger(__name__)


class FormError(ValueError):
    """A required form field is missing or invalid."""


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def session_key(sid: str) -> str:
    return f"s:{sid}"


def _segment(part: object) -> str:
    return quote(str(part), safe="")


def deal_key(user_id: str, deal_id: str = "") -> str:
    return f"deal:{_segment(user_id)}:{_segment(deal_id)}"


def assessment_key(user_id: str, deal_id: str, ts: int | str = "") -> str:
    return f"assessment:{_segment(user_id)}:{_segment(deal_id)}:{_segment(ts)}"


def usage_key(month: str) -> str:
    return f"use:{month}"


def list_all_keys(kv: KVStore, prefix: str, page_size: int = 100) -> list[str]:
    """Follow the listing cursor until exhausted, returning unique keys in order."""
    keys: dict[str, None] = {}
    cursor: str | None = None
    while True:
        page = kv.list(prefix, cursor=cursor, limit=page_size)
        keys.update(dict.fromkeys(page.keys))
        cursor = page.cursor
        if not cursor:
            break
    return list(keys)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionStore:
    def __init__(self, kv: KVStore, ttl_seconds: int):
        self._kv = kv
        self.ttl_seconds = ttl_seconds

    def create(self, email: str) -> str:
        """Start a session for *email* and return its id."""
        email = (email or "").strip().lower()
        if not email:
            raise FormError("Email required")
        sid = str(uuid.uuid4())
        user = SessionUser(sub=f"u:{email}", email=email)
        self._kv.put(session_key(sid), user.model_dump_json(), ttl=self.ttl_seconds)
        return sid

    def get(self, sid: str | None) -> SessionUser | None:
        if not sid:
            return None
        raw = json_parse(self._kv.get(session_key(sid)), None)
        if not isinstance(raw, dict):
            return None
        try:
            return SessionUser.model_validate(raw)
        except ValidationError:
            log.warning("Discarding malformed session %s", sid)
            return None

    def delete(self, sid: str) -> None:
        self._kv.delete(session_key(sid))


# ---------------------------------------------------------------------------
# Deals & assessments
# ---------------------------------------------------------------------------


class AssessmentStore:
    """Deals plus their append-only assessment history."""

    def __init__(
        self,
        deals: KVStore,
        assessments: KVStore,
        usage: KVStore,
        page_size: int = 100,
        clock: Callable[[], int] = now_ms,
    ):
        self._deals = deals
        self._assessments = assessments
        self._usage = usage
        self.page_size = page_size
        self._clock = clock

    # -- deals --------------------------------------------------------------

    def create_deal(
        self, user_id: str, *, account: str, title: str, value: float = 0, stage: str = "Qualification",
    ) -> Deal:
        deal = Deal(
            user_id=user_id, deal_id=str(uuid.uuid4()), account=account, title=title,
            value=value, stage=stage, updated_at=self._clock(),
        )
        self.save_deal(deal)
        return deal

    def save_deal(self, deal: Deal) -> None:
        self._deals.put(deal_key(deal.user_id, deal.deal_id), deal.model_dump_json(by_alias=True))

    def get_deal(self, user_id: str, deal_id: str) -> Deal | None:
        raw = self._deals.get(deal_key(user_id, deal_id))
        if raw is None:
            return None
        return Deal.model_validate_json(raw)

    def list_deals(self, user_id: str) -> list[Deal]:
        """All of a user's deals, most recently updated first."""
        deals: list[Deal] = []
        for key in list_all_keys(self._deals, deal_key(user_id), self.page_size):
            raw = self._deals.get(key)
            if raw is not None:
                deals.append(Deal.model_validate_json(raw))
        deals.sort(key=lambda d: d.updated_at or 0, reverse=True)
        return deals

    # -- assessments --------------------------------------------------------

    def record(
        self,
        user_id: str,
        deal_id: str,
        result: AssessmentResult,
        payload: AssessmentPayload,
        source: Source = "llm",
    ) -> int:
        """Append an assessment and return its timestamp id.

        Records written in the same millisecond share a key; the later write wins.
        """
        ts = self._clock()
        record = AssessmentRecord(
            **result.model_dump(), created_at=ts, payload=payload, source=source,
        )
        self._assessments.put(assessment_key(user_id, deal_id, ts), record.model_dump_json(by_alias=True))
        log.info("Recorded %s assessment %s for deal %s: %s/%s",
                 source, ts, deal_id, result.tier, result.total_score)
        return ts

    def mark_assessed(self, deal: Deal, result: AssessmentResult, ts: int) -> Deal:
        """Point the deal summary at the assessment recorded at *ts*."""
        deal.last_assessment_id = ts
        deal.last_tier = result.tier
        deal.last_score = result.total_score
        deal.updated_at = ts
        self.save_deal(deal)
        return deal

    def get_assessment(self, user_id: str, deal_id: str, ts: int | str) -> AssessmentRecord | None:
        raw = self._assessments.get(assessment_key(user_id, deal_id, ts))
        if raw is None:
            return None
        return AssessmentRecord.model_validate_json(raw)

    def list_assessments(self, user_id: str, deal_id: str) -> list[AssessmentRecord]:
        """A deal's assessment history, newest first."""
        records: list[AssessmentRecord] = []
        for key in list_all_keys(self._assessments, assessment_key(user_id, deal_id), self.page_size):
            raw = self._assessments.get(key)
            if raw is not None:
                records.append(AssessmentRecord.model_validate_json(raw))
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    # -- usage --------------------------------------------------------------

    def usage(self, month: str | None = None) -> int:
        month = month or month_key()
        raw = self._usage.get(usage_key(month))
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            log.warning("Corrupt usage counter for %s: %r", month, raw)
            return 0

    def increment_usage(self, month: str | None = None) -> int:
        month = month or month_key()
        count = self.usage(month) + 1
        self._usage.put(usage_key(month), str(count))
        return count


# ---------------------------------------------------------------------------
# Service container
# ---------------------------------------------------------------------------


@dataclass
class Services:
    sessions: SessionStore
    store: AssessmentStore
    llm: LLMClient


def build_services(
    factory: sessionmaker[Session],
    secrets: SecretStore | None = None,
    settings: Settings | None = None,
) -> Services:
    settings = settings or get_settings()
    return Services(
        sessions=SessionStore(KVStore(factory, "sessions"), settings.session_ttl_seconds),
        store=AssessmentStore(
            deals=KVStore(factory, "deals"),
            assessments=KVStore(factory, "assessments"),
            usage=KVStore(factory, "usage"),
            page_size=settings.deal_page_size,
        ),
        llm=LLMClient(secrets or EnvSecretStore()),
    )


# ---------------------------------------------------------------------------
# Form parsing
# ---------------------------------------------------------------------------


def _form_str(form: Mapping[str, Any], name: str) -> str:
    value = form.get(name)
    return str(value).strip() if value is not None else ""


def parse_deal_form(form: Mapping[str, Any]) -> dict[str, Any]:
    """Validate the new-deal form into keyword arguments for ``create_deal``."""
    account = _form_str(form, "account")
    title = _form_str(form, "title")
    if not account:
        raise FormError("Account required")
    if not title:
        raise FormError("Title required")

    raw_value = _form_str(form, "value")
    try:
        value = float(raw_value) if raw_value else 0.0
    except ValueError:
        raise FormError("Value must be a number") from None
    if math.isnan(value) or math.isinf(value):
        raise FormError("Value must be a number")

    stage = _form_str(form, "stage") or "Qualification"
    if stage not in STAGES:
        raise FormError(f"Unknown stage: {stage}")
    return {"account": account, "title": title, "value": value, "stage": stage}


def parse_score_form(form: Mapping[str, Any]) -> dict[str, int]:
    """Read the eight 1-5 ratings, keyed by their full dimension names."""
    scores: dict[str, int] = {}
    for field_name, dimension in SCORE_FIELDS.items():
        raw = _form_str(form, field_name)
        if not raw:
            raise FormError(f"Missing score: {field_name}")
        try:
            score = int(raw)
        except ValueError:
            raise FormError(f"Score {field_name} must be a whole number") from None
        if not 1 <= score <= 5:
            raise FormError(f"Score {field_name} must be between 1 and 5")
        scores[dimension] = score
    return scores


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def run_assessment(
    services: Services, user_id: str, deal: Deal, scores: dict[str, int], notes: str = "",
) -> AssessmentRecord:
    """Assess a deal, append the record, update the deal summary and count usage."""
    payload = AssessmentPayload(
        account=deal.account, title=deal.title, value=deal.value, stage=deal.stage,
        scores=scores, notes=notes,
    )
    outcome = await services.llm.assess(payload)
    ts = services.store.record(user_id, deal.deal_id, outcome.result, payload, outcome.source)
    services.store.mark_assessed(deal, outcome.result, ts)
    services.store.increment_usage()
    return AssessmentRecord(
        **outcome.result.model_dump(), created_at=ts, payload=payload, source=outcome.source,
    )
