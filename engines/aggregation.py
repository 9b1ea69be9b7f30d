"""Performance aggregation over raw answer events and skill progress rows."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from schemas import (
    AnswerEvent,
    CompetencyProgress,
    PerformanceSnapshot,
    SkillAccuracy,
    SkillProgress,
)

logger = logging.getLogger(__name__)

RECENT_WINDOW = timedelta(days=7)
PRIORITY_THRESHOLD = 60.0
STRONG_THRESHOLD = 80.0


def rate(numerator: float, denominator: float) -> float:
    """Percentage rounded half-up to one decimal; ``0`` when nothing was answered."""

    if not denominator:
        return 0.0
    exact = Decimal(numerator * 100.0 / denominator)
    return float(exact.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _coerce_event(raw: Any) -> AnswerEvent:
    if isinstance(raw, AnswerEvent):
        return raw
    return AnswerEvent.model_validate(dict(raw))


def build_snapshot(
    events: Iterable[Any],
    now: Optional[datetime] = None,
) -> PerformanceSnapshot:
    """Aggregate answer events into a :class:`PerformanceSnapshot`."""

    reference = _as_utc(now) or datetime.now(timezone.utc)
    cutoff = reference - RECENT_WINDOW

    total = correct = 0
    recent_total = recent_correct = 0
    timed = 0
    time_sum = 0.0
    for raw in events:
        event = _coerce_event(raw)
        total += 1
        if event.correct:
            correct += 1
        answered_at = _as_utc(event.answered_at)
        if answered_at is not None and answered_at >= cutoff:
            recent_total += 1
            if event.correct:
                recent_correct += 1
        if event.response_time_seconds is not None and event.response_time_seconds >= 0:
            timed += 1
            time_sum += float(event.response_time_seconds)

    return PerformanceSnapshot(
        total_answered=total,
        correct_count=correct,
        accuracy_pct=rate(correct, total),
        recent_answered=recent_total,
        recent_accuracy_pct=rate(recent_correct, recent_total),
        avg_response_time_seconds=round(time_sum / timed, 1) if timed else 0.0,
    )


def skill_accuracy(total_answered: Any, correct_count: Any) -> SkillAccuracy:
    total = max(0, int(total_answered or 0))
    correct = min(total, max(0, int(correct_count or 0)))
    return SkillAccuracy(total_answered=total, correct_count=correct, accuracy_pct=rate(correct, total))


def to_skill_progress(row: Mapping[str, Any]) -> SkillProgress:
    """Map a storage row to :class:`SkillProgress` with the ratio recomputed."""

    totals = skill_accuracy(row.get("total_answered"), row.get("correct_count"))
    competency_number = int(row.get("competency_number") or 0)
    skill_code = row.get("skill_code") or f"H{row.get('skill_number')}"
    competency_code = row.get("competency_code") or f"C{competency_number}"
    return SkillProgress(
        skill_code=str(skill_code),
        competency_code=str(competency_code),
        competency_number=competency_number,
        description=str(row.get("description") or ""),
        competency_description=str(row.get("competency_description") or ""),
        total_answered=totals.total_answered,
        correct_count=totals.correct_count,
        accuracy_pct=totals.accuracy_pct,
    )


@dataclass
class _CompetencyAccumulator:
    code: str
    number: int
    description: str
    total: int = 0
    correct: int = 0


def rollup_competencies(skills: Sequence[SkillProgress]) -> List[CompetencyProgress]:
    """Group skills by competency; ratios come from summed counts."""

    groups: Dict[str, _CompetencyAccumulator] = {}
    for skill in skills:
        acc = groups.get(skill.competency_code)
        if acc is None:
            acc = _CompetencyAccumulator(
                code=skill.competency_code,
                number=skill.competency_number,
                description=skill.competency_description,
            )
            groups[skill.competency_code] = acc
        acc.total += skill.total_answered
        acc.correct += skill.correct_count

    records = [
        CompetencyProgress(
            competency_code=acc.code,
            number=acc.number,
            description=acc.description,
            total_answered=acc.total,
            correct_count=acc.correct,
            accuracy_pct=rate(acc.correct, acc.total),
        )
        for acc in groups.values()
    ]
    return sorted(records, key=lambda record: record.number)


def skills_with_history(skills: Iterable[SkillProgress]) -> List[SkillProgress]:
    return [skill for skill in skills if skill.total_answered > 0]


def priority_skills(skills: Iterable[SkillProgress], limit: int = 5) -> List[SkillProgress]:
    weak = [s for s in skills_with_history(skills) if s.accuracy_pct < PRIORITY_THRESHOLD]
    return sorted(weak, key=lambda s: s.accuracy_pct)[:limit]


def strong_skills(skills: Iterable[SkillProgress], limit: int = 5) -> List[SkillProgress]:
    strong = [s for s in skills_with_history(skills) if s.accuracy_pct >= STRONG_THRESHOLD]
    return sorted(strong, key=lambda s: s.accuracy_pct, reverse=True)[:limit]


class PerformanceAggregator:
    """Pull raw records from a storage reader and aggregate them.

    The storage reader is blocking (sqlite), so every query is moved off the
    event loop with :func:`asyncio.to_thread`.
    """

    def __init__(self, storage: Any) -> None:
        self.storage = storage

    async def snapshot(
        self,
        learner_id: Any,
        subject: str,
        *,
        now: Optional[datetime] = None,
    ) -> PerformanceSnapshot:
        events = await asyncio.to_thread(self.storage.fetch_answer_history, learner_id, subject)
        return build_snapshot(events or [], now=now)

    async def skill_accuracy(self, learner_id: Any, skill_id: Optional[int]) -> SkillAccuracy:
        if not skill_id:
            return SkillAccuracy()
        row = await asyncio.to_thread(self.storage.fetch_skill_accuracy, learner_id, skill_id)
        row = row or {}
        return skill_accuracy(row.get("total_answered"), row.get("correct_count"))

    async def skill_progress(self, learner_id: Any, subject: str) -> List[SkillProgress]:
        rows = await asyncio.to_thread(self.storage.fetch_skill_progress, learner_id, subject)
        return [to_skill_progress(row) for row in rows or []]
