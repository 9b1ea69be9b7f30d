"""ENEM essay rubric: five criteria, 0-200 each in steps of 20, total out of 1000."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional, Sequence

from engines.normalization import coerce_number, normalize_list
from engines.validation import ValidationDefaulted, record_default
from schemas import EssayCriterion, EssayEvaluation

SCORE_STEP = 20
MAX_CRITERION_SCORE = 200
MISSING_JUSTIFICATION = "Avaliação não fornecida."


@dataclass(frozen=True)
class RubricCriterion:
    number: int
    title: str


RUBRIC: tuple[RubricCriterion, ...] = (
    RubricCriterion(1, "Competência 1 – Domínio da norma padrão"),
    RubricCriterion(2, "Competência 2 – Compreensão da proposta"),
    RubricCriterion(3, "Competência 3 – Seleção e organização de argumentos"),
    RubricCriterion(4, "Competência 4 – Coesão e coerência"),
    RubricCriterion(5, "Competência 5 – Proposta de intervenção"),
)


def count_words(text: Optional[str]) -> int:
    if not text:
        return 0
    return len(text.split())


def quantize_score(value: Any) -> int:
    """Clamp ``value`` to [0, 200] and round half-up to the nearest multiple of 20.

    Non-numeric input scores 0.
    """

    number = coerce_number(value)
    bounded = max(0.0, min(float(MAX_CRITERION_SCORE), number))
    return int(math.floor(bounded / SCORE_STEP + 0.5) * SCORE_STEP)


def _criterion_number(entry: Mapping[str, Any]) -> Optional[int]:
    raw = entry.get("number", entry.get("numero"))
    number = coerce_number(raw, default=-1.0)
    if number.is_integer() and 1 <= number <= len(RUBRIC):
        return int(number)
    return None


def _text(entry: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def normalize_criteria(
    raw: Any,
    *,
    events: Optional[list[ValidationDefaulted]] = None,
) -> List[EssayCriterion]:
    """Return exactly five criteria in rubric order.

    Entries are matched by their number, then by position among the entries
    no number claimed. Missing criteria score 0.
    """

    op = "essay_grading"
    entries = [item for item in raw if isinstance(item, dict)] if isinstance(raw, list) else []
    if not isinstance(raw, list):
        record_default(op, "criteria", "missing" if raw is None else "not a list", [], events)

    by_number: dict[int, Mapping[str, Any]] = {}
    for entry in entries:
        number = _criterion_number(entry)
        if number is not None and number not in by_number:
            by_number[number] = entry

    claimed = {id(by_number[ref.number]) for ref in RUBRIC if ref.number in by_number}

    criteria: List[EssayCriterion] = []
    for index, ref in enumerate(RUBRIC):
        entry = by_number.get(ref.number)
        if entry is None and index < len(entries) and id(entries[index]) not in claimed:
            entry = entries[index]
            claimed.add(id(entry))
        if entry is None:
            record_default(op, f"criteria[{ref.number}]", "missing", 0, events)
            entry = {}

        raw_score = entry.get("score", entry.get("nota"))
        score = quantize_score(raw_score)
        if raw_score is not None and coerce_number(raw_score, default=-1.0) != score:
            record_default(op, f"criteria[{ref.number}].score", f"quantized from {raw_score!r}", score, events)

        criteria.append(
            EssayCriterion(
                number=ref.number,
                title=_text(entry, "title", "titulo") or ref.title,
                score=score,
                justification=_text(entry, "justification", "justificativa") or MISSING_JUSTIFICATION,
                errors=normalize_list(entry.get("errors", entry.get("erros"))),
                remarks=_text(entry, "remarks", "observacoes"),
                cited_passages=normalize_list(entry.get("cited_passages", entry.get("trechos_citados"))),
            )
        )
    return criteria


def total_score(criteria: Sequence[EssayCriterion]) -> int:
    return sum(criterion.score for criterion in criteria)


def build_evaluation(
    data: Mapping[str, Any],
    *,
    theme: str,
    essay_text: str,
    events: Optional[list[ValidationDefaulted]] = None,
) -> EssayEvaluation:
    """Normalize a grading reply; the total is recomputed from the criteria."""

    criteria = normalize_criteria(data.get("criteria", data.get("competencias")), events=events)
    restated = _text(data, "theme", "tema") or theme
    return EssayEvaluation(
        restated_theme=restated,
        word_count=count_words(essay_text),
        criteria=criteria,
        total_score=total_score(criteria),
        general_comments=_text(data, "general_comments", "comentarios_gerais"),
        suggestions=normalize_list(data.get("suggestions", data.get("sugestoes"))),
        created_at=datetime.now(timezone.utc),
    )
