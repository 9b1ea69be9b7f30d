"""Validation and normalization of free-form JSON returned by the generation backend.

The backend is told the exact output schema, but nothing it returns is
trusted: every field is re-validated, missing or wrong-typed values are
defaulted (and recorded as :class:`ValidationDefaulted` events), concept
references are rewritten to canonical taxonomy labels, and numbers are
clamped to their domain.
"""

from __future__ import annotations

import json
import math
import re
import unicodedata
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from engines.validation import MalformedResponseError, ValidationDefaulted, record_default
from schemas import (
    EssayTheme,
    FeedbackResult,
    MotivationalMessage,
    ProgressAnalysis,
    Recommendation,
    SupportingText,
)
from taxonomy import ConceptReference

MAX_REVIEW_STEPS = 3
CONCEPT_FALLBACK_COUNT = 3
DESCRIPTION_MATCH_CHARS = 80
MAX_THEMES = 10

_LIST_SEPARATORS = re.compile(r"[\n;•\-]+")
_CONCEPT_SEPARATORS = re.compile(r"[\n;•]+")
_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.DOTALL)
_CODE_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")


# ---------------------------------------------------------------------------
# JSON parsing
# ---------------------------------------------------------------------------

def _find_first_json_object(text: str) -> Optional[str]:
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(text)):
            char = text[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    candidate = text[start : idx + 1]
                    try:
                        json.loads(candidate)
                    except ValueError:
                        break
                    return candidate
        start = text.find("{", start + 1)
    return None


def parse_model_json(raw_text: Any) -> dict:
    """Parse the backend reply into a JSON object.

    Tries the text verbatim, then without ``<think>`` blocks and code fences,
    then the first balanced object. Raises :class:`MalformedResponseError`
    when no JSON object can be recovered.
    """

    if not isinstance(raw_text, str) or not raw_text.strip():
        raise MalformedResponseError("empty response from generation backend", raw_text=None)

    text = _THINK_BLOCK.sub("", raw_text).strip()
    candidates = [raw_text, text]
    fenced = _CODE_FENCE.search(text)
    if fenced:
        candidates.append(fenced.group(1))

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(data, dict):
            return data
        raise MalformedResponseError(
            f"expected a JSON object, got {type(data).__name__}", raw_text=raw_text
        )

    snippet = _find_first_json_object(text)
    if snippet is not None:
        return json.loads(snippet)
    raise MalformedResponseError("response is not valid JSON", raw_text=raw_text[:500])


# ---------------------------------------------------------------------------
# Primitive coercions
# ---------------------------------------------------------------------------

def normalize_text(text: Any) -> str:
    """Strip diacritics and lower-case ``text`` for fuzzy comparisons."""

    decomposed = unicodedata.normalize("NFD", str(text or ""))
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower()


def normalize_list(value: Any) -> List[str]:
    """Return ``value`` as a list of trimmed, non-empty strings.

    Strings are split on newline, semicolon, bullet and dash separators.
    """

    if not value:
        return []
    if isinstance(value, str):
        return [part.strip() for part in _LIST_SEPARATORS.split(value) if part.strip()]
    if isinstance(value, (list, tuple)):
        return [item.strip() for item in value if isinstance(item, str) and item.strip()]
    return []


def coerce_number(value: Any, default: float = 0.0) -> float:
    """Coerce ``value`` to a finite float; anything unusable becomes ``default``."""

    if isinstance(value, bool) or value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number) or math.isinf(number):
        return default
    return number


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def truncate_text(text: Any, limit: int = 120) -> str:
    value = str(text or "")
    if len(value) <= limit:
        return value
    return f"{value[:limit].strip()}..."


def _pick(data: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _text_field(
    data: Mapping[str, Any],
    keys: Sequence[str],
    *,
    operation: str,
    events: Optional[list[ValidationDefaulted]],
    default: str = "",
) -> str:
    value = _pick(data, keys)
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, list):
        joined = ", ".join(normalize_list(value))
        if joined:
            return joined
    reason = "missing" if value is None else f"unusable {type(value).__name__}"
    record_default(operation, keys[0], reason, default, events)
    return default


def _list_field(
    data: Mapping[str, Any],
    keys: Sequence[str],
    *,
    operation: str,
    events: Optional[list[ValidationDefaulted]],
) -> List[str]:
    value = _pick(data, keys)
    items = normalize_list(value)
    if value is None:
        record_default(operation, keys[0], "missing", [], events)
    elif not isinstance(value, (list, tuple, str)):
        record_default(operation, keys[0], f"unusable {type(value).__name__}", [], events)
    return items


def _unit_field(
    data: Mapping[str, Any],
    keys: Sequence[str],
    *,
    operation: str,
    events: Optional[list[ValidationDefaulted]],
    default: float,
) -> float:
    value = _pick(data, keys)
    if value is None:
        record_default(operation, keys[0], "missing", default, events)
        return default
    number = coerce_number(value)
    if number != value:
        record_default(operation, keys[0], "coerced", number, events)
    return round(clamp(number, 0.0, 1.0), 4)


# ---------------------------------------------------------------------------
# Concept references
# ---------------------------------------------------------------------------

def fallback_concepts(concepts: Sequence[ConceptReference], limit: int = CONCEPT_FALLBACK_COUNT) -> List[str]:
    return [concept.label for concept in list(concepts)[:limit]]


def _concept_candidates(value: Any) -> List[str]:
    if isinstance(value, str):
        return [part.strip() for part in _CONCEPT_SEPARATORS.split(value) if part.strip()]
    return normalize_list(value)


def _match_concept(candidate: str, concepts: Sequence[ConceptReference], by_code: Mapping[str, ConceptReference]) -> Optional[ConceptReference]:
    head = candidate.split("-", 1)[0].strip().upper()
    if head and head in by_code:
        return by_code[head]

    normalized_candidate = normalize_text(candidate)
    for concept in concepts:
        target = normalize_text(concept.description)[:DESCRIPTION_MATCH_CHARS]
        if target and target in normalized_candidate:
            return concept
    return None


def resolve_concepts(candidates: Any, concepts: Sequence[ConceptReference]) -> List[str]:
    """Rewrite free-text concept references into ``"<code> - <description>"`` labels.

    Unresolvable candidates are dropped; if nothing resolves the first three
    catalog entries are returned. With an empty catalog a list passes
    through unchanged and anything else yields ``[]``.
    """

    if not concepts:
        if isinstance(candidates, (list, tuple)):
            return [item for item in candidates if isinstance(item, str)]
        return []

    by_code = {concept.code.upper(): concept for concept in concepts}
    resolved: List[str] = []
    for candidate in _concept_candidates(candidates):
        match = _match_concept(candidate, concepts, by_code)
        if match is not None and match.label not in resolved:
            resolved.append(match.label)

    if resolved:
        return resolved
    return fallback_concepts(concepts)


# ---------------------------------------------------------------------------
# Answer feedback
# ---------------------------------------------------------------------------

def normalize_feedback(
    data: Mapping[str, Any],
    *,
    concepts: Sequence[ConceptReference],
    question_difficulty: float,
    events: Optional[list[ValidationDefaulted]] = None,
) -> FeedbackResult:
    op = "answer_feedback"
    review_steps = _list_field(data, ("review_steps", "passos_revisao"), operation=op, events=events)
    if len(review_steps) > MAX_REVIEW_STEPS:
        record_default(op, "review_steps", f"truncated from {len(review_steps)}", MAX_REVIEW_STEPS, events)

    raw_concepts = _pick(data, ("concepts_to_review", "conceitos_revisar"))
    if raw_concepts is None:
        record_default(op, "concepts_to_review", "missing", [], events)

    return FeedbackResult(
        feedback_text=_text_field(data, ("feedback", "feedback_text"), operation=op, events=events),
        correct_answer_explanation=_text_field(
            data, ("correct_answer_explanation", "explicacao_correta"), operation=op, events=events
        ),
        error_root_cause=_text_field(data, ("error_root_cause", "motivo_erro"), operation=op, events=events),
        misconception_point=_text_field(
            data, ("misconception_point", "ponto_confusao"), operation=op, events=events
        ),
        review_steps=review_steps[:MAX_REVIEW_STEPS],
        concepts_to_review=resolve_concepts(raw_concepts, concepts),
        study_strategy=_text_field(data, ("study_strategy", "estrategia_estudo"), operation=op, events=events),
        suggested_difficulty=_unit_field(
            data,
            ("suggested_difficulty", "nivel_dificuldade_sugerido"),
            operation=op,
            events=events,
            default=clamp(coerce_number(question_difficulty, 0.5), 0.0, 1.0),
        ),
        improvement_areas=_text_field(data, ("improvement_areas", "areas_melhoria"), operation=op, events=events),
    )


# ---------------------------------------------------------------------------
# Progress analysis
# ---------------------------------------------------------------------------

_RECOMMENDATION_TYPES = {
    "study": "study",
    "estudo": "study",
    "practice": "practice",
    "pratica": "practice",
    "review": "review",
    "revisao": "review",
}


def _skill_codes(value: Any, known: Optional[Iterable[str]]) -> List[str]:
    codes = [re.sub(r"\s+", "", item).upper() for item in normalize_list(value)]
    if known is not None:
        allowed = {code.upper() for code in known}
        codes = [code for code in codes if code in allowed]
    deduped: List[str] = []
    for code in codes:
        if code not in deduped:
            deduped.append(code)
    return deduped


def normalize_recommendations(
    value: Any,
    *,
    known_skill_codes: Optional[Iterable[str]] = None,
    events: Optional[list[ValidationDefaulted]] = None,
) -> List[Recommendation]:
    op = "progress_analysis"
    if not isinstance(value, list):
        record_default(op, "recommendations", "missing" if value is None else "not a list", [], events)
        return []

    known = None if known_skill_codes is None else list(known_skill_codes)
    recommendations: List[Recommendation] = []
    for idx, entry in enumerate(value):
        if isinstance(entry, str):
            entry = {"content": entry}
        if not isinstance(entry, dict):
            record_default(op, f"recommendations[{idx}]", "not an object", None, events)
            continue
        content = _pick(entry, ("content", "conteudo"))
        if not isinstance(content, str) or not content.strip():
            record_default(op, f"recommendations[{idx}].content", "missing", None, events)
            continue

        raw_type = normalize_text(_pick(entry, ("type", "tipo")) or "").strip()
        rec_type = _RECOMMENDATION_TYPES.get(raw_type)
        if rec_type is None:
            record_default(op, f"recommendations[{idx}].type", f"unknown '{raw_type}'", "practice", events)
            rec_type = "practice"

        raw_priority = _pick(entry, ("priority", "prioridade"))
        priority = int(round(clamp(coerce_number(raw_priority, 3.0), 1.0, 5.0)))

        recommendations.append(
            Recommendation(
                type=rec_type,
                content=content.strip(),
                priority=priority,
                focus_skills=_skill_codes(_pick(entry, ("focus_skills", "habilidades_foco")), known),
            )
        )
    return recommendations


def normalize_progress_analysis(
    data: Mapping[str, Any],
    *,
    known_skill_codes: Optional[Iterable[str]] = None,
    events: Optional[list[ValidationDefaulted]] = None,
) -> ProgressAnalysis:
    op = "progress_analysis"
    known = None if known_skill_codes is None else list(known_skill_codes)
    return ProgressAnalysis(
        progress_summary=_text_field(data, ("progress_summary", "analise_progresso"), operation=op, events=events),
        recommendations=normalize_recommendations(
            _pick(data, ("recommendations", "recomendacoes")),
            known_skill_codes=known,
            events=events,
        ),
        ideal_difficulty=_unit_field(
            data, ("ideal_difficulty", "nivel_dificuldade_ideal"), operation=op, events=events, default=0.5
        ),
        focus_areas=_list_field(data, ("focus_areas", "areas_foco"), operation=op, events=events),
        priority_skills=_skill_codes(_pick(data, ("priority_skills", "habilidades_prioritarias")), known),
        motivational_message=_text_field(
            data, ("motivational_message", "mensagem_motivacional"), operation=op, events=events
        ),
        weekly_goal=_text_field(data, ("weekly_goal", "meta_semanal"), operation=op, events=events),
    )


# ---------------------------------------------------------------------------
# Motivational message
# ---------------------------------------------------------------------------

_MESSAGE_TYPES = {
    "congratulations": "congratulations",
    "parabens": "congratulations",
    "encouragement": "encouragement",
    "encorajamento": "encouragement",
    "tip": "tip",
    "dica": "tip",
    "goal": "goal",
    "meta": "goal",
}


def normalize_motivational(
    data: Mapping[str, Any],
    *,
    events: Optional[list[ValidationDefaulted]] = None,
) -> MotivationalMessage:
    op = "motivational_message"
    message = _pick(data, ("message", "mensagem"))
    if not isinstance(message, str) or not message.strip():
        raise MalformedResponseError("motivational reply has no message")

    raw_type = normalize_text(_pick(data, ("type", "tipo")) or "").strip()
    message_type = _MESSAGE_TYPES.get(raw_type)
    if message_type is None:
        record_default(op, "type", f"unknown '{raw_type}'", "encouragement", events)
        message_type = "encouragement"

    return MotivationalMessage(
        message=message.strip(),
        type=message_type,
        icon=_text_field(data, ("icon", "icone"), operation=op, events=events),
    )


# ---------------------------------------------------------------------------
# Essay themes
# ---------------------------------------------------------------------------

def _first_text(entry: Mapping[str, Any], keys: Sequence[str], default: str = "") -> str:
    value = _pick(entry, keys)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def normalize_themes(data: Mapping[str, Any], limit: int = MAX_THEMES) -> List[EssayTheme]:
    """Normalize generated essay themes; a missing theme list is malformed."""

    raw_themes = _pick(data, ("themes", "temas"))
    if not isinstance(raw_themes, list):
        raise MalformedResponseError("reply has no theme list")

    themes: List[EssayTheme] = []
    for index, entry in enumerate(raw_themes[:limit], start=1):
        if not isinstance(entry, dict):
            entry = {}
        texts: List[SupportingText] = []
        raw_texts = _pick(entry, ("supporting_texts", "textos_apoio"))
        if isinstance(raw_texts, list):
            for text_index, text in enumerate(raw_texts, start=1):
                if not isinstance(text, dict):
                    continue
                texts.append(
                    SupportingText(
                        title=_first_text(text, ("title", "titulo"), f"Texto de apoio {text_index}"),
                        type=_first_text(text, ("type", "tipo"), "referencia"),
                        content=_first_text(text, ("content", "conteudo")),
                        source=_first_text(text, ("source", "fonte", "origem")),
                    )
                )
        themes.append(
            EssayTheme(
                id=_first_text(entry, ("id",), f"tema-{index}"),
                title=_first_text(entry, ("title", "titulo", "nome"), f"Tema {index}"),
                description=_first_text(entry, ("description", "descricao", "resumo")),
                problem_statement=_first_text(entry, ("problem_statement", "problematica", "problema")),
                intervention_guidelines=_first_text(
                    entry, ("intervention_guidelines", "diretrizes_intervencao", "diretrizes")
                ),
                supporting_texts=texts,
            )
        )
    return themes
