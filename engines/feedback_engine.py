"""Adaptive feedback engine: the five generation-backed learner operations."""

from __future__ import annotations

import asyncio
import json
import logging
from time import perf_counter
from typing import Any, Dict, List, Mapping, Optional, Sequence

from engines.aggregation import PerformanceAggregator, strong_skills
from engines.essay_rubric import RUBRIC, build_evaluation
from engines.fallback import feedback_fallback, motivational_fallback, progress_fallback
from engines.generation import GenerationClient, generate_with_timeout
from engines.normalization import (
    normalize_feedback,
    normalize_motivational,
    normalize_progress_analysis,
    normalize_themes,
    parse_model_json,
)
from engines.prompting import (
    PromptRequest,
    RECENT_SESSION_LIMIT,
    render_feedback_prompt,
    render_grading_prompt,
    render_motivation_prompt,
    render_progress_prompt,
    render_themes_prompt,
)
from engines.validation import (
    GenerationError,
    MalformedResponseError,
    ServiceUnavailableError,
    ValidationDefaulted,
)
from schemas import (
    EssayEvaluation,
    EssayTheme,
    FeedbackResult,
    MotivationalMessage,
    ProgressAnalysis,
    QuestionContext,
    Recommendation,
)
from taxonomy import TAXONOMY, TaxonomyCatalog

logger = logging.getLogger(__name__)


def _json_log(event: str, payload: Dict[str, Any]) -> None:
    record = {"event": event, **payload}
    try:
        message = json.dumps(record, ensure_ascii=False, sort_keys=True, default=str)
    except (TypeError, ValueError):
        fallback = {
            "event": event,
            "error": "serialization_failed",
            "payload_repr": repr(payload),
        }
        message = json.dumps(fallback, ensure_ascii=False, sort_keys=True)
    logger.info(message)


def _defaulted_fields(events: Sequence[ValidationDefaulted]) -> List[str]:
    return [event.field for event in events]


class FeedbackEngine:
    """Learner-facing operations on top of storage, taxonomy and the generation backend.

    Feedback, progress analysis and motivational messages never raise: any
    failure returns the static fallback. Essay themes and essay grading raise
    :class:`ServiceUnavailableError` instead.
    """

    def __init__(
        self,
        client: Optional[GenerationClient] = None,
        storage: Any = None,
        catalog: Optional[TaxonomyCatalog] = None,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        if storage is None:
            import db as storage
        self.client = client or GenerationClient()
        self.storage = storage
        self.catalog = catalog or TAXONOMY
        self.timeout = timeout
        self.aggregator = PerformanceAggregator(storage)

    # ------------------------------------------------------------------
    async def _generate(self, request: PromptRequest) -> Dict[str, Any]:
        raw = await generate_with_timeout(
            self.client,
            request.system_text,
            request.user_text,
            request.params,
            timeout=self.timeout,
        )
        return parse_model_json(raw)

    async def _read(self, name: str, *args: Any) -> Any:
        return await asyncio.to_thread(getattr(self.storage, name), *args)

    async def _write(self, name: str, *args: Any, **context: Any) -> Any:
        """Run a storage write; failures are logged and swallowed."""

        try:
            return await asyncio.to_thread(getattr(self.storage, name), *args)
        except Exception as exc:
            logger.warning("Storage write %s failed: %s", name, exc)
            _json_log("storage_write_failed", {"write": name, "error": str(exc), **context})
            return None

    # ------------------------------------------------------------------
    async def generate_answer_feedback(
        self,
        learner_id: Any,
        question: QuestionContext | Mapping[str, Any],
        *,
        answer_id: Optional[int] = None,
    ) -> FeedbackResult:
        """Explain an incorrect answer; falls back to static feedback on any failure."""

        if not isinstance(question, QuestionContext):
            question = QuestionContext.model_validate(dict(question))
        concepts = self.catalog.list_concepts(question.subject)
        events: list[ValidationDefaulted] = []
        start = perf_counter()
        log_context = {
            "operation": "answer_feedback",
            "learner_id": learner_id,
            "subject": question.subject,
            "question_id": question.question_id,
        }

        try:
            snapshot = await self.aggregator.snapshot(learner_id, question.subject)
            skill = await self.aggregator.skill_accuracy(learner_id, question.skill_id)
            skill_entry = await self._read("fetch_taxonomy_entry", question.skill_id) if question.skill_id else None
            profile = await self._read("fetch_learner_profile", learner_id, question.subject)
            request = render_feedback_prompt(
                question,
                snapshot=snapshot,
                skill=skill,
                catalog=self.catalog,
                skill_entry=skill_entry,
                profile=profile,
            )
            data = await self._generate(request)
            result = normalize_feedback(
                data,
                concepts=concepts,
                question_difficulty=question.difficulty,
                events=events,
            )
        except Exception as exc:
            logger.warning("Feedback generation failed, using fallback: %s", exc)
            _json_log("fallback_used", {**log_context, "error": type(exc).__name__, "detail": str(exc)})
            return feedback_fallback(
                correct_answer=question.correct_answer,
                question_difficulty=question.difficulty,
                concepts=concepts,
            )

        await self._write(
            "persist_feedback", learner_id, question.question_id, answer_id, result, **log_context
        )
        _json_log(
            "feedback_generated",
            {
                **log_context,
                "prompt_version": request.prompt_version,
                "latency_ms": int((perf_counter() - start) * 1000),
                "defaulted_fields": _defaulted_fields(events),
            },
        )
        return result

    async def analyze_progress(self, learner_id: Any, subject: str) -> ProgressAnalysis:
        """Analyse a learner's progress in ``subject`` and persist the recommendations."""

        events: list[ValidationDefaulted] = []
        start = perf_counter()
        log_context = {"operation": "progress_analysis", "learner_id": learner_id, "subject": subject}

        try:
            snapshot = await self.aggregator.snapshot(learner_id, subject)
            skills = await self.aggregator.skill_progress(learner_id, subject)
            sessions = await self._read("fetch_recent_sessions", learner_id, subject, RECENT_SESSION_LIMIT)
            request = render_progress_prompt(
                subject,
                snapshot=snapshot,
                skills=skills,
                sessions=sessions or [],
                catalog=self.catalog,
            )
            data = await self._generate(request)
            analysis = normalize_progress_analysis(
                data,
                known_skill_codes=[skill.skill_code for skill in skills],
                events=events,
            )
        except Exception as exc:
            logger.warning("Progress analysis failed, using fallback: %s", exc)
            _json_log("fallback_used", {**log_context, "error": type(exc).__name__, "detail": str(exc)})
            return progress_fallback()

        await self.persist_recommendations(learner_id, subject, analysis.recommendations)
        strengths = [skill.skill_code for skill in strong_skills(skills)]
        await self._write("persist_learning_profile", learner_id, subject, analysis, strengths, **log_context)
        _json_log(
            "progress_analyzed",
            {
                **log_context,
                "prompt_version": request.prompt_version,
                "latency_ms": int((perf_counter() - start) * 1000),
                "recommendations": len(analysis.recommendations),
                "defaulted_fields": _defaulted_fields(events),
            },
        )
        return analysis

    async def persist_recommendations(
        self,
        learner_id: Any,
        subject: str,
        recommendations: Sequence[Recommendation],
    ) -> int:
        """Write each recommendation independently; returns how many were stored."""

        stored = 0
        for recommendation in recommendations:
            rec_id = await self._write(
                "persist_recommendation",
                learner_id,
                subject,
                recommendation,
                operation="progress_analysis",
                learner_id=learner_id,
                subject=subject,
            )
            if rec_id is not None:
                stored += 1
        return stored

    async def generate_motivational_message(self, learner_id: Any, context: str = "geral") -> MotivationalMessage:
        events: list[ValidationDefaulted] = []
        log_context = {"operation": "motivational_message", "learner_id": learner_id, "context": context}
        try:
            profile = await self._read("fetch_learner_profile", learner_id, None) or {}
            overall = await self._read("fetch_overall_progress", learner_id) or {}
            request = render_motivation_prompt(context, learner_name=profile.get("name"), overall=overall)
            data = await self._generate(request)
            message = normalize_motivational(data, events=events)
        except Exception as exc:
            logger.warning("Motivational message failed, using fallback: %s", exc)
            _json_log("fallback_used", {**log_context, "error": type(exc).__name__, "detail": str(exc)})
            return motivational_fallback()

        _json_log(
            "motivation_generated",
            {**log_context, "prompt_version": request.prompt_version, "defaulted_fields": _defaulted_fields(events)},
        )
        return message

    async def generate_essay_themes(self) -> List[EssayTheme]:
        request = render_themes_prompt()
        try:
            data = await self._generate(request)
            themes = normalize_themes(data)
        except (GenerationError, MalformedResponseError) as exc:
            logger.error("Essay theme generation failed: %s", exc)
            _json_log(
                "service_unavailable",
                {"operation": "essay_themes", "error": type(exc).__name__, "detail": str(exc)},
            )
            raise ServiceUnavailableError("essay_themes") from exc

        _json_log("essay_themes_generated", {"operation": "essay_themes", "count": len(themes)})
        return themes

    async def grade_essay(self, learner_id: Any, theme: str, text: str) -> EssayEvaluation:
        """Grade an essay against the five-criterion rubric.

        There is no synthetic fallback: backend or parsing failures raise
        :class:`ServiceUnavailableError`.
        """

        events: list[ValidationDefaulted] = []
        log_context = {"operation": "essay_grading", "learner_id": learner_id}
        request = render_grading_prompt(theme, text, [criterion.title for criterion in RUBRIC])
        try:
            data = await self._generate(request)
        except (GenerationError, MalformedResponseError) as exc:
            logger.error("Essay grading failed: %s", exc)
            _json_log("service_unavailable", {**log_context, "error": type(exc).__name__, "detail": str(exc)})
            raise ServiceUnavailableError("essay_grading") from exc

        evaluation = build_evaluation(data, theme=theme, essay_text=text, events=events)
        evaluation_id = await self._write(
            "persist_essay_evaluation", learner_id, theme, text, evaluation, **log_context
        )
        if evaluation_id is not None:
            evaluation = evaluation.model_copy(update={"evaluation_id": evaluation_id})

        _json_log(
            "essay_graded",
            {
                **log_context,
                "prompt_version": request.prompt_version,
                "total_score": evaluation.total_score,
                "word_count": evaluation.word_count,
                "defaulted_fields": _defaulted_fields(events),
            },
        )
        return evaluation
