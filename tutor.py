"""Module-level entry points over a process-wide :class:`FeedbackEngine`."""

import logging
import threading
from typing import Any, List, Mapping, Optional

from engines.feedback_engine import FeedbackEngine
from schemas import (
    EssayEvaluation,
    EssayTheme,
    FeedbackResult,
    MotivationalMessage,
    ProgressAnalysis,
    QuestionContext,
)

logger = logging.getLogger(__name__)

_engine: Optional[FeedbackEngine] = None
_engine_lock = threading.Lock()


def get_engine() -> FeedbackEngine:
    global _engine
    if _engine is None:
        with _engine_lock:
            if _engine is None:
                _engine = FeedbackEngine()
                logger.debug("Default feedback engine created")
    return _engine


def set_engine(engine: Optional[FeedbackEngine]) -> None:
    """Replace the default engine (``None`` resets it)."""
    global _engine
    with _engine_lock:
        _engine = engine


async def generate_answer_feedback(
    learner_id: Any,
    question: QuestionContext | Mapping[str, Any],
    answer_id: Optional[int] = None,
) -> FeedbackResult:
    return await get_engine().generate_answer_feedback(learner_id, question, answer_id=answer_id)


async def analyze_progress(learner_id: Any, subject: str) -> ProgressAnalysis:
    return await get_engine().analyze_progress(learner_id, subject)


async def generate_motivational_message(learner_id: Any, context: str = "geral") -> MotivationalMessage:
    return await get_engine().generate_motivational_message(learner_id, context)


async def generate_essay_themes() -> List[EssayTheme]:
    return await get_engine().generate_essay_themes()


async def grade_essay(learner_id: Any, theme: str, text: str) -> EssayEvaluation:
    return await get_engine().grade_essay(learner_id, theme, text)
