# app.py - ENEM adaptive feedback service
# - Thin HTTP adapter over tutor/engines
# - Feedback, progress and motivation never fail; essay endpoints answer 503 when the backend is down

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

import config
import db
import tutor
from engines.validation import ServiceUnavailableError
from schemas import (
    EssayEvaluation,
    EssayTheme,
    FeedbackResult,
    MotivationalMessage,
    ProgressAnalysis,
    QuestionContext,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        config.validate_environment()
        db.init()
        logger.info("Generation backend: %s (model %s, timeout %ss)",
                    config.LLM_API_URL, config.MODEL_ID, config.LLM_TIMEOUT)
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    finally:
        db._pool.close_all()


app = FastAPI(title="ENEM Adaptive Feedback", version="1.0.0", lifespan=_lifespan)


class AnswerBody(BaseModel):
    learner_id: str = Field(min_length=1)
    question_id: int
    chosen_answer: str = Field(min_length=1, max_length=1)
    response_time_seconds: Optional[float] = Field(default=None, ge=0)


class FeedbackBody(BaseModel):
    learner_id: str = Field(min_length=1)
    question_id: int
    chosen_answer: str = Field(min_length=1, max_length=1)
    answer_id: Optional[int] = None


class EssayGradeBody(BaseModel):
    learner_id: str = Field(min_length=1)
    theme: str = Field(min_length=1)
    text: str = Field(min_length=1)


class AnswerResponse(BaseModel):
    answer_id: int
    correct: bool
    feedback: Optional[FeedbackResult] = None


async def _load_question(question_id: int, chosen_answer: str) -> QuestionContext:
    question = await asyncio.to_thread(db.get_question, question_id)
    if question is None:
        raise HTTPException(status_code=404, detail="question not found")
    return QuestionContext(**question, chosen_answer=chosen_answer.strip().upper())


@app.post("/answers", response_model=AnswerResponse)
async def submit_answer(body: AnswerBody):
    try:
        recorded = await asyncio.to_thread(
            db.record_answer,
            body.learner_id,
            body.question_id,
            body.chosen_answer,
            body.response_time_seconds,
        )
    except KeyError:
        raise HTTPException(status_code=404, detail="question not found")

    feedback = None
    if not recorded["correct"]:
        question = QuestionContext(**recorded["question"], chosen_answer=body.chosen_answer.strip().upper())
        feedback = await tutor.generate_answer_feedback(body.learner_id, question, recorded["answer_id"])
    return AnswerResponse(answer_id=recorded["answer_id"], correct=recorded["correct"], feedback=feedback)


@app.post("/feedback", response_model=FeedbackResult)
async def answer_feedback(body: FeedbackBody):
    question = await _load_question(body.question_id, body.chosen_answer)
    return await tutor.generate_answer_feedback(body.learner_id, question, body.answer_id)


@app.get("/progress/{learner_id}/{subject}", response_model=ProgressAnalysis)
async def progress(learner_id: str, subject: str):
    return await tutor.analyze_progress(learner_id, subject.upper())


@app.get("/motivation/{learner_id}", response_model=MotivationalMessage)
async def motivation(learner_id: str, context: str = "geral"):
    return await tutor.generate_motivational_message(learner_id, context)


@app.get("/recommendations/{learner_id}")
async def recommendations(learner_id: str, subject: Optional[str] = None, limit: int = 20) -> List[dict[str, Any]]:
    return await asyncio.to_thread(db.list_recommendations, learner_id, subject, limit)


@app.get("/essay/themes", response_model=List[EssayTheme])
async def essay_themes():
    try:
        return await tutor.generate_essay_themes()
    except ServiceUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))


@app.post("/essay/grade", response_model=EssayEvaluation)
async def essay_grade(body: EssayGradeBody):
    try:
        return await tutor.grade_essay(body.learner_id, body.theme, body.text)
    except ServiceUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))


@app.get("/essay/{essay_id}")
async def essay_detail(essay_id: int):
    essay = await asyncio.to_thread(db.get_essay, essay_id)
    if essay is None:
        raise HTTPException(status_code=404, detail="essay not found")
    return essay
