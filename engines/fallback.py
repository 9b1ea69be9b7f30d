"""Static, structurally complete results used when generation or parsing fails."""

from __future__ import annotations

from typing import Any, Optional, Sequence

from engines.normalization import clamp, coerce_number, fallback_concepts
from schemas import FeedbackResult, MotivationalMessage, ProgressAnalysis, Recommendation
from taxonomy import ConceptReference

NEUTRAL_DIFFICULTY = 0.5

_REVIEW_STEPS = (
    "Grife no enunciado as pistas que conectam cada alternativa antes de decidir.",
    "Compare a alternativa escolhida com a correta identificando palavras-chave divergentes.",
    "Refaça uma questão parecida explicando em voz alta por que descartou cada opção.",
)


def feedback_fallback(
    *,
    correct_answer: Optional[str],
    question_difficulty: Any,
    concepts: Sequence[ConceptReference],
) -> FeedbackResult:
    difficulty = clamp(coerce_number(question_difficulty, NEUTRAL_DIFFICULTY), 0.0, 1.0)
    answer = (correct_answer or "").strip() or "indicada no gabarito"
    return FeedbackResult(
        feedback_text="Ótimo esforço! Continue estudando e você verá melhorias.",
        correct_answer_explanation=f"A resposta correta é {answer}. Continue praticando!",
        error_root_cause=(
            "O enunciado destacava pistas que não foram associadas à alternativa correta; "
            "revise como cada alternativa dialoga com o trecho citado."
        ),
        misconception_point=(
            "Termos semelhantes presentes nas alternativas podem sugerir uma relação incorreta "
            "com o texto-base, gerando escolha precipitada."
        ),
        review_steps=list(_REVIEW_STEPS),
        concepts_to_review=fallback_concepts(concepts),
        study_strategy="Continue praticando questões similares",
        suggested_difficulty=difficulty,
        improvement_areas="Continue praticando",
        is_fallback=True,
    )


def progress_fallback() -> ProgressAnalysis:
    return ProgressAnalysis(
        progress_summary="Continue praticando regularmente para melhorar seu desempenho.",
        recommendations=[
            Recommendation(type="practice", content="Continue praticando questões da matéria", priority=3)
        ],
        ideal_difficulty=NEUTRAL_DIFFICULTY,
        focus_areas=[],
        priority_skills=[],
        motivational_message="Você está no caminho certo! Continue estudando!",
        weekly_goal="Pratique pelo menos 20 questões esta semana",
        is_fallback=True,
    )


def motivational_fallback() -> MotivationalMessage:
    return MotivationalMessage(
        message="Você está fazendo um excelente trabalho! Continue assim e você alcançará seus objetivos! 🎯",
        type="encouragement",
        icon="🌟",
        is_fallback=True,
    )
