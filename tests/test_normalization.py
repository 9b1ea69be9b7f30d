import math

import pytest

from engines.normalization import (
    clamp,
    coerce_number,
    normalize_feedback,
    normalize_list,
    normalize_motivational,
    normalize_progress_analysis,
    normalize_text,
    normalize_themes,
    parse_model_json,
    resolve_concepts,
    truncate_text,
)
from engines.validation import MalformedResponseError
from taxonomy import ConceptReference

EF_TAXONOMY = [ConceptReference("EF01", "Interpretação textual básica")]


# ---------------------------------------------------------------------------
# parsing
# ---------------------------------------------------------------------------

def test_parse_plain_object():
    assert parse_model_json('{"a": 1}') == {"a": 1}


def test_parse_strips_think_blocks_and_fences():
    raw = '<think>pensando {"x": 0}</think>\n```json\n{"feedback": "ok"}\n```'
    assert parse_model_json(raw) == {"feedback": "ok"}


def test_parse_extracts_first_balanced_object():
    raw = 'Claro! Aqui está: {"message": "Vamos lá {sem medo}", "type": "tip"} Bons estudos.'
    assert parse_model_json(raw) == {"message": "Vamos lá {sem medo}", "type": "tip"}


@pytest.mark.parametrize("raw", ["", "   ", None, "not json at all", "[1, 2, 3]", '"texto"'])
def test_parse_rejects_non_objects(raw):
    with pytest.raises(MalformedResponseError):
        parse_model_json(raw)


# ---------------------------------------------------------------------------
# primitives
# ---------------------------------------------------------------------------

def test_normalize_list_examples():
    assert normalize_list(["a", "", "  b  ", "c"]) == ["a", "b", "c"]
    assert normalize_list("a\nb;c•d-e") == ["a", "b", "c", "d", "e"]
    assert normalize_list(None) == []
    assert normalize_list(42) == []
    assert normalize_list(["a", 3, None, "b"]) == ["a", "b"]


def test_normalize_text_strips_diacritics():
    assert normalize_text("Razão e Proporção") == "razao e proporcao"
    assert normalize_text(None) == ""


def test_coerce_number_and_clamp():
    assert coerce_number("0.75") == 0.75
    assert coerce_number("abc") == 0.0
    assert coerce_number(None, default=0.5) == 0.5
    assert coerce_number(True) == 0.0
    assert coerce_number(float("nan")) == 0.0
    assert coerce_number(math.inf) == 0.0
    assert clamp(1.7, 0.0, 1.0) == 1.0
    assert clamp(-3, 0, 10) == 0


def test_truncate_text():
    assert truncate_text("curto", 10) == "curto"
    assert truncate_text("a" * 130) == "a" * 120 + "..."
    assert truncate_text(None) == ""


# ---------------------------------------------------------------------------
# concept resolution
# ---------------------------------------------------------------------------

def test_resolve_by_code_prefix():
    assert resolve_concepts(["ef01 - outra coisa"], EF_TAXONOMY) == ["EF01 - Interpretação textual básica"]


def test_resolve_by_description_ignoring_accents(mt_catalog):
    concepts = mt_catalog.list_concepts("MT")
    resolved = resolve_concepts(["Revisar funcoes do primeiro e do segundo grau com exemplos"], concepts)
    assert resolved == ["MT02 - Funções do primeiro e do segundo grau"]


def test_unresolvable_candidates_fall_back_to_first_three(mt_catalog):
    concepts = mt_catalog.list_concepts("MT")
    resolved = resolve_concepts(["Trigonometria esférica"], concepts)
    assert resolved == [c.label for c in concepts[:3]]
    assert resolve_concepts(None, concepts) == [c.label for c in concepts[:3]]


def test_resolution_drops_unknown_and_deduplicates(mt_catalog):
    concepts = mt_catalog.list_concepts("MT")
    resolved = resolve_concepts(["MT03 - áreas", "XX99 - inventado", "mt03"], concepts)
    assert resolved == ["MT03 - Geometria plana: áreas e perímetros"]


def test_empty_taxonomy_passes_input_through():
    assert resolve_concepts(["ef01 - outra coisa"], []) == ["ef01 - outra coisa"]
    assert resolve_concepts(None, []) == []
    assert resolve_concepts("ef01 - outra coisa; ef02", []) == []
    assert resolve_concepts(["  sem código  ", 7], []) == ["  sem código  "]


def test_single_string_candidates_keep_code_and_description_together():
    resolved = resolve_concepts("EF01 - Interpretação", EF_TAXONOMY)
    assert resolved == ["EF01 - Interpretação textual básica"]


# ---------------------------------------------------------------------------
# feedback
# ---------------------------------------------------------------------------

def test_feedback_normalization_defaults_and_caps(mt_catalog):
    events = []
    data = {
        "feedback": "  Boa tentativa!  ",
        "review_steps": "Passo um\nPasso dois\nPasso três\nPasso quatro",
        "concepts_to_review": ["mt01 - porcentagem"],
        "suggested_difficulty": "1.8",
        "improvement_areas": ["proporção", "leitura de tabelas"],
    }
    result = normalize_feedback(
        data,
        concepts=mt_catalog.list_concepts("MT"),
        question_difficulty=0.4,
        events=events,
    )

    assert result.feedback_text == "Boa tentativa!"
    assert result.review_steps == ["Passo um", "Passo dois", "Passo três"]
    assert result.concepts_to_review == ["MT01 - Razão, proporção e porcentagem"]
    assert result.suggested_difficulty == 1.0
    assert result.improvement_areas == "proporção, leitura de tabelas"
    assert result.correct_answer_explanation == ""
    assert result.is_fallback is False

    defaulted = {event.field for event in events}
    assert "correct_answer_explanation" in defaulted
    assert "review_steps" in defaulted
    assert "suggested_difficulty" in defaulted


def test_feedback_accepts_portuguese_keys(mt_catalog):
    data = {
        "feedback": "Quase!",
        "explicacao_correta": "A alternativa C aplica a regra de três.",
        "motivo_erro": "Confundiu grandezas inversas.",
        "ponto_confusao": "Velocidade e tempo.",
        "passos_revisao": ["Identificar grandezas"],
        "conceitos_revisar": ["MT01 - Razão"],
        "estrategia_estudo": "Resolver 10 questões de regra de três.",
        "nivel_dificuldade_sugerido": 0.3,
        "areas_melhoria": "Proporcionalidade",
    }
    result = normalize_feedback(data, concepts=mt_catalog.list_concepts("MT"), question_difficulty=0.5)
    assert result.correct_answer_explanation.startswith("A alternativa C")
    assert result.error_root_cause == "Confundiu grandezas inversas."
    assert result.suggested_difficulty == 0.3
    assert result.study_strategy.startswith("Resolver")


def test_missing_difficulty_uses_question_difficulty(mt_catalog):
    result = normalize_feedback({}, concepts=mt_catalog.list_concepts("MT"), question_difficulty=0.65)
    assert result.suggested_difficulty == 0.65
    assert len(result.concepts_to_review) == 3


def test_non_numeric_difficulty_becomes_zero(mt_catalog):
    result = normalize_feedback(
        {"suggested_difficulty": "alta"}, concepts=mt_catalog.list_concepts("MT"), question_difficulty=0.65
    )
    assert result.suggested_difficulty == 0.0


# ---------------------------------------------------------------------------
# progress / motivation / themes
# ---------------------------------------------------------------------------

def test_progress_analysis_normalization():
    data = {
        "progress_summary": "Bom avanço em C2.",
        "recommendations": [
            {"type": "estudo", "content": "Rever H7", "priority": 9, "focus_skills": ["h7", "H99"]},
            {"tipo": "revisão", "conteudo": "Refazer simulado", "prioridade": "2"},
            {"type": "dançar", "content": "Algo", "priority": "x"},
            {"type": "study", "content": "   "},
            "Praticar 10 questões",
        ],
        "ideal_difficulty": -1,
        "focus_areas": "Geometria; Funções",
        "priority_skills": ["H7", "H 12", "H99"],
        "weekly_goal": "20 questões",
    }
    analysis = normalize_progress_analysis(data, known_skill_codes=["H7", "H12"])

    assert analysis.progress_summary == "Bom avanço em C2."
    assert [(r.type, r.priority) for r in analysis.recommendations] == [
        ("study", 5),
        ("review", 2),
        ("practice", 3),
        ("practice", 3),
    ]
    assert analysis.recommendations[0].focus_skills == ["H7"]
    assert analysis.ideal_difficulty == 0.0
    assert analysis.focus_areas == ["Geometria", "Funções"]
    assert analysis.priority_skills == ["H7", "H12"]
    assert analysis.motivational_message == ""


def test_progress_without_known_codes_keeps_codes():
    analysis = normalize_progress_analysis({"priority_skills": ["h3"]})
    assert analysis.priority_skills == ["H3"]
    assert analysis.recommendations == []


def test_motivational_normalization():
    message = normalize_motivational({"mensagem": "Parabéns pelo foco!", "tipo": "parabéns", "icone": "🏆"})
    assert message.message == "Parabéns pelo foco!"
    assert message.type == "congratulations"
    assert message.icon == "🏆"

    unknown = normalize_motivational({"message": "Siga firme", "type": "outro"})
    assert unknown.type == "encouragement"

    with pytest.raises(MalformedResponseError):
        normalize_motivational({"type": "tip"})


def test_themes_normalization_applies_fallbacks():
    data = {
        "themes": [
            {"title": "Desafios da mobilidade urbana", "supporting_texts": [{"content": "Dados do IBGE"}, "x"]},
            {"id": "custom", "titulo": "Acesso à cultura", "textos_apoio": [{"titulo": "Lei", "fonte": "Brasil"}]},
            "inválido",
        ]
    }
    themes = normalize_themes(data)
    assert [t.id for t in themes] == ["tema-1", "custom", "tema-3"]
    assert themes[2].title == "Tema 3"
    first_text = themes[0].supporting_texts[0]
    assert first_text.title == "Texto de apoio 1"
    assert first_text.type == "referencia"
    assert len(themes[0].supporting_texts) == 1
    assert themes[1].supporting_texts[0].source == "Brasil"


def test_themes_are_capped_and_required():
    themes = normalize_themes({"temas": [{"title": f"T{i}"} for i in range(14)]})
    assert len(themes) == 10
    with pytest.raises(MalformedResponseError):
        normalize_themes({"themes": "nenhum"})
