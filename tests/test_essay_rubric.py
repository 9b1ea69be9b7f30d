import pytest

from engines.essay_rubric import (
    MISSING_JUSTIFICATION,
    RUBRIC,
    build_evaluation,
    count_words,
    normalize_criteria,
    quantize_score,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        (187, 180),
        (190, 200),
        (10, 20),
        (9.99, 0),
        (-40, 0),
        (260, 200),
        ("120", 120),
        ("nota alta", 0),
        (None, 0),
        (float("nan"), 0),
    ],
)
def test_quantize_score(raw, expected):
    assert quantize_score(raw) == expected


def test_quantize_is_idempotent():
    for value in range(0, 201):
        once = quantize_score(value)
        assert once % 20 == 0
        assert quantize_score(once) == once


def test_count_words():
    assert count_words("") == 0
    assert count_words("   \n\t ") == 0
    assert count_words(None) == 0
    assert count_words("A educação  transforma\nvidas.") == 4


def _numbers(criteria):
    return [criterion.number for criterion in criteria]


def test_missing_criteria_are_filled_from_catalog():
    events = []
    criteria = normalize_criteria([{"number": 3, "score": 140, "justification": "Bons argumentos."}], events=events)

    assert _numbers(criteria) == [1, 2, 3, 4, 5]
    assert criteria[2].score == 140
    assert criteria[2].justification == "Bons argumentos."
    for idx in (0, 1, 3, 4):
        assert criteria[idx].score == 0
        assert criteria[idx].justification == MISSING_JUSTIFICATION
        assert criteria[idx].title == RUBRIC[idx].title
    assert {e.field for e in events} >= {"criteria[1]", "criteria[5]"}


def test_reordered_and_extra_criteria():
    raw = [
        {"number": 5, "score": 100},
        {"number": 4, "score": 120},
        {"number": 3, "score": 140},
        {"number": 2, "score": 160},
        {"number": 1, "score": 180},
        {"number": 6, "score": 200},
        {"number": 1, "score": 0},
    ]
    criteria = normalize_criteria(raw)
    assert _numbers(criteria) == [1, 2, 3, 4, 5]
    assert [c.score for c in criteria] == [180, 160, 140, 120, 100]


def test_positional_fallback_for_unnumbered_entries():
    raw = [{"nota": 200, "justificativa": "Excelente domínio."}, {"titulo": "C2", "nota": 77}]
    criteria = normalize_criteria(raw)
    assert criteria[0].score == 200
    assert criteria[0].justification == "Excelente domínio."
    assert criteria[1].title == "C2"
    assert criteria[1].score == 80
    assert criteria[2].score == 0


def test_misnumbered_entries_fall_back_to_position():
    raw = [{"number": 1, "score": score, "justification": f"J{score}"} for score in (200, 160, 140, 120, 100)]
    criteria = normalize_criteria(raw)
    assert [c.score for c in criteria] == [200, 160, 140, 120, 100]
    assert criteria[3].justification == "J120"


def test_entry_claimed_by_number_is_not_reused_by_position():
    raw = [{"number": 2, "score": 160}, {"number": 2, "score": 40}, {"number": 9, "score": 120}]
    criteria = normalize_criteria(raw)
    # slot 1 skips the entry number 2 claimed; slots 2 and 3 keep theirs
    assert [c.score for c in criteria] == [0, 160, 120, 0, 0]


@pytest.mark.parametrize("raw", [None, "texto", 42, [1, "dois", None]])
def test_malformed_criteria_still_yield_five(raw):
    criteria = normalize_criteria(raw)
    assert _numbers(criteria) == [1, 2, 3, 4, 5]
    assert all(c.score == 0 for c in criteria)


def test_build_evaluation_recomputes_total():
    data = {
        "theme": "Os desafios da educação digital no Brasil",
        "criteria": [
            {"number": i, "score": score, "errors": "Erro A; Erro B", "cited_passages": ["“trecho”"]}
            for i, score in zip(range(1, 6), (187, 160, 140, 120, 100))
        ],
        "total": 999,
        "general_comments": "Texto consistente.",
        "suggestions": "Ampliar repertório\nDetalhar agente",
    }
    essay = "Palavra " * 250
    evaluation = build_evaluation(data, theme="Tema original", essay_text=essay)

    assert evaluation.restated_theme == "Os desafios da educação digital no Brasil"
    assert evaluation.word_count == 250
    assert evaluation.total_score == 180 + 160 + 140 + 120 + 100
    assert evaluation.total_score % 20 == 0
    assert evaluation.criteria[0].errors == ["Erro A", "Erro B"]
    assert evaluation.suggestions == ["Ampliar repertório", "Detalhar agente"]
    assert evaluation.evaluation_id is None


def test_build_evaluation_accepts_portuguese_keys_and_keeps_theme():
    data = {"competencias": [{"numero": 2, "nota": 200}], "comentarios_gerais": "Ok", "sugestoes": ["Revisar"]}
    evaluation = build_evaluation(data, theme="Tema original", essay_text="Uma frase curta.")
    assert evaluation.restated_theme == "Tema original"
    assert evaluation.criteria[1].score == 200
    assert evaluation.total_score == 200
    assert evaluation.general_comments == "Ok"
