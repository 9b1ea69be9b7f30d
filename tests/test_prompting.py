import re
from datetime import datetime, timezone

from engines.aggregation import to_skill_progress
from engines.essay_rubric import RUBRIC
from engines.prompting import (
    InstructionList,
    render_feedback_prompt,
    render_grading_prompt,
    render_motivation_prompt,
    render_progress_prompt,
    render_themes_prompt,
)
from prompts.masterprompts import get_prompt, load_prompts
from schemas import PerformanceSnapshot, QuestionContext, SkillAccuracy


def _instruction_numbers(text: str) -> list[int]:
    block = text.split("INSTRUÇÕES:", 1)[1].split("FORMATO DE RESPOSTA", 1)[0]
    return [int(match) for match in re.findall(r"^(\d+)\. ", block, flags=re.MULTILINE)]


def _question(subject="MT") -> QuestionContext:
    return QuestionContext(
        question_id=12,
        subject=subject,
        skill_id=7,
        skill_number=7,
        difficulty=0.6,
        statement="Um carro percorre 120 km em 2 horas. Qual a velocidade média?",
        alternatives={"A": "40 km/h", "B": "50 km/h", "C": "60 km/h", "D": "70 km/h", "E": "80 km/h"},
        chosen_answer="B",
        correct_answer="C",
    )


def test_instruction_numbering_is_generated():
    instructions = InstructionList()
    instructions.add("primeira").add_if(False, "pulada").add_if(True, "segunda").add("terceira")
    assert instructions.render() == "1. primeira\n2. segunda\n3. terceira"
    assert len(instructions) == 3


def test_master_prompts_cover_every_operation():
    operations = set(load_prompts())
    assert operations == {
        "answer_feedback",
        "progress_analysis",
        "motivational_message",
        "essay_themes",
        "essay_grading",
    }
    assert get_prompt("ESSAY_GRADING").temperature == 0.2


def test_feedback_prompt_with_taxonomy(mt_catalog):
    request = render_feedback_prompt(
        _question(),
        snapshot=PerformanceSnapshot(total_answered=10, correct_count=6, accuracy_pct=60.0),
        skill=SkillAccuracy(total_answered=3, correct_count=1, accuracy_pct=33.3),
        catalog=mt_catalog,
        skill_entry={"code": "H7", "description": "Calcular grandezas", "competency_code": "C2",
                     "competency_description": "Utilizar o conhecimento geométrico"},
        profile={"strengths": "Funções"},
    )
    text = request.user_text
    assert request.operation == "answer_feedback"
    assert request.prompt_version == get_prompt("answer_feedback").prompt_version
    assert get_prompt("answer_feedback").output_schema in text
    assert "- MT01: Razão, proporção e porcentagem" in text
    assert "Utilize somente os objetos listados" in text
    assert "Taxa de acerto geral: 60.0%" in text
    assert "Pontos fortes: Funções" in text
    assert "Áreas de melhoria: Ainda sendo identificadas" in text
    assert "C) 60 km/h" in text
    assert _instruction_numbers(text) == list(range(1, 13))


def test_feedback_prompt_without_taxonomy_renumbers(mt_catalog):
    request = render_feedback_prompt(
        _question(subject="LC"),
        snapshot=PerformanceSnapshot(),
        skill=SkillAccuracy(),
        catalog=mt_catalog,
    )
    text = request.user_text
    assert "OBJETOS DE CONHECIMENTO" not in text
    assert "Utilize somente os objetos listados" not in text
    assert _instruction_numbers(text) == list(range(1, 12))
    assert get_prompt("answer_feedback").output_schema in text


def _skills():
    rows = [
        {"skill_number": 7, "competency_number": 2, "description": "Geometria", "total_answered": 10, "correct_count": 3},
        {"skill_number": 12, "competency_number": 3, "description": "Grandezas", "total_answered": 5, "correct_count": 5},
        {"skill_number": 1, "competency_number": 1, "description": "Números", "total_answered": 0, "correct_count": 0},
    ]
    return [to_skill_progress(row) for row in rows]


def test_progress_prompt_lists_skills_and_sessions(mt_catalog):
    sessions = [
        {"started_at": datetime(2024, 5, 2, tzinfo=timezone.utc), "accuracy_pct": 72.5, "total_questions": 20},
        {"started_at": None, "accuracy_pct": None, "total_questions": 5},
    ]
    request = render_progress_prompt(
        "MT",
        snapshot=PerformanceSnapshot(total_answered=15, correct_count=8, accuracy_pct=53.3, avg_response_time_seconds=41.6),
        skills=_skills(),
        sessions=sessions,
        catalog=mt_catalog,
    )
    text = request.user_text
    assert "Matemática (código MT)" in text
    assert "- 02/05/2024: 72.5% de acerto em 20 questões" in text
    assert "- Sem data: 0.0% de acerto em 5 questões" in text
    assert "- C2/H7: 30.0% (3/10)" in text
    assert "C1/H1" not in text
    priority_block = text.split("HABILIDADES PRIORITÁRIAS:", 1)[1].split("HABILIDADES CONSOLIDADAS:", 1)[0]
    assert "H7" in priority_block and "H12" not in priority_block
    strong_block = text.split("HABILIDADES CONSOLIDADAS:", 1)[1].split("COMPETÊNCIAS RELACIONADAS:", 1)[0]
    assert "H12" in strong_block
    assert "Tempo médio por questão: 42s" in text
    assert "Como não há histórico registrado" not in text
    assert _instruction_numbers(text) == list(range(1, 7))


def test_progress_prompt_without_history_adds_instruction(mt_catalog):
    request = render_progress_prompt(
        "MT", snapshot=PerformanceSnapshot(), skills=[], sessions=[], catalog=mt_catalog
    )
    text = request.user_text
    assert "Nenhuma sessão concluída recentemente." in text
    assert "Nenhuma habilidade da BNCC respondida até agora." in text
    assert "Como não há histórico registrado" in text
    assert _instruction_numbers(text) == list(range(1, 8))


def test_motivation_prompt():
    request = render_motivation_prompt(
        "após simulado",
        learner_name="Ana",
        overall={"accuracy_pct": 71.4, "total_answered": 35, "stars": 2},
    )
    assert "NOME: Ana" in request.user_text
    assert "ESTRELAS: 2 estrelas" in request.user_text
    assert request.params.temperature == 0.8
    assert request.params.max_tokens == 200


def test_essay_prompts_embed_schema_and_rubric():
    themes = render_themes_prompt()
    assert "Gere exatamente 6 temas inéditos." in themes.user_text
    assert get_prompt("essay_themes").output_schema in themes.user_text
    assert themes.params.max_tokens == 4000

    grading = render_grading_prompt("Tema X", "Meu texto.", [c.title for c in RUBRIC])
    assert "Tema oficial proposto: Tema X" in grading.user_text
    assert "<<<\nMeu texto.\n>>>" in grading.user_text
    for criterion in RUBRIC:
        assert criterion.title in grading.user_text
    assert get_prompt("essay_grading").output_schema in grading.user_text
    assert grading.params.temperature == 0.2
