"""Prompt rendering for the five generation-backed operations.

System text and output schema come from ``prompts/masterprompts``; the user
prompt is assembled here from the learner's performance context. The schema
is always embedded so the normalizer can rely on the reply shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, List, Mapping, Optional, Sequence

import config
from engines.aggregation import priority_skills, rollup_competencies, skills_with_history, strong_skills
from engines.generation import GenerationParams
from engines.normalization import truncate_text
from prompts.masterprompts import MasterPrompt, get_prompt
from schemas import (
    CompetencyProgress,
    PerformanceSnapshot,
    QuestionContext,
    SkillAccuracy,
    SkillProgress,
)
from taxonomy import TaxonomyCatalog

ALTERNATIVE_LETTERS = ("A", "B", "C", "D", "E")
RECENT_SESSION_LIMIT = 5
SKILL_SUMMARY_LIMIT = 20
THEME_COUNT = 6


@dataclass(frozen=True)
class PromptRequest:
    operation: str
    prompt_version: str
    system_text: str
    user_text: str
    params: GenerationParams


@dataclass
class InstructionList:
    """Ordered prompt instructions; numbers are assigned when rendering."""

    items: List[str] = field(default_factory=list)

    def add(self, text: str) -> "InstructionList":
        self.items.append(text.strip())
        return self

    def add_if(self, condition: Any, text: str) -> "InstructionList":
        if condition:
            self.add(text)
        return self

    def render(self) -> str:
        return "\n".join(f"{idx}. {text}" for idx, text in enumerate(self.items, start=1))

    def __len__(self) -> int:
        return len(self.items)


def _params_for(prompt: MasterPrompt) -> GenerationParams:
    return GenerationParams(
        temperature=prompt.temperature if prompt.temperature is not None else config.LLM_TEMPERATURE,
        max_tokens=prompt.max_tokens if prompt.max_tokens is not None else config.LLM_MAX_TOKENS,
    )


def _request(operation: str, body: str) -> PromptRequest:
    prompt = get_prompt(operation)
    user_text = f"{body.strip()}\n\nFORMATO DE RESPOSTA (JSON):\n{prompt.output_schema}\n"
    return PromptRequest(
        operation=prompt.operation,
        prompt_version=prompt.prompt_version,
        system_text=prompt.system_text,
        user_text=user_text,
        params=_params_for(prompt),
    )


def _or(value: Any, default: str) -> str:
    text = str(value).strip() if value is not None else ""
    return text or default


# ---------------------------------------------------------------------------
# Answer feedback
# ---------------------------------------------------------------------------

def taxonomy_context(catalog: TaxonomyCatalog, subject: str) -> str:
    overview = catalog.formatted_overview(subject)
    if not overview:
        return ""
    return (
        f"OBJETOS DE CONHECIMENTO (BNCC/ENEM) PARA {catalog.subject_name(subject)}:\n"
        f"{overview}"
    )


def render_feedback_prompt(
    question: QuestionContext,
    *,
    snapshot: PerformanceSnapshot,
    skill: SkillAccuracy,
    catalog: TaxonomyCatalog,
    skill_entry: Optional[Mapping[str, Any]] = None,
    profile: Optional[Mapping[str, Any]] = None,
) -> PromptRequest:
    has_taxonomy = bool(catalog.list_concepts(question.subject))
    profile = profile or {}
    skill_entry = skill_entry or {}

    instructions = InstructionList()
    for text in (
        "Forneça um feedback construtivo e motivador",
        "Explique por que a resposta está incorreta",
        "Explique a resposta correta de forma didática",
        "Sugira estratégias de estudo específicas para esta habilidade",
        "Mantenha um tom encorajador e positivo",
        "Seja específico sobre conceitos que precisam ser revisados",
        "Considere o desempenho específico do estudante nesta habilidade",
    ):
        instructions.add(text)
    instructions.add_if(
        has_taxonomy,
        'Utilize somente os objetos listados acima para preencher "concepts_to_review", '
        'devolvendo cada item no formato "CODIGO - descrição literal".',
    )
    instructions.add(
        "Diagnostique o motivo do erro do estudante, mencionando trechos do enunciado "
        "ou características da alternativa escolhida."
    )
    instructions.add(
        "Indique o principal ponto de confusão ou armadilha conceitual que pode ter levado "
        "ao erro e como identificá-lo."
    )
    instructions.add("Proponha até 3 passos práticos e objetivos para evitar repetir o erro, em linguagem direta.")
    instructions.add("Limite a resposta a no máximo 200 palavras.")

    skill_label = skill_entry.get("code") or (f"H{question.skill_number}" if question.skill_number else "")
    lines = [
        "Você é um tutor especializado em preparação para o ENEM. Analise a questão e a resposta "
        "do estudante para fornecer um feedback construtivo e personalizado.",
        "",
        "CONTEXTO DA QUESTÃO:",
        f"Matéria: {catalog.subject_name(question.subject)} ({question.subject})",
        f"Habilidade: {_or(skill_label, 'não informada')}",
    ]
    if skill_entry.get("description"):
        lines.append(f"Descrição da Habilidade: {skill_entry['description']}")
    if skill_entry.get("competency_description"):
        lines.append(
            f"Competência: {_or(skill_entry.get('competency_code'), '')} {skill_entry['competency_description']}".strip()
        )
    lines.extend(
        [
            f"Dificuldade: {question.difficulty}",
            f"Enunciado: {question.statement}",
            "",
            "ALTERNATIVAS:",
        ]
    )
    for letter in ALTERNATIVE_LETTERS:
        lines.append(f"{letter}) {question.alternatives.get(letter, '')}")

    context = taxonomy_context(catalog, question.subject)
    if context:
        lines.extend(["", context])

    lines.extend(
        [
            "",
            f"RESPOSTA DO ESTUDANTE: {question.chosen_answer}",
            f"RESPOSTA CORRETA: {question.correct_answer}",
            "",
            "HISTÓRICO DO ESTUDANTE:",
            f"- Total de questões respondidas: {snapshot.total_answered}",
            f"- Taxa de acerto geral: {snapshot.accuracy_pct}%",
            f"- Taxa de acerto nesta habilidade: {skill.accuracy_pct}%",
            f"- Questões respondidas nesta habilidade: {skill.total_answered}",
            f"- Pontos fortes: {_or(profile.get('strengths'), 'Ainda sendo identificados')}",
            f"- Áreas de melhoria: {_or(profile.get('weaknesses'), 'Ainda sendo identificadas')}",
            "",
            "INSTRUÇÕES:",
            instructions.render(),
        ]
    )
    return _request("answer_feedback", "\n".join(lines))


# ---------------------------------------------------------------------------
# Progress analysis
# ---------------------------------------------------------------------------

def _skill_line(skill: SkillProgress) -> str:
    return (
        f"- {skill.competency_code}/{skill.skill_code}: {skill.accuracy_pct}% "
        f"({skill.correct_count}/{skill.total_answered}) – {truncate_text(skill.description, 120)}"
    )


def _competency_line(item: CompetencyProgress) -> str:
    return (
        f"- {item.competency_code}: {item.accuracy_pct}% "
        f"({item.correct_count}/{item.total_answered}) – {truncate_text(item.description, 140)}"
    )


def _format_session_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.strftime("%d/%m/%Y")
    if isinstance(value, date):
        return value.strftime("%d/%m/%Y")
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip()).strftime("%d/%m/%Y")
        except ValueError:
            return value.strip()
    return "Sem data"


def _session_line(session: Mapping[str, Any]) -> str:
    try:
        pct = float(session.get("accuracy_pct") or 0)
    except (TypeError, ValueError):
        pct = 0.0
    return (
        f"- {_format_session_date(session.get('started_at'))}: {pct:.1f}% de acerto "
        f"em {session.get('total_questions') or 0} questões"
    )


def _block(lines: Iterable[str], empty: str) -> str:
    rendered = list(lines)
    return "\n".join(rendered) if rendered else empty


def render_progress_prompt(
    subject: str,
    *,
    snapshot: PerformanceSnapshot,
    skills: Sequence[SkillProgress],
    sessions: Sequence[Mapping[str, Any]],
    catalog: TaxonomyCatalog,
) -> PromptRequest:
    history = skills_with_history(skills)
    competencies = rollup_competencies(history)

    instructions = InstructionList()
    instructions.add("Utilize apenas as competências (C) e habilidades (H) listadas acima; nunca invente códigos.")
    instructions.add("Descreva tendências e lacunas citando explicitamente os códigos BNCC/ENEM.")
    instructions.add(
        "Monte um plano de estudo semanal relacionando cada recomendação às habilidades "
        "prioritárias e competências em foco."
    )
    instructions.add("Sugira um nível de dificuldade ideal entre 0 e 1 coerente com o desempenho observado.")
    instructions.add(
        'Forneça pelo menos 2 recomendações com type ("study", "practice" ou "review"), '
        "priority (1-5) e focus_skills."
    )
    instructions.add("Inclua uma mensagem motivacional contextualizada e uma meta semanal verificável.")
    instructions.add_if(
        not history,
        "Como não há histórico registrado, explique como iniciar os estudos e estabeleça metas iniciais realistas.",
    )

    subject_name = catalog.subject_name(subject)
    body = "\n".join(
        [
            f"Analise o progresso do estudante em {subject_name} (código {subject}) "
            "e gere um plano de estudo alinhado à BNCC.",
            "",
            "RESUMO GERAL:",
            f"- Total de questões respondidas: {snapshot.total_answered}",
            f"- Taxa de acerto geral: {snapshot.accuracy_pct}%",
            f"- Taxa de acerto (últimos 7 dias): {snapshot.recent_accuracy_pct}%",
            f"- Tempo médio por questão: {round(snapshot.avg_response_time_seconds)}s",
            "",
            "ÚLTIMAS SESSÕES:",
            _block(
                (_session_line(s) for s in list(sessions)[:RECENT_SESSION_LIMIT]),
                "- Nenhuma sessão concluída recentemente.",
            ),
            "",
            "HABILIDADES BNCC COM HISTÓRICO:",
            _block(
                (_skill_line(s) for s in history[:SKILL_SUMMARY_LIMIT]),
                "- Nenhuma habilidade da BNCC respondida até agora.",
            ),
            "",
            "HABILIDADES PRIORITÁRIAS:",
            _block(
                (_skill_line(s) for s in priority_skills(history)),
                "- Ainda não há habilidades críticas mapeadas.",
            ),
            "",
            "HABILIDADES CONSOLIDADAS:",
            _block(
                (_skill_line(s) for s in strong_skills(history)),
                "- Nenhuma habilidade consolidada foi identificada por enquanto.",
            ),
            "",
            "COMPETÊNCIAS RELACIONADAS:",
            _block(
                (_competency_line(c) for c in competencies),
                "- Sem competências com respostas registradas nesta matéria.",
            ),
            "",
            "INSTRUÇÕES:",
            instructions.render(),
        ]
    )
    return _request("progress_analysis", body)


# ---------------------------------------------------------------------------
# Motivational message
# ---------------------------------------------------------------------------

def render_motivation_prompt(
    context: str,
    *,
    learner_name: Optional[str],
    overall: Mapping[str, Any],
) -> PromptRequest:
    instructions = InstructionList()
    for text in (
        "Seja genuinamente motivador e positivo",
        "Reconheça o esforço do estudante",
        "Use linguagem adequada para ensino médio",
        "Inclua dicas práticas se relevante",
        "Mantenha o foco no objetivo do ENEM",
        "Seja específico sobre conquistas",
        "Limite a 100 palavras",
    ):
        instructions.add(text)

    body = "\n".join(
        [
            "Gere uma mensagem motivacional personalizada para um estudante do ENEM.",
            "",
            f"CONTEXTO: {_or(context, 'geral')}",
            f"NOME: {_or(learner_name, 'Estudante')}",
            f"PROGRESSO GERAL: {overall.get('accuracy_pct', 0)}% de acerto",
            f"TOTAL DE QUESTÕES: {overall.get('total_answered', 0)}",
            f"ESTRELAS: {overall.get('stars', 0)} estrelas",
            "",
            "INSTRUÇÕES:",
            instructions.render(),
            'Use em "type" um dos valores: "congratulations", "encouragement", "tip" ou "goal".',
        ]
    )
    return _request("motivational_message", body)


# ---------------------------------------------------------------------------
# Essays
# ---------------------------------------------------------------------------

def render_themes_prompt(count: int = THEME_COUNT) -> PromptRequest:
    body = "\n".join(
        [
            "Você é um professor especialista em linguagem e integrante da Comissão Especializada do INEP "
            "responsável por selecionar o tema oficial da redação do ENEM.",
            "",
            "Diretrizes obrigatórias:",
            "- Siga rigorosamente a Matriz de Referência do ENEM, o Guia do Participante e os editais oficiais.",
            "- Os temas devem possuir pertinência social, atualidade, alcance nacional e pluralidade regional.",
            "- Todos precisam possibilitar múltiplas perspectivas e exigir proposta de intervenção viável e humanizada.",
            "- Evite temas já utilizados anteriormente (lista recente 2014-2023).",
            "- Sempre inclua pelo menos dois textos de apoio curtos por tema "
            "(dados, citações, reportagens ou legislações com fontes).",
            "",
            f"Gere exatamente {count} temas inéditos.",
        ]
    )
    return _request("essay_themes", body)


def render_grading_prompt(theme: str, essay_text: str, rubric_titles: Sequence[str]) -> PromptRequest:
    instructions = InstructionList()
    instructions.add("Avalie detalhadamente cada competência (1 a 5) com nota entre 0 e 200.")
    instructions.add("Cite trechos exatos da redação em cada justificativa.")
    instructions.add(
        "Liste todos os erros relevantes (ortografia, coesão, fuga ao tema, proposta incompleta etc.)."
    )
    instructions.add("Exija proposta de intervenção completa e alinhada aos direitos humanos.")
    instructions.add("Seja preciso, objetivo e coerente com o desempenho apresentado.")
    instructions.add("As notas de cada competência devem ser múltiplos de 20 (0, 20, 40, ..., 200).")
    instructions.add("Devolva as cinco competências, na ordem, usando o campo \"number\" de 1 a 5.")

    body = "\n".join(
        [
            'Você é avaliador oficial do ENEM. Utilize o Guia do Participante e as "Regras de Correção" '
            "para avaliar a redação informada.",
            "",
            f"Tema oficial proposto: {theme}",
            "",
            "COMPETÊNCIAS AVALIADAS:",
            "\n".join(f"- {title}" for title in rubric_titles),
            "",
            "TEXTO DO PARTICIPANTE:",
            "<<<",
            essay_text,
            ">>>",
            "",
            "Instruções obrigatórias:",
            instructions.render(),
        ]
    )
    return _request("essay_grading", body)
