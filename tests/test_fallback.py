from engines.fallback import feedback_fallback, motivational_fallback, progress_fallback


def test_feedback_fallback_uses_question_difficulty_and_taxonomy(mt_catalog):
    concepts = mt_catalog.list_concepts("MT")
    result = feedback_fallback(correct_answer="C", question_difficulty=0.35, concepts=concepts)

    assert result.is_fallback is True
    assert result.suggested_difficulty == 0.35
    assert result.concepts_to_review == [c.label for c in concepts[:3]]
    assert "A resposta correta é C" in result.correct_answer_explanation
    assert len(result.review_steps) == 3
    assert result.feedback_text


def test_feedback_fallback_without_taxonomy():
    result = feedback_fallback(correct_answer=None, question_difficulty="?", concepts=())
    assert result.concepts_to_review == []
    assert result.suggested_difficulty == 0.5


def test_progress_fallback_is_neutral():
    analysis = progress_fallback()
    assert analysis.is_fallback is True
    assert analysis.ideal_difficulty == 0.5
    assert [(r.type, r.priority) for r in analysis.recommendations] == [("practice", 3)]
    assert analysis.focus_areas == []
    assert analysis.weekly_goal


def test_motivational_fallback():
    message = motivational_fallback()
    assert message.type == "encouragement"
    assert message.is_fallback is True
    assert message.message
