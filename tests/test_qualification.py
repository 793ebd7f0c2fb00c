import pytest

from setter_api.errors import BackendMalformed
from setter_api.schemas.pipeline import QualificationCriteria
from setter_api.services.generation_client import QualificationAssessment
from setter_api.services.qualification import evaluate_qualification, should_qualify


class TestEvaluateQualification:
    def test_qualified_at_threshold(self):
        result = evaluate_qualification(
            QualificationAssessment(score=7, extracted_info={"name": "Ana"}, reasoning="fits"),
            QualificationCriteria(min_score=7),
        )
        assert result.is_qualified is True
        assert result.score == 7

    def test_not_qualified_below_threshold(self):
        result = evaluate_qualification(QualificationAssessment(score=6), QualificationCriteria(min_score=7))
        assert result.is_qualified is False

    @pytest.mark.parametrize("score", [-1, 11, 42])
    def test_out_of_range_score_is_malformed(self, score):
        with pytest.raises(BackendMalformed):
            evaluate_qualification(QualificationAssessment(score=score), QualificationCriteria())

    def test_boolean_score_is_malformed(self):
        with pytest.raises(BackendMalformed):
            evaluate_qualification(QualificationAssessment(score=True), QualificationCriteria())

    def test_lead_fields(self):
        result = evaluate_qualification(
            QualificationAssessment(
                score=8,
                extracted_info={"email": "ana@example.com"},
                reasoning="Budget confirmed",
                next_action="book_call",
            ),
            QualificationCriteria(),
        )
        assert result.lead_fields() == {
            "contact_info": {"email": "ana@example.com"},
            "qualification_score": 8,
            "qualification_reason": "Budget confirmed",
            "next_action": "book_call",
        }


class TestShouldQualify:
    @pytest.mark.parametrize(
        "user_turns,expected",
        [(1, False), (2, False), (3, True), (4, False), (5, True), (6, False), (7, True)],
    )
    def test_default_cadence(self, user_turns, expected):
        assert should_qualify(user_turns) is expected

    def test_every_turn_when_cadence_is_one(self):
        assert should_qualify(3, every=1)
        assert should_qualify(4, every=1)

    def test_custom_threshold(self):
        assert not should_qualify(4, min_user_turns=5)
        assert should_qualify(5, min_user_turns=5)


class TestQualificationCriteria:
    def test_from_raw_reads_min_score(self):
        criteria = QualificationCriteria.from_raw({"description": "B2B founders", "minScore": 8})
        assert criteria.min_score == 8
        assert criteria.description == "B2B founders"

    def test_from_raw_accepts_legacy_key(self):
        assert QualificationCriteria.from_raw({"min_score": 5}).min_score == 5

    @pytest.mark.parametrize("raw", [{}, {"minScore": 15}, {"minScore": "abc"}, {"minScore": True}, None])
    def test_from_raw_defaults_to_seven(self, raw):
        assert QualificationCriteria.from_raw(raw).min_score == 7

    def test_from_raw_keeps_extra_keys_in_description(self):
        criteria = QualificationCriteria.from_raw({"description": "Coaching", "budget_min": 1000})
        assert criteria.description.startswith("Coaching")
        assert '"budget_min": 1000' in criteria.description
