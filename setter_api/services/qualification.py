"""Pure qualification rules: score validation, threshold and re-qualification cadence."""

from dataclasses import dataclass, field
from typing import Any

from setter_api.errors import BackendMalformed
from setter_api.schemas.pipeline import QualificationCriteria
from setter_api.services.generation_client import QualificationAssessment

MIN_SCORE = 0
MAX_SCORE = 10


@dataclass
class QualificationResult:
    score: int
    is_qualified: bool
    extracted_info: dict = field(default_factory=dict)
    reasoning: str = ""
    next_action: str = "contact"

    def lead_fields(self) -> dict[str, Any]:
        return {
            "contact_info": dict(self.extracted_info),
            "qualification_score": self.score,
            "qualification_reason": self.reasoning,
            "next_action": self.next_action,
        }


def evaluate_qualification(
    assessment: QualificationAssessment, criteria: QualificationCriteria
) -> QualificationResult:
    score = assessment.score
    if isinstance(score, bool) or not isinstance(score, int):
        raise BackendMalformed(f"Qualification score is not an integer: {score!r}")
    if score < MIN_SCORE or score > MAX_SCORE:
        raise BackendMalformed(f"Qualification score {score} outside [{MIN_SCORE}, {MAX_SCORE}]")

    return QualificationResult(
        score=score,
        is_qualified=score >= criteria.min_score,
        extracted_info=assessment.extracted_info,
        reasoning=assessment.reasoning,
        next_action=assessment.next_action,
    )


def should_qualify(user_turn_count: int, min_user_turns: int = 3, every: int = 2) -> bool:
    """True on the first crossing of the threshold, then every `every` USER turns."""
    if user_turn_count < min_user_turns:
        return False
    if every <= 1:
        return True
    return (user_turn_count - min_user_turns) % every == 0
