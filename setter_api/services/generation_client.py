import asyncio
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, List, Optional

from setter_api.config import Settings
from setter_api.errors import BackendMalformed, BackendUnavailable
from setter_api.logging_config import get_logger
from setter_api.schemas.pipeline import QualificationCriteria, Turn, TurnRole
from setter_api.services.llm import LLMProvider, OpenAIProvider

logger = get_logger("generation_client")

DEFAULT_NEXT_ACTION = "contact"

QUALIFICATION_PROMPT = """Analyze this conversation and decide whether the lead is qualified.

Qualification criteria:
{criteria}

Minimum score to be qualified: {min_score}/10

Conversation:
{transcript}

Reply ONLY with a valid JSON object of this exact shape:
{{
  "score": <integer 0-10>,
  "extractedInfo": {{
    "name": "...",
    "email": "...",
    "phone": "...",
    "budget": "...",
    "motivation": "...",
    "timeline": "...",
    "painPoints": ["..."]
  }},
  "reasoning": "short explanation of the score",
  "nextAction": "contact | nurture | book_call"
}}"""

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


@dataclass
class QualificationAssessment:
    score: int
    extracted_info: dict = field(default_factory=dict)
    reasoning: str = ""
    next_action: str = DEFAULT_NEXT_ACTION


class GenerationClient(ABC):
    """Contract the conversation worker depends on."""

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        pass

    @abstractmethod
    async def generate_reply(self, system_prompt: str, history: List[Turn], new_message: str) -> str:
        pass

    @abstractmethod
    async def score_qualification(
        self, history: List[Turn], criteria: QualificationCriteria
    ) -> QualificationAssessment:
        pass


class UnconfiguredGenerationClient(GenerationClient):
    """Stand-in used when no backend credentials are configured."""

    @property
    def is_configured(self) -> bool:
        return False

    async def generate_reply(self, system_prompt: str, history: List[Turn], new_message: str) -> str:
        raise BackendUnavailable("Generation backend is not configured")

    async def score_qualification(
        self, history: List[Turn], criteria: QualificationCriteria
    ) -> QualificationAssessment:
        raise BackendUnavailable("Generation backend is not configured")


class LLMGenerationClient(GenerationClient):
    def __init__(
        self,
        provider: LLMProvider,
        *,
        model: Optional[str] = None,
        timeout_seconds: float = 30.0,
        max_tokens: int = 1024,
        temperature: float = 0.7,
    ):
        self.provider = provider
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.max_tokens = max_tokens
        self.temperature = temperature

    @property
    def is_configured(self) -> bool:
        return True

    async def generate_reply(self, system_prompt: str, history: List[Turn], new_message: str) -> str:
        messages = build_reply_messages(system_prompt, history, new_message)
        content = await self._complete(messages, temperature=self.temperature)
        reply = content.strip()
        if not reply:
            raise BackendMalformed("Generation backend returned empty content")
        return reply

    async def score_qualification(
        self, history: List[Turn], criteria: QualificationCriteria
    ) -> QualificationAssessment:
        prompt = build_qualification_prompt(history, criteria)
        content = await self._complete([{"role": "user", "content": prompt}], temperature=0.0)
        assessment = parse_assessment(content)
        logger.info(
            "Qualification scored",
            extra={"context": {"score": assessment.score, "next_action": assessment.next_action}},
        )
        return assessment

    async def _complete(self, messages: List[dict], *, temperature: float) -> str:
        try:
            response = await asyncio.wait_for(
                self.provider.generate(
                    messages=messages,
                    model=self.model,
                    temperature=temperature,
                    max_tokens=self.max_tokens,
                    timeout_seconds=self.timeout_seconds,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise BackendUnavailable(f"Generation backend timed out after {self.timeout_seconds}s") from e
        return response.content or ""


def build_reply_messages(system_prompt: str, history: List[Turn], new_message: str) -> List[dict]:
    messages = [{"role": "system", "content": system_prompt}]
    for turn in history:
        role = "user" if turn.role == TurnRole.USER else "assistant"
        messages.append({"role": role, "content": turn.content})
    messages.append({"role": "user", "content": new_message})
    return messages


def build_qualification_prompt(history: List[Turn], criteria: QualificationCriteria) -> str:
    transcript = "\n".join(f"{turn.role.value.lower()}: {turn.content}" for turn in history)
    return QUALIFICATION_PROMPT.format(
        criteria=criteria.description or "(no explicit criteria)",
        min_score=criteria.min_score,
        transcript=transcript or "(empty)",
    )


def _extract_json_object(content: str) -> Any:
    text = _CODE_FENCE_RE.sub("", (content or "").strip())
    if not text:
        raise BackendMalformed("Qualification response is empty")
    try:
        return json.loads(text)
    except ValueError:
        match = _JSON_OBJECT_RE.search(text)
        if not match:
            raise BackendMalformed("Qualification response contains no JSON object")
        try:
            return json.loads(match.group(0))
        except ValueError as e:
            raise BackendMalformed(f"Qualification JSON is invalid: {e}") from e


def _coerce_score(value: Any) -> int:
    if isinstance(value, bool):
        raise BackendMalformed("Qualification score must be a number")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise BackendMalformed(f"Qualification score is not an integer: {value!r}")


def parse_assessment(content: str) -> QualificationAssessment:
    """Parse the scorer's reply, tolerating code fences and surrounding prose."""
    payload = _extract_json_object(content)
    if not isinstance(payload, dict) or "score" not in payload:
        raise BackendMalformed("Qualification JSON is missing 'score'")

    score = _coerce_score(payload["score"])

    extracted = payload.get("extractedInfo", payload.get("extracted_info")) or {}
    if not isinstance(extracted, dict):
        raise BackendMalformed("Qualification 'extractedInfo' must be an object")
    contact_info = {key: value for key, value in extracted.items() if value not in (None, "", [], "...")}

    reasoning = payload.get("reasoning") or ""
    next_action = payload.get("nextAction", payload.get("next_action")) or DEFAULT_NEXT_ACTION

    return QualificationAssessment(
        score=score,
        extracted_info=contact_info,
        reasoning=str(reasoning),
        next_action=str(next_action),
    )


def build_generation_client(settings: Settings) -> GenerationClient:
    if not settings.llm_api_key:
        logger.warning("LLM_API_KEY not set, generation backend disabled")
        return UnconfiguredGenerationClient()
    provider = OpenAIProvider(
        api_key=settings.llm_api_key,
        default_model=settings.llm_model,
        base_url=settings.llm_api_url,
    )
    return LLMGenerationClient(
        provider,
        model=settings.llm_model,
        timeout_seconds=settings.llm_timeout_seconds,
        max_tokens=settings.llm_max_tokens,
        temperature=settings.llm_temperature,
    )
