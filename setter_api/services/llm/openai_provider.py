from typing import List, Optional

import httpx

from setter_api.errors import BackendMalformed, BackendRejected, BackendUnavailable
from setter_api.logging_config import get_logger
from setter_api.services.llm.base import LLMProvider, LLMResponse

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI-compatible chat completions provider."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1/chat/completions",
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = base_url

    async def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        """Generate a completion. Raises Backend* errors, never bare Exception."""
        model = model or self.default_model
        timeout = timeout_seconds if timeout_seconds is not None else 60.0

        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        logger.debug(f"LLM request: model={model}, messages_count={len(messages)}")

        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(
                    self.base_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.TimeoutException as e:
            raise BackendUnavailable(f"LLM request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise BackendUnavailable(f"LLM transport error: {e}") from e

        logger.debug(f"LLM response status: {response.status_code}")

        if response.status_code != 200:
            logger.error(
                "LLM backend rejected request",
                extra={"context": {"status_code": response.status_code, "body": response.text[:500]}},
            )
            raise BackendRejected(
                f"LLM API error: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise BackendMalformed(f"LLM response is not JSON: {e}") from e

        content = ""
        if isinstance(data, dict) and data.get("choices"):
            message = data["choices"][0].get("message") or {}
            content = message.get("content") or ""
        logger.debug(f"LLM content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model) if isinstance(data, dict) else model,
            usage=data.get("usage") if isinstance(data, dict) else None,
        )
