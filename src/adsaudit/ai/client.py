"""Thin OpenAI Chat Completions client used by the analysis modules."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_TIMEOUT = 120.0
TEMPERATURE = 0.3


class LLMError(RuntimeError):
    """Raised when the LLM provider rejects a request or returns garbage."""


@dataclass
class LLMClient:
    api_key: str
    model: str
    base_url: str = DEFAULT_BASE_URL
    max_tokens: int = 4096
    timeout: float = DEFAULT_TIMEOUT

    def _token_param(self) -> str:
        # Newer model families reject max_tokens.
        return "max_completion_tokens" if self.model.startswith("gpt-5") else "max_tokens"

    def build_request(self, system_prompt: str, user_prompt: str) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": TEMPERATURE,
            "response_format": {"type": "json_object"},
            self._token_param(): self.max_tokens,
        }

    def complete_json(self, system_prompt: str, user_prompt: str) -> dict[str, Any]:
        """Send one chat completion and return the decoded JSON object it contains."""
        headers = {"Authorization": f"Bearer {self.api_key}"}
        url = f"{self.base_url.rstrip('/')}/chat/completions"
        try:
            response = httpx.post(
                url,
                json=self.build_request(system_prompt, user_prompt),
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning("LLM request rejected (%s): %s", exc.response.status_code, exc.response.text[:500])
            raise LLMError(f"OpenAI API returned {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            logger.warning("LLM request failed: %s", exc)
            raise LLMError(f"OpenAI request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise LLMError("Invalid LLM response") from exc
        if not isinstance(data, dict):
            raise LLMError("Unexpected response shape from OpenAI")

        content = self._extract_content(data)
        if not content:
            raise LLMError("Empty response from OpenAI")
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            raise LLMError("OpenAI response is not valid JSON") from exc
        if not isinstance(parsed, dict):
            raise LLMError("OpenAI response is not a JSON object")
        return parsed

    @staticmethod
    def _extract_content(payload: dict[str, Any]) -> str | None:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            return None
        choice = choices[0]
        if not isinstance(choice, dict) or not isinstance(choice.get("message"), dict):
            raise LLMError("Unexpected response shape from OpenAI")
        content = choice["message"].get("content")
        if isinstance(content, str):
            return content
        return None
