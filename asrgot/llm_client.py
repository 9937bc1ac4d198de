"""
HTTP client for the external text-generation capability.

``ModelClient`` implements the ``ExternalCall`` contract,
``async (prompt, CallParams) -> str``, against two backends:

- Gemini ``generateContent`` (models named ``gemini-*``)
- Perplexity chat completions (models named ``sonar*``)

Structured outputs go through ``parse_structured``. It pulls the JSON block
out of free-form model text and validates it against a Pydantic schema. On
any mismatch it returns the caller's documented default.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from asrgot.config import Credentials
from asrgot.errors import RoutingError
from asrgot.models import CallParams

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

ExternalCall = Callable[[str, CallParams], Awaitable[str]]

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
PERPLEXITY_URL = "https://api.perplexity.ai/chat/completions"

RETRY_STATUSES = (500, 502, 503)


def provider_for(model: str) -> str:
    """Credential name a model needs: ``perplexity`` for Sonar, else ``gemini``."""
    return "perplexity" if model.startswith("sonar") else "gemini"


class ModelClient:
    """
    Async client for Gemini and Perplexity models.

    Features:
    - One ``httpx.AsyncClient`` per session
    - Retry with backoff on 500/502/503
    - Capability flags mapped to Gemini tools (search grounding, code execution)
    """

    def __init__(
        self,
        credentials: Credentials,
        timeout: float = 120.0,
        retries: int = 2,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            credentials: API keys; each call requires the key its model needs
            timeout: Request timeout in seconds
            retries: Extra attempts on transient server errors
            transport: Optional httpx transport (tests use ``httpx.MockTransport``)
        """
        self.credentials = credentials
        self.retries = retries
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)
        logger.info("ModelClient initialized: timeout=%ss retries=%s", timeout, retries)

    async def __call__(self, prompt: str, params: CallParams) -> str:
        return await self.generate(prompt, params)

    async def generate(self, prompt: str, params: CallParams) -> str:
        """Generate text for ``prompt`` with the model named in ``params``.

        Raises:
            CredentialError: If the model's API key is missing
            httpx.HTTPError: On transport or HTTP status failures
            RoutingError: If the response carries no text
        """
        if provider_for(params.model) == "perplexity":
            return await self._perplexity(prompt, params)
        return await self._gemini(prompt, params)

    async def _gemini(self, prompt: str, params: CallParams) -> str:
        api_key = self.credentials.require("gemini")
        generation_config: dict[str, Any] = {
            "maxOutputTokens": params.max_tokens,
            "temperature": params.temperature,
        }
        if params.thinking_budget:
            generation_config["thinkingConfig"] = {"thinkingBudget": params.thinking_budget}
        payload: dict[str, Any] = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }
        if params.capability == "SEARCH_GROUNDING":
            payload["tools"] = [{"google_search": {}}]
        elif params.capability == "CODE_EXECUTION":
            payload["tools"] = [{"code_execution": {}}]
        elif params.capability == "STRUCTURED_OUTPUTS":
            generation_config["responseMimeType"] = "application/json"

        data = await self._post(
            GEMINI_URL.format(model=params.model),
            payload,
            headers={"x-goog-api-key": api_key},
        )
        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError):
            raise RoutingError(f"Invalid response from Gemini model {params.model}")
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        if not text.strip():
            raise RoutingError(f"Empty response from Gemini model {params.model}")
        return text

    async def _perplexity(self, prompt: str, params: CallParams) -> str:
        api_key = self.credentials.require("perplexity")
        payload = {
            "model": params.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": params.max_tokens,
            "temperature": params.temperature,
        }
        data = await self._post(
            PERPLEXITY_URL,
            payload,
            headers={"Authorization": f"Bearer {api_key}"},
        )
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise RoutingError(f"Invalid response from Perplexity model {params.model}")
        if not isinstance(content, str) or not content.strip():
            raise RoutingError(f"Empty response from Perplexity model {params.model}")
        return content

    async def _post(self, url: str, payload: dict[str, Any], headers: dict[str, str]) -> Any:
        """POST with retry on transient server errors."""
        for attempt in range(self.retries + 1):
            logger.debug("Model request to %s (attempt %s)", url, attempt + 1)
            response = await self.client.post(url, json=payload, headers=headers)
            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if status in RETRY_STATUSES and attempt < self.retries:
                    wait = 3 * (attempt + 1)
                    logger.warning(
                        "Model request failed (%s), retrying in %ss (attempt %s/%s)",
                        status, wait, attempt + 1, self.retries + 1,
                    )
                    await asyncio.sleep(wait)
                    continue
                logger.error("Model request failed: %s", status)
                raise
            return response.json()
        raise RoutingError(f"Model request to {url} exhausted its retries")

    async def aclose(self) -> None:
        await self.client.aclose()


# ---------------------------------------------------------------------------
# Structured parsing
# ---------------------------------------------------------------------------


def extract_json(text: str) -> str:
    """Extract the JSON payload from text that may carry markdown or prose."""
    text = text.strip()
    text = re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL).strip()

    fenced = re.search(r"```(?:json)?\s*(.*?)```", text, flags=re.DOTALL)
    if fenced:
        text = fenced.group(1).strip()

    start = text.find("{")
    end = text.rfind("}") + 1
    if start != -1 and end > start:
        return text[start:end]

    start = text.find("[")
    end = text.rfind("]") + 1
    if start != -1 and end > start:
        return text[start:end]

    return text


def parse_structured(text: str, schema: type[T], default: T) -> tuple[T, bool]:
    """Validate model output against ``schema``.

    Args:
        text: Raw model output
        schema: Pydantic model class the output should match
        default: Value returned on any mismatch

    Returns:
        Tuple of (parsed or default instance, True if the schema matched)
    """
    try:
        data = json.loads(extract_json(text))
        return schema.model_validate(data), True
    except (json.JSONDecodeError, SchemaError) as exc:
        logger.warning("Structured output did not match %s: %s", schema.__name__, exc)
        logger.debug("Raw response: %s", text[:500])
        return default, False


def schema_instructions(schema: type[BaseModel]) -> str:
    """Prompt suffix asking for JSON matching ``schema``."""
    schema_json = json.dumps(schema.model_json_schema(), indent=2)
    return (
        "Respond ONLY with valid JSON that matches the following schema:\n\n"
        f"{schema_json}\n\n"
        "Do not include any text before or after the JSON."
    )
