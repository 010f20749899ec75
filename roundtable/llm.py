"""LLM client — HTTP connection to a text-completion backend.

Agents call an LLM callable matching the protocol:

    async def __call__(self, stage: str, prompt: str) -> str: ...

`stage` names the agent that is calling ("director", "world", "character",
"summarize", "narrator", "creator", "visual"). RoutedLLM uses it to pick a
connection; the other implementations only log it.

Implementations:

    HttpLLM    — real HTTP client, supports KoboldCpp and OpenAI-compatible
                 backends. Selected by provider_format.
    RoutedLLM  — maps stages to HttpLLM instances with a default fallback.
    EchoLLM    — returns the prompt back unchanged. Useful for smoke-testing
                 the engine wiring without a running model.

Production code builds a RoutedLLM from config (roundtable.config.build_llm).
Tests use StubLLM (conftest.py) instead.
"""

from __future__ import annotations

import logging
from typing import Literal, Protocol

import httpx

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol — every LLM implementation must match this signature
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(self, stage: str, prompt: str) -> str: ...


# ---------------------------------------------------------------------------
# HttpLLM — connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["koboldcpp", "openai"]


class HttpLLM:
    """Async HTTP client for text-completion backends.

    Supported formats:
      "koboldcpp"  — POST /api/v1/generate  {"prompt": ..., "max_length"?}
                     Response: {"results": [{"text": "..."}]}
      "openai"     — POST /v1/completions   {"model": ..., "prompt": ..., "max_tokens"?}
                     Response: {"choices": [{"text": "..."}]}

    Args:
        provider_url:    Base URL of the backend, e.g. "http://localhost:5001".
        api_key:         Bearer token, or empty string if not required.
        provider_format: Wire format to use. Defaults to "koboldcpp".
        model:           Model identifier, used only by the openai format.
        timeout:         HTTP timeout in seconds. Defaults to 120.
        max_tokens:      Completion length cap, omitted from the body when 0.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "koboldcpp",
        model: str = "",
        timeout: float = 120.0,
        max_tokens: int = 0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout
        self._max_tokens = max_tokens

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, prompt: str) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "openai":
            url = f"{self._base_url}/v1/completions"
            body: dict = {"prompt": prompt}
            if self._model:
                body["model"] = self._model
            if self._max_tokens:
                body["max_tokens"] = self._max_tokens
            return url, body

        # koboldcpp (default)
        url = f"{self._base_url}/api/v1/generate"
        body = {"prompt": prompt}
        if self._max_tokens:
            body["max_length"] = self._max_tokens
        return url, body

    def _parse_response(self, data: dict) -> str:
        """Extract the completion text from the response body."""
        if self._format == "openai":
            choices = data.get("choices")
            if not choices or "text" not in choices[0]:
                raise LLMError("Unexpected response format from OpenAI-compatible backend")
            return choices[0]["text"]

        # koboldcpp
        results = data.get("results")
        if not results or "text" not in results[0]:
            raise LLMError("Unexpected response format from KoboldCpp backend")
        return results[0]["text"]

    async def __call__(self, stage: str, prompt: str) -> str:
        url, body = self._build_request(prompt)
        logger.debug("llm call stage=%s url=%s prompt_len=%d", stage, url, len(prompt))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"LLM request to {self._base_url} failed: {e}") from e

        try:
            text = self._parse_response(resp.json())
        except (ValueError, AttributeError, TypeError, KeyError, IndexError) as e:
            raise LLMError(f"Unreadable response body from LLM backend: {e}") from e
        if not isinstance(text, str):
            raise LLMError("Unreadable response body from LLM backend: completion is not text")
        logger.debug("llm response stage=%s len=%d", stage, len(text))
        return text


# ---------------------------------------------------------------------------
# RoutedLLM — one connection per stage, with a default
# ---------------------------------------------------------------------------

class RoutedLLM:
    """Dispatches each call to the LLM assigned to its stage.

    Stages without an explicit route use `default`. If there is no default
    either, the call fails with LLMError, the same way an unreachable
    backend would.
    """

    def __init__(self, routes: dict[str, LLM], default: LLM | None = None) -> None:
        self._routes = dict(routes)
        self._default = default

    def route(self, stage: str) -> LLM | None:
        return self._routes.get(stage, self._default)

    async def __call__(self, stage: str, prompt: str) -> str:
        target = self.route(stage)
        if target is None:
            raise LLMError(f"No LLM connection assigned to stage {stage!r}")
        return await target(stage, prompt)


# ---------------------------------------------------------------------------
# EchoLLM — returns the prompt unchanged; useful for wiring smoke tests
# ---------------------------------------------------------------------------

class EchoLLM:
    """Returns the prompt text as-is. No network calls.

    The output won't be valid JSON for structured stages, so every
    structured step falls through recovery to its plain-text fallback.
    Use StubLLM in tests when you need controlled responses.
    """

    async def __call__(self, stage: str, prompt: str) -> str:
        logger.debug("EchoLLM stage=%s prompt_len=%d", stage, len(prompt))
        return prompt


# ---------------------------------------------------------------------------
# LLMError — raised for all connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""
