"""Tests for roundtable.llm — HttpLLM, RoutedLLM and EchoLLM."""

import json

import pytest
import httpx
from unittest.mock import AsyncMock, MagicMock, patch

from roundtable.llm import EchoLLM, HttpLLM, LLMError, RoutedLLM


def _mock_response(body: dict, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    resp.raise_for_status = MagicMock(
        side_effect=None if status < 400 else httpx.HTTPStatusError(
            "", request=MagicMock(), response=resp
        )
    )
    return resp


def _patched_post(body: dict) -> AsyncMock:
    return AsyncMock(return_value=_mock_response(body))


class Recorder:
    def __init__(self, answer: str) -> None:
        self.answer = answer
        self.stages: list[str] = []

    async def __call__(self, stage: str, prompt: str) -> str:
        self.stages.append(stage)
        return self.answer


# ---------------------------------------------------------------------------
# EchoLLM
# ---------------------------------------------------------------------------

class TestEchoLLM:
    async def test_returns_prompt_unchanged(self) -> None:
        assert await EchoLLM()("director", "who speaks?") == "who speaks?"


# ---------------------------------------------------------------------------
# HttpLLM — KoboldCpp format
# ---------------------------------------------------------------------------

class TestHttpLLMKoboldCpp:
    @pytest.fixture
    def llm(self) -> HttpLLM:
        return HttpLLM(provider_url="http://localhost:5001")

    async def test_happy_path(self, llm: HttpLLM) -> None:
        mock_post = _patched_post({"results": [{"text": '{"response": "Ahoy!"}'}]})
        with patch("httpx.AsyncClient.post", mock_post):
            result = await llm("character", "Speak as Ava.")
        assert result == '{"response": "Ahoy!"}'

    async def test_request_shape(self, llm: HttpLLM) -> None:
        mock_post = _patched_post({"results": [{"text": "ok"}]})
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("director", "my prompt")
        assert mock_post.call_args[0][0] == "http://localhost:5001/api/v1/generate"
        assert mock_post.call_args.kwargs["json"] == {"prompt": "my prompt"}
        assert "Authorization" not in mock_post.call_args.kwargs["headers"]

    async def test_max_tokens_sent_as_max_length(self) -> None:
        llm = HttpLLM(provider_url="http://localhost:5001/", max_tokens=300)
        mock_post = _patched_post({"results": [{"text": "ok"}]})
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("world", "prompt")
        assert mock_post.call_args[0][0] == "http://localhost:5001/api/v1/generate"
        assert mock_post.call_args.kwargs["json"] == {"prompt": "prompt", "max_length": 300}

    async def test_bearer_token_sent_when_api_key_set(self) -> None:
        llm = HttpLLM(provider_url="http://localhost:5001", api_key="secret")
        mock_post = _patched_post({"results": [{"text": "ok"}]})
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("director", "prompt")
        assert mock_post.call_args.kwargs["headers"]["Authorization"] == "Bearer secret"

    async def test_connect_error_raises_llm_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Cannot connect"):
                await llm("director", "prompt")

    async def test_timeout_raises_llm_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.TimeoutException("timeout"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="timed out"):
                await llm("director", "prompt")

    async def test_http_error_raises_llm_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({}, status=503))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="HTTP 503"):
                await llm("director", "prompt")

    async def test_malformed_response_raises_llm_error(self, llm: HttpLLM) -> None:
        mock_post = _patched_post({"unexpected": "format"})
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Unexpected response format"):
                await llm("director", "prompt")

    async def test_read_error_raises_llm_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.ReadError("connection reset"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="failed"):
                await llm("director", "prompt")

    async def test_non_json_body_raises_llm_error(self, llm: HttpLLM) -> None:
        resp = _mock_response({})
        resp.json.side_effect = json.JSONDecodeError("Expecting value", "<html>", 0)
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            with pytest.raises(LLMError, match="Unreadable response body"):
                await llm("director", "prompt")

    async def test_list_body_raises_llm_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(["not", "a", "dict"]))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Unreadable response body"):
                await llm("director", "prompt")

    async def test_non_text_completion_raises_llm_error(self, llm: HttpLLM) -> None:
        mock_post = _patched_post({"results": [{"text": 42}]})
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="not text"):
                await llm("director", "prompt")


# ---------------------------------------------------------------------------
# HttpLLM — OpenAI format
# ---------------------------------------------------------------------------

class TestHttpLLMOpenAI:
    @pytest.fixture
    def llm(self) -> HttpLLM:
        return HttpLLM(
            provider_url="http://localhost:8080",
            provider_format="openai",
            model="mistral-7b",
            max_tokens=256,
        )

    async def test_request_shape(self, llm: HttpLLM) -> None:
        mock_post = _patched_post({"choices": [{"text": "ok"}]})
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("narrator", "prompt")
        assert mock_post.call_args[0][0] == "http://localhost:8080/v1/completions"
        assert mock_post.call_args.kwargs["json"] == {
            "prompt": "prompt", "model": "mistral-7b", "max_tokens": 256,
        }

    async def test_happy_path(self, llm: HttpLLM) -> None:
        mock_post = _patched_post({"choices": [{"text": "Fog rolls in."}]})
        with patch("httpx.AsyncClient.post", mock_post):
            assert await llm("narrator", "prompt") == "Fog rolls in."

    async def test_kobold_body_is_rejected(self, llm: HttpLLM) -> None:
        mock_post = _patched_post({"results": [{"text": "wrong backend"}]})
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Unexpected response format"):
                await llm("narrator", "prompt")

    async def test_non_dict_choice_raises_llm_error(self, llm: HttpLLM) -> None:
        mock_post = _patched_post({"choices": ["text"]})
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError):
                await llm("narrator", "prompt")


# ---------------------------------------------------------------------------
# RoutedLLM
# ---------------------------------------------------------------------------

class TestRoutedLLM:
    async def test_stage_route_wins_over_default(self) -> None:
        director, default = Recorder("D"), Recorder("X")
        llm = RoutedLLM({"director": director}, default=default)
        assert await llm("director", "p") == "D"
        assert await llm("world", "p") == "X"
        assert director.stages == ["director"]
        assert default.stages == ["world"]

    async def test_unrouted_stage_without_default_fails(self) -> None:
        llm = RoutedLLM({"director": Recorder("D")})
        assert llm.route("narrator") is None
        with pytest.raises(LLMError, match="narrator"):
            await llm("narrator", "p")
