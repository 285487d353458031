"""Tests for the chat-completion client."""

import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from doc_graph.config import Config
from doc_graph.llm import ChatCompletionClient, LLMConfig, LLMError, parse_json_array


def _response(status=200, content=None, body=None):
    resp = MagicMock()
    resp.status_code = status
    resp.text = "err"
    if body is not None:
        resp.json.return_value = body
    else:
        resp.json.return_value = {"choices": [{"message": {"content": content}}]}
    return resp


@pytest.fixture
def client():
    return ChatCompletionClient(
        LLMConfig(endpoint="http://llm.test/v1/chat/completions", api_key="k", max_retries=2)
    )


class TestParse:
    def test_plain_array(self):
        assert parse_json_array('[{"name": "a"}]') == [{"name": "a"}]

    def test_fenced_array(self):
        assert parse_json_array('```json\n[1, 2]\n```') == [1, 2]

    def test_object_rejected(self):
        with pytest.raises(ValueError):
            parse_json_array('{"name": "a"}')

    def test_garbage_rejected(self):
        with pytest.raises(ValueError):
            parse_json_array("sorry, I cannot help")


class TestConfig:
    def test_from_config(self):
        cfg = Config(llm_endpoint="http://x", llm_model="m", llm_timeout=5.0)
        llm_cfg = LLMConfig.from_config(cfg)
        assert llm_cfg.endpoint == "http://x"
        assert llm_cfg.model == "m"
        assert llm_cfg.timeout == 5.0

    def test_endpoint_required(self):
        with pytest.raises(ValueError):
            ChatCompletionClient(LLMConfig(endpoint=""))


class TestCallAPI:
    @patch("doc_graph.llm.requests.post")
    def test_request_shape(self, mock_post, client):
        mock_post.return_value = _response(content="[]")
        assert client._call_api([{"role": "user", "content": "hi"}]) == "[]"
        kwargs = mock_post.call_args.kwargs
        assert kwargs["json"]["model"] == "gpt-3.5-turbo"
        assert kwargs["json"]["temperature"] == 0.0
        assert kwargs["json"]["messages"] == [{"role": "user", "content": "hi"}]
        assert kwargs["headers"]["Authorization"] == "Bearer k"
        assert kwargs["timeout"] == 30.0

    @patch("doc_graph.llm.time.sleep")
    @patch("doc_graph.llm.requests.post")
    def test_retries_on_503(self, mock_post, mock_sleep, client):
        mock_post.side_effect = [_response(status=503), _response(content="[1]")]
        assert client._call_api([]) == "[1]"
        assert mock_post.call_count == 2

    @patch("doc_graph.llm.time.sleep")
    @patch("doc_graph.llm.requests.post")
    def test_gives_up(self, mock_post, mock_sleep, client):
        mock_post.side_effect = requests.ConnectionError("down")
        with pytest.raises(LLMError):
            client._call_api([])
        assert mock_post.call_count == 2

    @patch("doc_graph.llm.requests.post")
    def test_client_error_not_retried(self, mock_post, client):
        mock_post.return_value = _response(status=401)
        with pytest.raises(LLMError):
            client._call_api([])
        assert mock_post.call_count == 1

    @patch("doc_graph.llm.requests.post")
    def test_malformed_body(self, mock_post, client):
        mock_post.return_value = _response(body={"unexpected": True})
        with pytest.raises(LLMError):
            client._call_api([])

    @patch("doc_graph.llm.requests.post")
    def test_request_filters(self, mock_post):
        def add_trace(url, payload, headers):
            headers["X-Trace"] = "abc"
            payload["max_tokens"] = 64

        client = ChatCompletionClient(LLMConfig(endpoint="http://x", filters=[add_trace]))
        mock_post.return_value = _response(content="[]")
        client._call_api([])
        kwargs = mock_post.call_args.kwargs
        assert kwargs["headers"]["X-Trace"] == "abc"
        assert kwargs["json"]["max_tokens"] == 64
        assert "Authorization" not in kwargs["headers"]


class TestOutcome:
    @patch("doc_graph.llm.requests.post")
    async def test_success(self, mock_post, client):
        mock_post.return_value = _response(content=json.dumps([{"name": "北京"}]))
        outcome = await client.complete_json_array("sys", "user")
        assert outcome.ok
        assert outcome.items == [{"name": "北京"}]
        messages = mock_post.call_args.kwargs["json"]["messages"]
        assert [m["role"] for m in messages] == ["system", "user"]

    @patch("doc_graph.llm.requests.post")
    async def test_non_json_is_failure(self, mock_post, client):
        mock_post.return_value = _response(content="not json")
        outcome = await client.complete_json_array("sys", "user")
        assert not outcome.ok
        assert outcome.items == []
        assert outcome.error

    @patch("doc_graph.llm.requests.post")
    async def test_http_error_is_failure(self, mock_post, client):
        mock_post.return_value = _response(status=400)
        outcome = await client.complete_json_array("sys", "user")
        assert not outcome.ok
        assert "HTTP 400" in outcome.error
