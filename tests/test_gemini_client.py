"""Tests for the Gemini REST clients (HTTP layer mocked).

Covers:
- embed() request shape, truncation and response parsing
- non-2xx and network failures surface as ModelAPIError
- embed_batch() preserves input order
- generate() response parsing (text, empty candidates)
"""

from unittest.mock import MagicMock

import pytest
import requests

from studiodesk.services.gemini_client import (
    AnswerGenerator,
    EmbeddingGateway,
    ModelAPIError,
)


def _response(status=200, json_data=None, text=""):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.json.return_value = json_data
    resp.text = text
    return resp


class TestEmbeddingGateway:

    def test_embed_posts_and_parses_values(self):
        http = MagicMock()
        http.post.return_value = _response(json_data={"embedding": {"values": [0.1, 0.2]}})
        gateway = EmbeddingGateway("key123", session=http, max_chars=5)

        vector = gateway.embed("abcdefghij", task_type="RETRIEVAL_QUERY")

        assert vector == [0.1, 0.2]
        url = http.post.call_args.args[0]
        kwargs = http.post.call_args.kwargs
        assert url.endswith("/v1/models/text-embedding-004:embedContent")
        assert kwargs["params"] == {"key": "key123"}
        assert kwargs["json"]["taskType"] == "RETRIEVAL_QUERY"
        assert kwargs["json"]["content"]["parts"][0]["text"] == "abcde"

    def test_embed_http_error_raises(self):
        http = MagicMock()
        http.post.return_value = _response(status=429, text="x" * 1000)
        gateway = EmbeddingGateway("key", session=http)

        with pytest.raises(ModelAPIError) as exc:
            gateway.embed("hello")

        assert exc.value.status == 429
        assert exc.value.step == "embedding"
        assert len(exc.value.body) == 300

    def test_embed_network_error_raises(self):
        http = MagicMock()
        http.post.side_effect = requests.exceptions.ConnectionError("down")
        gateway = EmbeddingGateway("key", session=http)

        with pytest.raises(ModelAPIError) as exc:
            gateway.embed("hello")
        assert exc.value.status is None

    def test_embed_malformed_body_raises(self):
        http = MagicMock()
        http.post.return_value = _response(json_data={"unexpected": True})
        gateway = EmbeddingGateway("key", session=http)

        with pytest.raises(ModelAPIError):
            gateway.embed("hello")

    def test_embed_batch_preserves_order(self):
        gateway = EmbeddingGateway("key", concurrency=3)
        gateway.embed = lambda text, task_type: [float(len(text))]

        vectors = gateway.embed_batch(["a", "bbb", "cc", "dddd", "e"])

        assert vectors == [[1.0], [3.0], [2.0], [4.0], [1.0]]

    def test_embed_batch_empty(self):
        assert EmbeddingGateway("key").embed_batch([]) == []

    def test_embed_batch_propagates_failure(self):
        gateway = EmbeddingGateway("key")

        def flaky(text, task_type):
            if text == "bad":
                raise ModelAPIError("embedding", 500, "")
            return [1.0]

        gateway.embed = flaky
        with pytest.raises(ModelAPIError):
            gateway.embed_batch(["ok", "bad", "ok"])


class TestAnswerGenerator:

    def test_generate_returns_stripped_text(self):
        http = MagicMock()
        http.post.return_value = _response(json_data={
            "candidates": [{"content": {"parts": [{"text": "  The answer.  "}]}}]
        })
        generator = AnswerGenerator("key", session=http)

        answer = generator.generate("SYSTEM", "USER")

        assert answer == "The answer."
        payload = http.post.call_args.kwargs["json"]
        assert payload["generationConfig"]["temperature"] == 0.1
        assert payload["contents"][0]["parts"][0]["text"] == "SYSTEM\n\nUSER"
        assert http.post.call_args.args[0].endswith(
            "/v1beta/models/gemini-2.0-flash:generateContent"
        )

    def test_generate_no_candidates_is_empty(self):
        http = MagicMock()
        http.post.return_value = _response(json_data={"candidates": []})
        assert AnswerGenerator("key", session=http).generate("s", "u") == ""

    def test_generate_http_error_raises(self):
        http = MagicMock()
        http.post.return_value = _response(status=500, text="boom")
        with pytest.raises(ModelAPIError) as exc:
            AnswerGenerator("key", session=http).generate("s", "u")
        assert exc.value.step == "generate_answer"


class TestAppWiring:

    def test_clients_registered_on_app(self, app):
        assert isinstance(app.extensions["embedding_gateway"], EmbeddingGateway)
        assert isinstance(app.extensions["answer_generator"], AnswerGenerator)
        assert app.extensions["embedding_gateway"].concurrency == 5
