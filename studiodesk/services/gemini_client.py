"""Gemini REST clients — embeddings and grounded answer generation.

EmbeddingGateway and AnswerGenerator are plain objects built once by the
app factory (see create_app) and stored in app.extensions, so request
handlers receive them explicitly and tests can swap in fakes.

All upstream failures surface as ModelAPIError carrying the step name,
HTTP status and a truncated response body for diagnostics.
"""

import logging
from concurrent.futures import ThreadPoolExecutor

import requests

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com"


class ModelAPIError(Exception):
    """Raised when the embedding or generation model call fails."""

    def __init__(self, step, status=None, body=""):
        self.step = step
        self.status = status
        self.body = (body or "")[:300]
        super().__init__(f"{step} error: {status if status is not None else 'network'}")


class EmbeddingGateway:
    """Text → vector via the Gemini embedContent endpoint."""

    def __init__(self, api_key, model="text-embedding-004",
                 base_url=DEFAULT_BASE_URL, max_chars=8000, concurrency=5,
                 timeout=30, session=None):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_chars = max_chars
        self.concurrency = concurrency
        self.timeout = timeout
        self._http = session or requests

    def embed(self, text, task_type="RETRIEVAL_QUERY"):
        """Embed a single text. Input longer than max_chars is truncated."""
        url = f"{self.base_url}/v1/models/{self.model}:embedContent"
        payload = {
            "model": f"models/{self.model}",
            "content": {"parts": [{"text": (text or "")[:self.max_chars]}]},
            "taskType": task_type,
        }

        try:
            resp = self._http.post(
                url, params={"key": self.api_key}, json=payload, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Embedding request failed: {e}")
            raise ModelAPIError("embedding", None, str(e)) from e

        if not resp.ok:
            logger.error(f"Embedding API error: {resp.status_code} {resp.text[:300]}")
            raise ModelAPIError("embedding", resp.status_code, resp.text)

        try:
            return resp.json()["embedding"]["values"]
        except (ValueError, KeyError, TypeError) as e:
            raise ModelAPIError("embedding", resp.status_code, resp.text) from e

    def embed_batch(self, texts, task_type="RETRIEVAL_DOCUMENT"):
        """Embed many texts with at most `concurrency` calls in flight.

        Output order matches input order. The first failure (in input
        order) is re-raised as ModelAPIError.
        """
        texts = list(texts)
        if not texts:
            return []

        logger.info(f"Embedding {len(texts)} texts (concurrency={self.concurrency})")
        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            return list(pool.map(lambda t: self.embed(t, task_type), texts))


class AnswerGenerator:
    """Grounded answer generation via the Gemini generateContent endpoint."""

    def __init__(self, api_key, model="gemini-2.0-flash",
                 base_url=DEFAULT_BASE_URL, timeout=30, session=None):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = session or requests

    def generate(self, system_prompt, user_message):
        """Return the model's answer text (stripped, possibly empty)."""
        url = f"{self.base_url}/v1beta/models/{self.model}:generateContent"
        payload = {
            "contents": [
                {
                    "role": "user",
                    "parts": [{"text": f"{system_prompt}\n\n{user_message}"}],
                }
            ],
            "generationConfig": {
                "temperature": 0.1,
                "topP": 0.9,
                "maxOutputTokens": 2048,
            },
        }

        try:
            resp = self._http.post(
                url, params={"key": self.api_key}, json=payload, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Generation request failed: {e}")
            raise ModelAPIError("generate_answer", None, str(e)) from e

        if not resp.ok:
            logger.error(f"Generation API error: {resp.status_code} {resp.text[:300]}")
            raise ModelAPIError("generate_answer", resp.status_code, resp.text)

        try:
            data = resp.json()
        except ValueError as e:
            raise ModelAPIError("generate_answer", resp.status_code, resp.text) from e

        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        if not parts:
            return ""
        return (parts[0].get("text") or "").strip()


def init_model_clients(app):
    """Build the model clients from config and register them on the app."""
    api_key = app.config.get("GEMINI_API_KEY")
    base_url = app.config.get("GEMINI_BASE_URL", DEFAULT_BASE_URL)
    timeout = app.config.get("GEMINI_TIMEOUT_SECONDS", 30)

    app.extensions["embedding_gateway"] = EmbeddingGateway(
        api_key=api_key,
        model=app.config.get("GEMINI_EMBEDDING_MODEL", "text-embedding-004"),
        base_url=base_url,
        max_chars=app.config.get("EMBED_MAX_CHARS", 8000),
        concurrency=app.config.get("EMBED_CONCURRENCY", 5),
        timeout=timeout,
    )
    app.extensions["answer_generator"] = AnswerGenerator(
        api_key=api_key,
        model=app.config.get("GEMINI_ANSWER_MODEL", "gemini-2.0-flash"),
        base_url=base_url,
        timeout=timeout,
    )
