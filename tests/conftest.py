"""Shared test fixtures for the studiodesk test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, rate limits off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: an admin and two client users
- auth_header: builds an Authorization header for a user
- fake_models: deterministic embedder/generator installed on the app
"""

import json

import pytest
from werkzeug.security import generate_password_hash

from studiodesk import create_app
from studiodesk.extensions import db as _db
from studiodesk.models.user import User
from studiodesk.services.auth_service import issue_token
from studiodesk.services.gemini_client import ModelAPIError


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def seed_data(app, db_session):
    """Seed an admin and two clients.

    Returns plain ids/emails alongside the objects so tests can use them
    after the objects have been expired by a commit.
    """
    admin = User(
        email="admin@studiodesk.local",
        password_hash=generate_password_hash("admin123"),
        full_name="Admin User",
        is_admin=True,
    )
    client_user = User(
        email="jane@client.test",
        password_hash=generate_password_hash("client123"),
        full_name="Jane Client",
    )
    other_user = User(
        email="omar@other.test",
        password_hash=generate_password_hash("other123"),
        full_name="Omar Other",
    )
    _db.session.add_all([admin, client_user, other_user])
    _db.session.commit()

    return {
        "admin": admin,
        "admin_id": admin.id,
        "client": client_user,
        "client_id": client_user.id,
        "client_email": client_user.email,
        "other": other_user,
        "other_id": other_user.id,
    }


@pytest.fixture
def auth_header():
    """auth_header(user) -> {"Authorization": "Bearer <token>"}."""

    def _make(user):
        return {"Authorization": f"Bearer {issue_token(user)}"}

    return _make


# ──────────────────────────────────────────────
# Fake model clients
# ──────────────────────────────────────────────

VOCABULARY = ["invoice", "refund", "policy", "shipping", "warranty", "holiday"]


def keyword_vector(text):
    """Bag-of-words over a tiny vocabulary; similar texts get similar vectors."""
    lowered = (text or "").lower()
    return [float(lowered.count(word)) for word in VOCABULARY]


class FakeEmbedder:
    def __init__(self):
        self.fail = False
        self.calls = []

    def embed(self, text, task_type="RETRIEVAL_QUERY"):
        self.calls.append(("embed", text))
        if self.fail:
            raise ModelAPIError("embedding", 503, "unavailable")
        return keyword_vector(text)

    def embed_batch(self, texts, task_type="RETRIEVAL_DOCUMENT"):
        texts = list(texts)
        self.calls.append(("embed_batch", texts))
        if self.fail:
            raise ModelAPIError("embedding", 503, "unavailable")
        return [keyword_vector(t) for t in texts]


class FakeGenerator:
    def __init__(self):
        self.answer = "Refunds are issued within 14 days."
        self.fail = False
        self.prompts = []

    def generate(self, system_prompt, user_message):
        self.prompts.append((system_prompt, user_message))
        if self.fail:
            raise ModelAPIError("generate_answer", 500, "boom")
        return self.answer


@pytest.fixture
def fake_models(app, monkeypatch):
    """Install fake Gemini clients for the duration of one test."""
    embedder = FakeEmbedder()
    generator = FakeGenerator()
    monkeypatch.setitem(app.extensions, "embedding_gateway", embedder)
    monkeypatch.setitem(app.extensions, "answer_generator", generator)
    return embedder, generator


@pytest.fixture
def chunk_embedding():
    """chunk_embedding(text) -> JSON embedding string as stored in rag_chunks."""

    def _make(text):
        return json.dumps(keyword_vector(text))

    return _make
