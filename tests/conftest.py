import json
import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("EMBEDDING_PROVIDER", "openai")
os.environ.setdefault("PERSISTENCE_MODE", "sync_critical")

import httpx
import pytest
from sqlalchemy.orm import sessionmaker

from core.db import DB, build_engine
from core.models import Account, Base
from core.services.chat_service import ChatService
from core.services.conversation_history import ConversationHistory
from core.services.embedding_cache import EmbeddingCache
from core.services.embedding_gateway import EmbeddingGateway
from core.services.memory_persistence import BackgroundWriter, DurableWriter
from core.services.memory_retrieval import RetrievalEngine
from core.services.memory_store import MemoryStore
from core.services.reply_generation import ReplyGenerator


FOOD_WORDS = ("vegetarian", "vegan", "dinner", "eat", "lunch", "food")


def keyword_vector(text: str) -> list[float]:
    lowered = text.lower()
    if any(word in lowered for word in FOOD_WORDS):
        return [1.0, 0.1, 0.0]
    if "weather" in lowered:
        return [0.0, 1.0, 0.0]
    return [0.0, 0.0, 1.0]


class FakeEmbeddingProvider:
    """OpenAI-style embeddings endpoint served through httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.failure = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.requests.append(payload)
        if self.failure == "timeout":
            raise httpx.ReadTimeout("embedding timed out", request=request)
        if self.failure == "error":
            return httpx.Response(503, json={"error": "unavailable"})
        text = payload["input"][0] if isinstance(payload["input"], list) else payload["input"]
        return httpx.Response(200, json={"data": [{"embedding": keyword_vector(text)}]})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class FakeCompletionProvider:
    """Chat-completions endpoint that answers every request with ``reply``."""

    def __init__(self, reply: str = "How about a mushroom risotto?"):
        self.reply = reply
        self.requests = []
        self.status_code = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        if self.status_code >= 400:
            return httpx.Response(self.status_code, json={"error": "boom"})
        return httpx.Response(
            200,
            json={"choices": [{"message": {"role": "assistant", "content": self.reply}}]},
        )

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def last_prompt(self) -> str:
        return self.requests[-1]["messages"][-1]["content"]


@pytest.fixture()
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'chatrecall.sqlite'}")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    DB.engine = engine
    DB.SessionLocal = SessionLocal
    try:
        yield SessionLocal
    finally:
        DB.engine = previous_engine
        DB.SessionLocal = previous_session
        engine.dispose()


@pytest.fixture()
def make_account(session_factory):
    def _make(account_id: str = "acct-1", email: str | None = None) -> Account:
        db = session_factory()
        try:
            account = Account(
                id=account_id,
                email=email or f"{account_id}@example.com",
                name=account_id,
                token_version=0,
                is_active=True,
            )
            db.add(account)
            db.commit()
            db.refresh(account)
            db.expunge(account)
            return account
        finally:
            db.close()

    return _make


@pytest.fixture()
def account(make_account):
    return make_account()


@pytest.fixture()
def embedding_provider():
    return FakeEmbeddingProvider()


@pytest.fixture()
def completion_provider():
    return FakeCompletionProvider()


@pytest.fixture()
def memory_store(session_factory):
    return MemoryStore(session_factory=session_factory, native_vectors=False)


@pytest.fixture()
def chat_service_factory(session_factory, memory_store, embedding_provider, completion_provider):
    def _build(
        *,
        mode: str = "sync_critical",
        retrieval_timeout_seconds: float = 4.0,
        policy: str = "pull_then_filter",
    ) -> ChatService:
        gateway = EmbeddingGateway(
            provider="openai",
            base_url="http://embeddings.test",
            api_key="test-key",
            model="test-embedding",
            dimensions=3,
            transport=embedding_provider.transport(),
        )
        generator = ReplyGenerator(
            url="http://completions.test/v1/chat/completions",
            api_key="test-key",
            model="test-chat",
            system_prompt="You are a helpful assistant.",
            transport=completion_provider.transport(),
        )
        cache = EmbeddingCache(16, gateway.embed)
        return ChatService(
            cache=cache,
            retrieval=RetrievalEngine(memory_store, policy=policy),
            generator=generator,
            writer=DurableWriter(
                memory_store,
                cache,
                BackgroundWriter(maxsize=100, workers=1),
                mode=mode,
            ),
            history=ConversationHistory(session_factory),
            gateway=gateway,
            retrieval_timeout_seconds=retrieval_timeout_seconds,
        )

    return _build
