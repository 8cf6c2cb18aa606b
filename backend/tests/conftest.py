"""Pytest configuration and fixtures for backend tests."""

from typing import AsyncGenerator, Callable

import httpx
import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import JSON, StaticPool, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.database import Base, get_db
from app.knowledge.assets import KnowledgeAssets, load_assets
from app.knowledge.assistant import DharmaAssistant
from app.knowledge.classifier import DomainClassifier
from app.knowledge.extractor import AnswerExtractor
from app.knowledge.scorer import RelevanceScorer
from app.main import app as main_app
from app.services.knowledge_search import KnowledgeSearchClient


# -------------------------------------------------------------------------
# SQLite JSONB Compatibility - Convert JSONB to JSON for SQLite
# -------------------------------------------------------------------------

@event.listens_for(Base.metadata, "before_create")
def _convert_jsonb_to_json(target, connection, **kw):
    """Convert JSONB columns to JSON for SQLite compatibility."""
    if connection.dialect.name == "sqlite":
        for table in target.tables.values():
            for column in table.columns:
                if isinstance(column.type, JSONB):
                    column.type = JSON()

# Import all models to ensure they're registered with Base
from app.models import Document, DocumentChunk  # noqa: E402,F401


SEARCH_BASE_URL = "https://search.test"


# -------------------------------------------------------------------------
# Database Fixtures
# -------------------------------------------------------------------------


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for testing."""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with async_session_maker() as session:
        yield session
        await session.rollback()


# -------------------------------------------------------------------------
# Knowledge Fixtures
# -------------------------------------------------------------------------


@pytest.fixture(scope="session")
def assets() -> KnowledgeAssets:
    """Bundled knowledge assets."""
    return load_assets()


@pytest.fixture
async def make_search_client(
    assets: KnowledgeAssets,
) -> AsyncGenerator[Callable[..., KnowledgeSearchClient], None]:
    """Factory for knowledge search clients backed by a mock transport.

    ``handler`` receives each ``httpx.Request`` and returns an
    ``httpx.Response`` (or raises an ``httpx`` error).
    """
    clients: list[KnowledgeSearchClient] = []

    def factory(
        handler: Callable[[httpx.Request], httpx.Response] | None = None,
        api_key: str | None = "test-key",
        models: tuple[str, ...] = ("sonar", "sonar-pro"),
        metrics=None,
    ) -> KnowledgeSearchClient:
        def unreachable(request: httpx.Request) -> httpx.Response:
            raise AssertionError(f"Unexpected external request: {request.url}")

        client = KnowledgeSearchClient(
            api_key=api_key,
            models=models,
            system_prompts={
                language: assets.response(language, "system_prompt")
                for language in assets.languages
            },
            default_language=assets.default_language,
            client=httpx.AsyncClient(
                transport=httpx.MockTransport(handler or unreachable),
                base_url=SEARCH_BASE_URL,
            ),
            metrics=metrics,
        )
        clients.append(client)
        return client

    yield factory

    for client in clients:
        await client.aclose()


@pytest.fixture
def make_assistant(assets: KnowledgeAssets) -> Callable[..., DharmaAssistant]:
    """Factory for assistants wired with the bundled assets."""

    def factory(**kwargs) -> DharmaAssistant:
        kwargs.setdefault("classifier", DomainClassifier(assets))
        kwargs.setdefault("scorer", RelevanceScorer(assets.scoring_vocabulary))
        kwargs.setdefault(
            "extractor", AnswerExtractor(assets.interrogatives, assets.stopwords)
        )
        return DharmaAssistant(assets=assets, **kwargs)

    return factory


@pytest.fixture
def assistant(make_assistant, make_search_client) -> DharmaAssistant:
    """Assistant whose external lookup is not configured."""
    return make_assistant(search=make_search_client(api_key=None))


# -------------------------------------------------------------------------
# App Fixtures
# -------------------------------------------------------------------------


@pytest.fixture
def app(db_session: AsyncSession, assistant: DharmaAssistant) -> FastAPI:
    """Create a FastAPI app instance with test database and assistant."""

    async def override_get_db():
        yield db_session

    main_app.dependency_overrides[get_db] = override_get_db
    # ASGITransport does not run the lifespan
    main_app.state.assistant = assistant
    yield main_app
    main_app.dependency_overrides.clear()


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
async def user_client(client: AsyncClient) -> AsyncClient:
    """HTTP client identifying itself as a test user."""
    client.headers["X-User-ID"] = "user-1"
    return client
