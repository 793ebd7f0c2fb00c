import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_TABLES", "false")
os.environ.setdefault("WORKER_ENABLED", "false")

from uuid import uuid4  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from setter_api.config import Settings  # noqa: E402
from setter_api.database import Base  # noqa: E402
from setter_api.models import AgentConfig, PlatformAccount  # noqa: E402
from setter_api.services.conversation_store import SqlConversationStore  # noqa: E402


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    """Real SQLite session shared with the store through the static pool."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def store(session_factory):
    return SqlConversationStore(session_factory)


@pytest.fixture
def test_settings():
    return Settings(
        database_url="sqlite://",
        llm_api_key="test-key",
        meta_verify_token="verify-me",
        meta_app_secret=None,
        job_max_attempts=3,
        job_retry_backoff_seconds=2.0,
        job_busy_requeue_seconds=1.0,
        conversation_lock_wait_seconds=1.0,
        worker_poll_interval_seconds=0.01,
        admin_token="admin-secret",
    )


@pytest.fixture
def make_agent(session_factory):
    """Seed an agent config (plus its platform account) and return its id."""

    def _make_agent(
        *,
        is_active: bool = True,
        criteria=None,
        platform: str = "MESSENGER",
        account_id: str | None = "page-1",
        access_token: str | None = "page-token",
    ):
        with session_factory() as db:
            agent = AgentConfig(
                id=uuid4(),
                name="Setter",
                system_prompt="You are a friendly sales setter.",
                qualification_criteria=criteria
                if criteria is not None
                else {"description": "Has a budget and a timeline", "minScore": 7},
                is_active=is_active,
            )
            db.add(agent)
            if account_id:
                db.add(
                    PlatformAccount(
                        agent_config_id=agent.id,
                        platform=platform,
                        account_id=account_id,
                        access_token=access_token,
                    )
                )
            db.commit()
            return agent.id

    return _make_agent


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("LLM_API_KEY", "test-key")
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.delenv("ALERT_BOT_TOKEN", raising=False)
    monkeypatch.delenv("ALERT_CHAT_ID", raising=False)
