import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import StaticPool, create_engine, select
from sqlalchemy.dialects.sqlite import base as sqlite_base
from sqlalchemy.orm import sessionmaker

import conversa.models  # noqa: F401 (registers models) with Base.metadata
from conversa.api.v1.endpoints.webhooks import get_webhook_config
from conversa.core.config import settings
from conversa.core.database import Base, get_db
from conversa.main import app as fastapi_app
from conversa.models import Channel, Contact, Job, User
from conversa.services.channels import WhatsAppEngine, register_engine, reset_engines
from conversa.services.jobs import drain
from conversa.services.webhooks import WebhookConfig
from conversa.services.whatsapp import ProviderResult, reset_whatsapp_provider

# Tests drive the job queue explicitly
settings.WORKER_ENABLED = False
settings.JOB_RETRY_BACKOFF_SECONDS = [0]

# ---------------------------------------------------------------------------
# SQLite compatibility for PostgreSQL-specific types (JSONB, UUID)
# ---------------------------------------------------------------------------
sqlite_base.SQLiteTypeCompiler.visit_JSONB = lambda self, type_, **kw: self.visit_JSON(type_, **kw)

# In-memory SQLite; no PostgreSQL needed
TEST_DATABASE_URL = "sqlite://"

engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

WEBHOOK_SECRET = "test-app-secret"
VERIFY_TOKEN = "test-verify-token"


@pytest.fixture(autouse=True)
def setup_db():
    """Create all tables before each test, drop after."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    """Provide a test database session."""
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def channel(db) -> Channel:
    """The WhatsApp channel inbound deliveries resolve to."""
    whatsapp = Channel(name="whatsapp", type="whatsapp")
    db.add(whatsapp)
    db.commit()
    db.refresh(whatsapp)
    return whatsapp


@pytest.fixture
def contact(db) -> Contact:
    customer = Contact(phone="+5511999990001", name="Maria Silva")
    db.add(customer)
    db.commit()
    db.refresh(customer)
    return customer


@pytest.fixture
def agent(db) -> User:
    user = User(name="Agent Smith", email=f"agent-{uuid.uuid4().hex[:8]}@example.com")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


class FakeProvider:
    """Records outbound calls; answers with sequential provider ids."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[dict] = []

    def _result(self, **call) -> ProviderResult:
        self.sent.append(call)
        if self.fail:
            return ProviderResult(success=False, status_code=400, error="Recipient not on WhatsApp")
        return ProviderResult(success=True, status_code=200, message_id=f"wamid.OUT{len(self.sent)}")

    def send_text(self, phone, text):
        return self._result(kind="text", phone=phone, text=text)

    def send_template(self, phone, template_name, components=None, language=None):
        return self._result(
            kind="template", phone=phone, template=template_name, components=components, language=language
        )


@pytest.fixture
def provider() -> FakeProvider:
    """Fake WhatsApp provider behind the registered channel engine."""
    fake = FakeProvider()
    register_engine("whatsapp", WhatsAppEngine(provider=fake))
    yield fake
    reset_engines()
    reset_whatsapp_provider()


@pytest.fixture
def session_factory():
    """Session factory bound to the test engine, for code that opens its own sessions."""
    return TestSessionLocal


@pytest.fixture
def run_jobs(db):
    """Drain the job queue with fresh sessions, as the worker pool does."""

    def _run(limit: int | None = None) -> int:
        db.commit()
        processed = drain(TestSessionLocal, limit=limit)
        db.expire_all()
        return processed

    return _run


@pytest.fixture
def jobs(db):
    """Return pending jobs, optionally filtered by kind/handler."""

    def _jobs(kind: str | None = None, handler: str | None = None, status: str = "pending") -> list[Job]:
        query = select(Job).where(Job.status == status)
        if kind is not None:
            query = query.where(Job.kind == kind)
        if handler is not None:
            query = query.where(Job.handler == handler)
        return list(db.execute(query.order_by(Job.available_at)).scalars().all())

    return _jobs


@pytest.fixture
def client(db):
    """TestClient with overridden DB and webhook-secret dependencies."""

    def _override_get_db():
        try:
            yield db
        finally:
            pass

    fastapi_app.dependency_overrides[get_db] = _override_get_db
    fastapi_app.dependency_overrides[get_webhook_config] = lambda: WebhookConfig(
        verify_token=VERIFY_TOKEN, app_secret=WEBHOOK_SECRET
    )
    yield TestClient(fastapi_app)
    fastapi_app.dependency_overrides.clear()
