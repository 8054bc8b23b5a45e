import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from flint.config import Settings
from flint.database import enable_sqlite_foreign_keys, get_db
from flint.models import SNAPTRADE, Account, Base, Connection
from flint.services.credential_store import CredentialStore
from flint.services.encryption import EncryptionService


@pytest.fixture
def engine():
    """In-memory SQLite shared by every session of a test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        snaptrade_client_id="",
        snaptrade_consumer_key="",
        snaptrade_webhook_secret="snaptrade-webhook-secret",
        teller_environment="sandbox",
        teller_webhook_secret="teller-webhook-secret",
        encryption_master_key="test-master-key",
        encryption_salt="test-salt",
        enable_background_sync=False,
    )


@pytest.fixture
def encryption():
    return EncryptionService("test-master-key", "test-salt")


@pytest.fixture
def store(session_factory, encryption):
    return CredentialStore(session_factory, encryption)


@pytest.fixture
def make_account(db_session):
    """Insert a connection and account for a user."""

    def _make(
        account_id: str = "acct-1",
        connection_id: str = "auth-1",
        user_id: str = "user-1",
        provider: str = SNAPTRADE,
        **fields,
    ) -> Account:
        connection = db_session.get(Connection, connection_id)
        if connection is None:
            connection = Connection(id=connection_id, local_user_id=user_id, provider=provider)
            db_session.add(connection)
        account = Account(
            id=account_id,
            connection_id=connection_id,
            name=fields.pop("name", "Brokerage"),
            **fields,
        )
        db_session.add(account)
        db_session.commit()
        return account

    return _make


@pytest.fixture
def client(session_factory):
    """Test client on the real app with the database swapped for the test engine."""
    from flint.main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
    if hasattr(app.state, "context"):
        del app.state.context
