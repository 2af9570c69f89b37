import os
import tempfile

# Point the app at a throwaway database before any app module is imported
_db_dir = tempfile.mkdtemp(prefix="reart-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'test.db')}"
os.environ["KHALTI_ENVIRONMENT"] = "test"
os.environ["BASE_URL"] = "http://testserver"

import pytest
from fastapi.testclient import TestClient

from app.db.session import Base, SessionLocal, engine
from app.main import app
from app.services.khalti_service import KhaltiService, get_khalti_service
from helpers import FakeSession


@pytest.fixture(autouse=True)
def database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def khalti_session():
    return FakeSession()


@pytest.fixture
def khalti(khalti_session):
    return KhaltiService(secret_key="test_secret_key", environment="test", session=khalti_session)


@pytest.fixture
def client(khalti):
    app.dependency_overrides[get_khalti_service] = lambda: khalti
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
