import json
import os

# settings are read once and cached; set them before anything imports the app
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["RECONCILIATION_ENABLED"] = "false"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# FORCE model registration
import pharmatrace.models  # noqa

from pharmatrace.core.config import Settings
from pharmatrace.core.deps import get_chain_adapter
from pharmatrace.db.base import Base
from pharmatrace.db.session import get_db
from pharmatrace.services.chain_adapter import MINT_VALIDATOR, SPEND_VALIDATOR, ChainAdapter
from pharmatrace.services.lifecycle_service import LifecycleService
from pharmatrace.tests.fake_chain import QUERY_SERVICE_URL, TX_SERVICE_URL, FakeChainService


@pytest.fixture(scope="function")
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(eng)
        eng.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture(scope="function")
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def blueprint_path(tmp_path):
    path = tmp_path / "plutus.json"
    path.write_text(json.dumps({
        "validators": [
            {"title": MINT_VALIDATOR, "compiledCode": "590a01mint"},
            {"title": SPEND_VALIDATOR, "compiledCode": "590a02spend"},
        ]
    }))
    return str(path)


@pytest.fixture
def chain():
    return FakeChainService()


@pytest.fixture
def adapter(chain, blueprint_path):
    return ChainAdapter(
        tx_service_url=TX_SERVICE_URL,
        query_service_url=QUERY_SERVICE_URL,
        blueprint_path=blueprint_path,
        timeout_seconds=5.0,
        transport=chain.transport,
    )


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", reconciliation_enabled=False)


@pytest.fixture
def lifecycle(adapter, settings):
    return LifecycleService(adapter, settings)


@pytest.fixture
def client(session_factory, adapter):
    from pharmatrace.main import app

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_chain_adapter] = lambda: adapter
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
