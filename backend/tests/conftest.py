import json
import os
from datetime import datetime, timedelta
from typing import Callable, Generator, List, Optional, Tuple

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app
os.environ["MASTER_KEY"] = "test_master_key_32_characters_minimum_length"
os.environ["ADMIN_PASSWORD"] = "admin_password"
os.environ["DB_TYPE"] = "sqlite"
# Use file-based SQLite with check_same_thread=False for thread safety in tests
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["DEBUG"] = "true"
os.environ["HOST"] = "0.0.0.0"
os.environ["PORT"] = "8000"
os.environ["CRL_SCHEDULER_ENABLED"] = "false"

# Import app after setting environment variables
from lightcrl.main import app
from lightcrl.database import Base, get_db, engine as app_engine
from lightcrl.models import (
    Certificate,
    CertificateStatus,
    CertificateType,
    CRLDistributionPoint,
    Key,
    KeyAlgorithm,
)
from lightcrl.security import encrypt_key_password, encrypt_private_key
from lightcrl.services import crypto_service
from lightcrl.services.collaborators import DatabaseRevocationSource, EngineContext
from lightcrl.services.distribution import HttpPublisher

T0 = datetime(2026, 3, 1, 12, 0, 0)


class FixedClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


class RecordingNotifier:
    def __init__(self):
        self.events: List[Tuple[str, dict]] = []

    def notify(self, event: str, payload: dict) -> None:
        self.events.append((event, payload))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]


class PublishLog:
    """MockTransport handler: hosts starting with ``fail`` answer 503."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.failing_hosts = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host.startswith("fail") or host in self.failing_hosts:
            return httpx.Response(503)
        if request.method == "PUT":
            return httpx.Response(201)
        return httpx.Response(200)

    def puts(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == "PUT"]


# ============================================
# API fixtures
# ============================================


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Create a fresh database for each test"""
    connection = app_engine.connect()
    transaction = connection.begin()

    # Create all tables
    Base.metadata.create_all(bind=connection)

    # Create a session bound to the connection
    TestingSessionLocal = sessionmaker(bind=connection)
    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture
def api_publish_log() -> PublishLog:
    return PublishLog()


@pytest.fixture(scope="function")
def client(db: Session, api_publish_log: PublishLog) -> Generator[TestClient, None, None]:
    """Create a test client with database and publisher overrides"""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        app.state.crl_context = EngineContext(
            publisher=HttpPublisher(transport=httpx.MockTransport(api_publish_log)),
            publish_timeout=2.0,
        )
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def auth_token(client: TestClient) -> str:
    """Get authentication token for testing"""
    response = client.post(
        "/api/auth/login",
        json={"username": "admin", "password": "admin_password"},
    )
    assert response.status_code == 200
    data = response.json()
    assert "token" in data
    return data["token"]


@pytest.fixture
def auth_headers(auth_token: str) -> dict:
    """Get headers with authentication token"""
    return {"Authorization": f"Bearer {auth_token}"}


# ============================================
# Engine fixtures (isolated in-memory database)
# ============================================


@pytest.fixture
def session_factory() -> Generator[Callable[[], Session], None, None]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def session(session_factory) -> Generator[Session, None, None]:
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def publish_log() -> PublishLog:
    return PublishLog()


@pytest.fixture
def ctx(clock: FixedClock, notifier: RecordingNotifier, publish_log: PublishLog) -> EngineContext:
    return EngineContext(
        revocation_factory=lambda db: DatabaseRevocationSource(db, clock),
        publisher=HttpPublisher(transport=httpx.MockTransport(publish_log)),
        notifier=notifier,
        clock=clock,
        publish_timeout=2.0,
        publish_max_workers=4,
    )


# ============================================
# Data factories
# ============================================


@pytest.fixture
def make_ca() -> Callable[..., Certificate]:
    """Store a self-signed CA and its encrypted key; returns the certificate row."""

    def _make_ca(
        db: Session,
        cn: str = "Test Root CA",
        algorithm: KeyAlgorithm = KeyAlgorithm.ECDSA,
        key_size: Optional[int] = None,
        not_before: datetime = T0 - timedelta(days=30),
        password: Optional[str] = None,
    ) -> Certificate:
        private_key, _ = crypto_service.generate_key_pair(algorithm, key_size)
        pem = crypto_service.private_key_to_pem(private_key)
        key = Key(
            algorithm=algorithm.value,
            encrypted_pem=encrypt_private_key(pem, password),
            encrypted_password=encrypt_key_password(password) if password else None,
        )
        db.add(key)
        db.flush()

        cert_der = crypto_service.create_ca_certificate(
            private_key, {"CN": cn, "O": "LightCRL Tests"}, not_before=not_before
        )
        cert = crypto_service.load_certificate(cert_der)
        ca = Certificate(
            type=CertificateType.ROOT,
            key_id=key.id,
            serial_number=crypto_service.hex_serial(cert.serial_number),
            subject_cn=cn,
            not_before=not_before,
            not_after=not_before + timedelta(days=3650),
            certificate_der=cert_der,
            meta_data="{}",
        )
        db.add(ca)
        db.commit()
        db.refresh(ca)
        return ca

    return _make_ca


@pytest.fixture
def make_leaf() -> Callable[..., Certificate]:
    """Store a leaf issued by ``ca``; revoked when ``revoked_at`` is given."""

    def _make_leaf(
        db: Session,
        ca: Certificate,
        serial: int,
        revoked_at: Optional[datetime] = None,
        reason: str = "unspecified",
        not_after: Optional[datetime] = None,
    ) -> Certificate:
        leaf = Certificate(
            type=CertificateType.LEAF,
            parent_id=ca.id,
            serial_number=crypto_service.hex_serial(serial),
            subject_cn=f"leaf-{serial}",
            not_before=T0 - timedelta(days=10),
            not_after=not_after or T0 + timedelta(days=365),
            status=CertificateStatus.REVOKED if revoked_at else CertificateStatus.VALID,
            certificate_der=b"\x30\x00",
            meta_data=json.dumps({"revocation_reason": reason}) if revoked_at else "{}",
            revoked_at=revoked_at,
        )
        db.add(leaf)
        db.commit()
        return leaf

    return _make_leaf


@pytest.fixture
def make_point() -> Callable[..., CRLDistributionPoint]:
    def _make_point(db: Session, ca: Certificate, url: str, priority: int = 100, enabled: bool = True):
        point = CRLDistributionPoint(ca_id=ca.id, url=url, priority=priority, enabled=enabled)
        db.add(point)
        db.commit()
        db.refresh(point)
        return point

    return _make_point
