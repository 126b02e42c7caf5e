from __future__ import annotations

import os
import tempfile
from datetime import datetime, timedelta

# Set test environment BEFORE importing app modules.
# app.db creates the engine at module level using get_settings().db_url,
# so we must override the env vars before any app imports.
_test_tmp = tempfile.mkdtemp(prefix="wills-test-")
os.environ.setdefault("DATA_DIR", os.path.join(_test_tmp, "data"))
os.environ.setdefault("WILL_STORE_DIR", os.path.join(_test_tmp, "wills"))
os.environ.setdefault("DB_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-for-integration-tests-only")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from app.config import Settings
from app.db import get_session
from app.errors import UpstreamFailure
from app.main import app as fastapi_app
from app.models.testator import PartyRole, Testator, WillParty
from app.services.checkin import CheckInTracker
from app.services.escalation import EscalationScheduler
from app.services.notifier import NotificationKind
from app.services.registry import SqlContactRegistry
from app.services.responses import ResponseLog
from app.services.unlock import UnlockService
from app.services.verification import VerificationService
from app.services.will_store import SealedWill
from app.tokens import create_access_token

T0 = datetime(2026, 3, 2, 9, 0, 0)


# ── Test doubles for the collaborator seams ──────────────────────────


class ManualClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


class RecordingNotifier:
    """Notifier that keeps every message instead of sending it.

    Addresses in ``fail_for`` (or every address while ``fail_all`` is
    set) raise UpstreamFailure like an unreachable mail server.
    """

    def __init__(self) -> None:
        self.sent: list[tuple[str, NotificationKind, dict]] = []
        self.fail_for: set[str] = set()
        self.fail_all = False
        self._counter = 0

    def send(self, address: str, kind: NotificationKind, payload: dict) -> str:
        if self.fail_all or address in self.fail_for:
            raise UpstreamFailure(f"delivery to {address} refused")
        self._counter += 1
        self.sent.append((address, kind, dict(payload)))
        return f"<test-{self._counter}@wills.test>"

    def of_kind(self, kind: NotificationKind) -> list[tuple[str, dict]]:
        return [(addr, payload) for addr, k, payload in self.sent if k is kind]

    def last_to(self, address: str, kind: NotificationKind) -> dict:
        matches = [p for addr, p in self.of_kind(kind) if addr == address]
        assert matches, f"no {kind.value} sent to {address}"
        return matches[-1]


class InMemoryWillStore:
    def __init__(self) -> None:
        self.wills: dict[str, SealedWill] = {}

    def get_sealed_content(self, testator_id: str) -> SealedWill:
        try:
            return self.wills[testator_id]
        except KeyError:
            raise UpstreamFailure(f"no sealed will for {testator_id}")


# ── Database fixtures ─────────────────────────────────────────────────


@pytest.fixture(name="engine")
def engine_fixture():
    """Create an in-memory SQLite engine for testing.

    Uses StaticPool so every connection shares the same in-memory database.
    Recreates tables per test for full isolation.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    """Provide a fresh session per test."""
    with Session(engine) as session:
        yield session


# ── Service fixtures ──────────────────────────────────────────────────


@pytest.fixture()
def settings() -> Settings:
    return Settings(smtp_host="")


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def will_store() -> InMemoryWillStore:
    return InMemoryWillStore()


@pytest.fixture()
def tracker(settings: Settings, clock: ManualClock) -> CheckInTracker:
    return CheckInTracker(settings, clock)


@pytest.fixture()
def verification(
    settings: Settings, notifier: RecordingNotifier, clock: ManualClock
) -> VerificationService:
    return VerificationService(settings, SqlContactRegistry(), notifier, clock)


@pytest.fixture()
def scheduler(
    tracker: CheckInTracker,
    verification: VerificationService,
    notifier: RecordingNotifier,
    clock: ManualClock,
) -> EscalationScheduler:
    return EscalationScheduler(tracker, verification, notifier, clock)


@pytest.fixture()
def unlock(
    settings: Settings,
    verification: VerificationService,
    notifier: RecordingNotifier,
    will_store: InMemoryWillStore,
    clock: ManualClock,
) -> UnlockService:
    return UnlockService(settings, verification, notifier, will_store, clock)


@pytest.fixture()
def responses(
    settings: Settings,
    verification: VerificationService,
    tracker: CheckInTracker,
    clock: ManualClock,
) -> ResponseLog:
    return ResponseLog(settings, verification, tracker, clock)


# ── Domain fixtures ───────────────────────────────────────────────────

PARTIES = [
    ("Eleanor Vance", "eleanor@example.com", PartyRole.EXECUTOR),
    ("Marcus Vance", "marcus@example.com", PartyRole.BENEFICIARY),
    ("Priya Shah", "priya@example.com", PartyRole.BENEFICIARY),
    ("Tom Okafor", "tom@example.com", PartyRole.TRUSTED_CONTACT),
]


@pytest.fixture()
def testator(
    session: Session, tracker: CheckInTracker, will_store: InMemoryWillStore
) -> Testator:
    """Enrolled testator (7 day cadence, 7 day grace) with four named parties."""
    t = tracker.enroll_testator(
        session,
        email="Henry.Vance@Example.com",
        full_name="Henry Vance",
        checkin_interval_days=7,
        grace_period_days=7,
    )
    for name, email, role in PARTIES:
        session.add(WillParty(testator_id=t.id, name=name, email=email, role=role.value))
    session.commit()
    will_store.wills[t.id] = SealedWill(
        content=b"I, Henry Vance, leave my books to Marcus.",
        media_type="text/plain",
        attachments=["attachments/letter.pdf"],
    )
    return t


# ── HTTP client fixtures ──────────────────────────────────────────────


@pytest.fixture(name="client")
def client_fixture(
    session,
    tracker: CheckInTracker,
    verification: VerificationService,
    scheduler: EscalationScheduler,
    unlock: UnlockService,
    responses: ResponseLog,
):
    """FastAPI TestClient with overridden DB session and test-double services."""

    def _get_session_override():
        yield session

    fastapi_app.dependency_overrides[get_session] = _get_session_override
    with TestClient(fastapi_app) as client:
        # Lifespan has installed real services; swap in the test doubles.
        fastapi_app.state.checkin_tracker = tracker
        fastapi_app.state.verification_service = verification
        fastapi_app.state.escalation_scheduler = scheduler
        fastapi_app.state.unlock_service = unlock
        fastapi_app.state.response_log = responses
        yield client
    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def auth_headers(testator: Testator) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(testator.id)}"}


@pytest.fixture()
def triggered(
    session: Session,
    testator: Testator,
    scheduler: EscalationScheduler,
    verification: VerificationService,
    clock: ManualClock,
):
    """Verification request opened by a sweep just past the grace deadline."""
    clock.set(T0 + timedelta(days=14, minutes=1))
    scheduler.process_overdue(session)
    request = verification.get_active_request(session, testator.id)
    assert request is not None
    return request


def unlock_code_for(notifier: RecordingNotifier, email: str) -> str:
    return notifier.last_to(email, NotificationKind.VERIFICATION_OPENED)["unlock_code"]


def otp_for(notifier: RecordingNotifier, email: str) -> str:
    return notifier.last_to(email, NotificationKind.UNLOCK_OTP)["otp"]
