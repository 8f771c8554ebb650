import os
from decimal import Decimal
from typing import Generator

# 設定はインポート時に読まれるため、アプリのインポートより前に環境変数を固定する
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["DEBUG"] = "false"
os.environ["ENV"] = "test"
os.environ["EXECUTOR_TOKEN"] = "test-executor-token"
os.environ["ALERT_WEBHOOK_URL"] = ""

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from autorenew.core import clock as clock_module
from autorenew.core.database import Base, get_db
from autorenew.core.rate_limit import limiter
from autorenew.core.redis import get_sync_redis
import autorenew.models  # noqa: F401
from autorenew.models.subscription import AutoRenewSubscription

T0 = 1_700_000_000
PERIOD = 2_592_000  # 30日
EXECUTOR_HEADERS = {"X-Executor-Token": "test-executor-token"}


class FakeClock:
    """clock.now_ts の差し替え (テストから時刻を進める)"""

    def __init__(self, now: int):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now


@pytest.fixture()
def engine():
    test_engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    try:
        yield test_engine
    finally:
        Base.metadata.drop_all(bind=test_engine)
        test_engine.dispose()


@pytest.fixture()
def db(engine) -> Generator[Session, None, None]:
    session = sessionmaker(bind=engine, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def r():
    client = fakeredis.FakeRedis(decode_responses=True)
    try:
        yield client
    finally:
        client.flushall()


@pytest.fixture()
def clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    fake = FakeClock(T0)
    monkeypatch.setattr(clock_module, "now_ts", fake)
    return fake


@pytest.fixture()
def client(db: Session, r, clock: FakeClock) -> Generator[TestClient, None, None]:
    from autorenew.main import app

    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_sync_redis] = lambda: r
    limiter.reset()

    test_client = TestClient(app)
    try:
        yield test_client
    finally:
        test_client.close()
        app.dependency_overrides.clear()


@pytest.fixture()
def make_subscription(db: Session):
    """有効な購読を直接作成"""

    def _make(
        wallet_address: str = "wallet-a",
        plan_type: int = 1,
        amount_usdc: Decimal = Decimal("10"),
        period_seconds: int = PERIOD,
        next_payment_at: int = T0 + PERIOD,
        is_active: bool = True,
    ) -> AutoRenewSubscription:
        sub = AutoRenewSubscription(
            wallet_address=wallet_address,
            plan_type=plan_type,
            amount_usdc=amount_usdc,
            period_seconds=period_seconds,
            next_payment_at=next_payment_at,
            is_active=is_active,
        )
        db.add(sub)
        db.commit()
        db.refresh(sub)
        return sub

    return _make
