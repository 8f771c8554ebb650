from decimal import Decimal

import pytest

from autorenew.core.errors import ErrorCode, ServiceError
from autorenew.services import alert_service, plan_change_service, subscription_service
from autorenew.services import plan_change_store as store
from autorenew.services.plan_change_service import RetryConfig

from conftest import PERIOD, T0

UPGRADE_PERIOD = 7_776_000


@pytest.fixture()
def alerts(monkeypatch: pytest.MonkeyPatch):
    calls = []

    def _record(db, wallet_address, change, attempt, error_message):
        calls.append((wallet_address, attempt, change.give_up))

    monkeypatch.setattr(alert_service, "notify_schedule_failure", _record)
    return calls


def _schedule(db, r, wallet="wallet-a", to_plan_type=2, effective_at=None):
    return plan_change_service.schedule_change(
        db, r, wallet,
        to_plan_type=to_plan_type,
        to_amount_usdc=Decimal("25"),
        to_period_seconds=UPGRADE_PERIOD,
        effective_at=effective_at,
    )


def _fail(db, r, clock, wallet="wallet-a", error="rpc timeout"):
    """次回試行日時まで時刻を進めて失敗を報告"""
    change = store.get_plan_change(r, wallet)
    if change and change.next_attempt_at > clock.now:
        clock.now = change.next_attempt_at
    return plan_change_service.record_schedule_outcome(db, r, wallet, error_message=error)


# =========================================================
# 予約
# =========================================================

def test_schedule_change_creates_request_and_lock(db, r, clock, make_subscription):
    sub = make_subscription()

    change, lock = _schedule(db, r)

    assert change.from_plan_type == 1
    assert change.to_plan_type == 2
    assert change.effective_at == sub.next_payment_at
    assert change.attempts == 0
    assert change.next_attempt_at == T0
    assert lock.locked_until == sub.next_payment_at
    assert store.get_plan_change(r, "wallet-a") == change
    assert store.get_cancel_lock(r, "wallet-a").reason == store.CANCEL_LOCK_REASON_UPGRADE


def test_reschedule_gets_new_request_id(db, r, clock, make_subscription):
    make_subscription()

    first, _ = _schedule(db, r)
    second, _ = _schedule(db, r, to_plan_type=3)

    assert first.request_id
    assert second.request_id != first.request_id
    assert store.get_plan_change(r, "wallet-a").request_id == second.request_id


@pytest.mark.parametrize("current,requested", [(2, 1), (3, 1), (3, 2)])
def test_schedule_change_rejects_downgrade(db, r, clock, make_subscription, current, requested):
    make_subscription(plan_type=current)

    with pytest.raises(ServiceError) as exc:
        _schedule(db, r, to_plan_type=requested)

    assert exc.value.code == ErrorCode.DOWNGRADE_NOT_ALLOWED
    assert exc.value.status_code == 409
    assert store.get_plan_change(r, "wallet-a") is None
    assert store.get_cancel_lock(r, "wallet-a") is None


def test_schedule_change_requires_active_subscription(db, r, clock, make_subscription):
    make_subscription(is_active=False)

    with pytest.raises(ServiceError) as exc:
        _schedule(db, r)

    assert exc.value.code == ErrorCode.NO_ACTIVE_SUBSCRIPTION


def test_schedule_change_replaces_previous_request(db, r, clock, make_subscription):
    make_subscription()
    _schedule(db, r, to_plan_type=2)
    _fail(db, r, clock)

    change, _ = _schedule(db, r, to_plan_type=3, effective_at=T0 + 100)

    stored = store.get_plan_change(r, "wallet-a")
    assert stored.to_plan_type == 3
    assert stored.attempts == 0
    assert stored.effective_at == T0 + 100


# =========================================================
# フィード
# =========================================================

def test_due_plan_changes_filters_by_state(db, r, clock, make_subscription):
    for wallet in ("w-new", "w-waiting", "w-scheduled", "w-given-up"):
        make_subscription(wallet_address=wallet)
        _schedule(db, r, wallet=wallet)

    plan_change_service.record_schedule_outcome(db, r, "w-waiting", error_message="x")
    plan_change_service.record_schedule_outcome(db, r, "w-scheduled", tx_ref="sig-1")
    plan_change_service.record_schedule_outcome(
        db, r, "w-given-up", error_message="x", cfg=RetryConfig(max_retries=1)
    )

    tasks, next_cursor = plan_change_service.due_plan_changes(r, limit=100)
    assert next_cursor is None
    assert [w for w, _ in tasks] == ["w-new"]

    tasks, _ = plan_change_service.due_plan_changes(r, limit=100, only_unscheduled=False)
    assert sorted(w for w, _ in tasks) == ["w-given-up", "w-new", "w-scheduled"]


def test_due_plan_changes_returns_waiting_task_after_backoff(db, r, clock, make_subscription):
    make_subscription()
    _schedule(db, r)
    result = plan_change_service.record_schedule_outcome(db, r, "wallet-a", error_message="x")

    tasks, _ = plan_change_service.due_plan_changes(r)
    assert tasks == []

    clock.now = result.change.next_attempt_at
    tasks, _ = plan_change_service.due_plan_changes(r)
    assert [w for w, _ in tasks] == ["wallet-a"]


# =========================================================
# スケジュール登録結果
# =========================================================

def test_schedule_success_marks_scheduled(db, r, clock, make_subscription):
    make_subscription()
    _schedule(db, r)
    _fail(db, r, clock)
    clock.advance(1_000)

    result = plan_change_service.record_schedule_outcome(db, r, "wallet-a", tx_ref="sig-1")

    assert result.status == "scheduled"
    change = store.get_plan_change(r, "wallet-a")
    assert change.scheduled is True
    assert change.schedule_ref == "sig-1"
    assert change.attempts == 1
    assert change.last_error is None
    assert change.next_attempt_at == 0
    assert change.scheduled_at == clock.now
    # 解約ロックは確定 (請求成功) まで残る
    assert store.get_cancel_lock(r, "wallet-a") is not None


def test_schedule_success_is_idempotent(db, r, clock, make_subscription):
    make_subscription()
    _schedule(db, r)
    plan_change_service.record_schedule_outcome(db, r, "wallet-a", tx_ref="sig-1")

    again = plan_change_service.record_schedule_outcome(db, r, "wallet-a", tx_ref="sig-2")
    late_failure = plan_change_service.record_schedule_outcome(db, r, "wallet-a", error_message="late")

    assert again.status == "already_scheduled"
    assert late_failure.status == "already_scheduled"
    change = store.get_plan_change(r, "wallet-a")
    assert change.schedule_ref == "sig-1"
    assert change.attempts == 0


def test_failure_backs_off_and_ignores_redelivery(db, r, clock, make_subscription, alerts):
    make_subscription()
    _schedule(db, r)

    first = plan_change_service.record_schedule_outcome(db, r, "wallet-a", error_message="rpc timeout")
    assert first.status == "retry_scheduled"
    assert first.change.attempts == 1
    assert first.change.next_attempt_at == T0 + 60
    assert first.change.last_error == "rpc timeout"

    redelivered = plan_change_service.record_schedule_outcome(db, r, "wallet-a", error_message="rpc timeout")
    assert redelivered.status == "duplicate"
    assert store.get_plan_change(r, "wallet-a").attempts == 1

    second = _fail(db, r, clock)
    assert second.change.attempts == 2
    assert second.change.next_attempt_at == clock.now + 120
    assert [a for _, a, _ in alerts] == [1]


def test_overdue_failure_retries_sooner(db, r, clock, make_subscription):
    make_subscription(next_payment_at=T0)
    _schedule(db, r)

    for _ in range(9):
        result = _fail(db, r, clock)

    assert result.change.attempts == 9
    assert result.change.next_attempt_at - clock.now == 900


def test_give_up_after_max_retries(db, r, clock, make_subscription, alerts):
    sub = make_subscription()
    _schedule(db, r, effective_at=sub.next_payment_at)

    statuses = [_fail(db, r, clock).status for _ in range(10)]

    assert statuses[:9] == ["retry_scheduled"] * 9
    assert statuses[9] == "given_up"
    change = store.get_plan_change(r, "wallet-a")
    assert change.give_up is True
    assert change.give_up_at == clock.now
    assert change.next_attempt_at == 0
    assert store.get_cancel_lock(r, "wallet-a") is None
    # アラートは 1, 3, 5 回目と give_up 時の1回ずつ
    assert [(a, g) for _, a, g in alerts] == [(1, False), (3, False), (5, False), (10, True)]


def test_reports_after_give_up_are_noops(db, r, clock, make_subscription, alerts):
    make_subscription()
    _schedule(db, r)
    cfg = RetryConfig(max_retries=1)
    plan_change_service.record_schedule_outcome(db, r, "wallet-a", error_message="x", cfg=cfg)

    clock.advance(100_000)
    failure = plan_change_service.record_schedule_outcome(db, r, "wallet-a", error_message="x", cfg=cfg)
    success = plan_change_service.record_schedule_outcome(db, r, "wallet-a", tx_ref="sig", cfg=cfg)

    assert failure.status == success.status == "given_up"
    assert not failure.lock_released
    change = store.get_plan_change(r, "wallet-a")
    assert change.attempts == 1
    assert change.scheduled is False
    assert len(alerts) == 1


def test_report_without_pending_change(db, r, clock):
    result = plan_change_service.record_schedule_outcome(db, r, "nobody", tx_ref="sig")
    assert result.status == "no_pending_change"
    assert r.keys("*") == []


def test_malformed_request_is_discarded(db, r, clock):
    r.set(store.plan_change_key("wallet-a"), "{broken")
    r.set(store.cancel_lock_key("wallet-a"), "{}")

    result = plan_change_service.record_schedule_outcome(db, r, "wallet-a", error_message="x")

    assert result.status == "malformed_discarded"
    assert r.keys("*") == []


def test_alert_failure_does_not_roll_back_state(db, r, clock, make_subscription, monkeypatch):
    make_subscription()
    _schedule(db, r)

    def _boom(*args, **kwargs):
        raise RuntimeError("webhook down")

    monkeypatch.setattr(alert_service, "notify_schedule_failure", _boom)

    result = plan_change_service.record_schedule_outcome(db, r, "wallet-a", error_message="x")

    assert result.status == "retry_scheduled"
    change = store.get_plan_change(r, "wallet-a")
    assert change.attempts == 1
    assert change.alerted_attempts == [1]


# =========================================================
# シナリオ
# =========================================================

def test_scenario_give_up_releases_cancel(db, r, clock, make_subscription, alerts):
    sub = make_subscription(next_payment_at=T0 + PERIOD)
    _schedule(db, r, effective_at=T0 + PERIOD)

    with pytest.raises(ServiceError) as exc:
        subscription_service.cancel(db, r, "wallet-a")
    assert exc.value.code == ErrorCode.CANCEL_LOCKED

    for _ in range(10):
        _fail(db, r, clock)

    assert store.get_plan_change(r, "wallet-a").give_up is True
    db.refresh(sub)
    assert sub.plan_type == 1

    cancelled = subscription_service.cancel(db, r, "wallet-a")
    assert cancelled is not None
    db.refresh(sub)
    assert sub.is_active is False
