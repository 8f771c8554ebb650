"""プラン変更予約・解約ロックの一時状態ストア (Redis)

ウォレット単位のキーにJSONで保存する:
- autorenew:plan_change:{wallet}  保留中のプラン変更 (PlanChangeRequest)
- autorenew:cancel_lock:{wallet}  解約ロック (CancelLock)

値は消失しても「最初からやり直し」以上の不整合にはならない前提。
"""
from decimal import Decimal
from typing import Callable, Optional, Tuple, TypeVar

import redis
from pydantic import BaseModel, Field, ValidationError

from autorenew.core.logging import get_logger

logger = get_logger(__name__)

PLAN_CHANGE_PREFIX = "autorenew:plan_change:"
CANCEL_LOCK_PREFIX = "autorenew:cancel_lock:"

CANCEL_LOCK_REASON_UPGRADE = "upgrade_pending"

T = TypeVar("T")


class MalformedStateError(Exception):
    """保存済みの状態が復元できない"""


class PlanChangeRequest(BaseModel):
    request_id: str = ""  # 予約ごとに一意 (上書き検知用)
    from_plan_type: int
    to_plan_type: int
    to_amount_usdc: Decimal
    to_period_seconds: int
    effective_at: int
    created_at: int

    # スケジュール登録の状態
    attempts: int = 0
    last_attempt_at: int = 0
    next_attempt_at: int = 0  # 0 = 次回試行なし
    scheduled: bool = False
    schedule_ref: Optional[str] = None
    scheduled_at: int = 0
    give_up: bool = False
    give_up_at: int = 0
    last_error: Optional[str] = None
    alerted_attempts: list[int] = Field(default_factory=list)

    def is_committable(self) -> bool:
        """確定に必要な変更先フィールドが揃っているか"""
        return (
            self.to_plan_type > 0
            and self.to_amount_usdc > 0
            and self.to_period_seconds > 0
            and self.effective_at > 0
        )

    def blocks_billing(self, now: int) -> bool:
        """適用日時を過ぎたのに決済側で未確定 → 旧プランでの請求を止める"""
        return self.effective_at <= now and not self.scheduled and not self.give_up


class CancelLock(BaseModel):
    locked_until: int
    reason: str
    created_at: int


def plan_change_key(wallet_address: str) -> str:
    return f"{PLAN_CHANGE_PREFIX}{wallet_address}"


def cancel_lock_key(wallet_address: str) -> str:
    return f"{CANCEL_LOCK_PREFIX}{wallet_address}"


def _decode_plan_change(raw: Optional[str]) -> Optional[PlanChangeRequest]:
    if not raw:
        return None
    try:
        return PlanChangeRequest.model_validate_json(raw)
    except ValidationError as e:
        raise MalformedStateError(str(e)) from e


def get_plan_change(r: redis.Redis, wallet_address: str) -> Optional[PlanChangeRequest]:
    """保留中のプラン変更を取得 (壊れていれば MalformedStateError)"""
    return _decode_plan_change(r.get(plan_change_key(wallet_address)))


def get_cancel_lock(r: redis.Redis, wallet_address: str) -> Optional[CancelLock]:
    raw = r.get(cancel_lock_key(wallet_address))
    if not raw:
        return None
    try:
        return CancelLock.model_validate_json(raw)
    except ValidationError:
        # 読めないロックは解約を止めない
        logger.warning(f"解約ロック破損のため無視: wallet={wallet_address}")
        return None


def get_plan_changes(r: redis.Redis, wallet_addresses: list[str]) -> dict[str, PlanChangeRequest]:
    """複数ウォレットのプラン変更を一括取得 (破損データはスキップ)"""
    if not wallet_addresses:
        return {}
    raws = r.mget([plan_change_key(w) for w in wallet_addresses])
    result = {}
    for wallet, raw in zip(wallet_addresses, raws):
        try:
            change = _decode_plan_change(raw)
        except MalformedStateError:
            logger.warning(f"プラン変更データ破損: wallet={wallet}")
            continue
        if change:
            result[wallet] = change
    return result


def save_plan_change(r: redis.Redis, wallet_address: str, change: PlanChangeRequest, lock: CancelLock):
    """プラン変更と解約ロックを同時に書き込む (既存の予約は上書き)"""
    pipe = r.pipeline(transaction=True)
    pipe.set(plan_change_key(wallet_address), change.model_dump_json())
    pipe.set(cancel_lock_key(wallet_address), lock.model_dump_json())
    pipe.execute()


def delete_plan_change_if(r: redis.Redis, wallet_address: str, request_id: Optional[str]) -> bool:
    """
    予約と解約ロックを、読み取り時点と同じ予約が残っている場合だけ削除する

    request_id: 読み取った予約の request_id。None = 予約なし or 破損していた。
    その間に schedule_change で新しい予約が書かれていれば何もしない (False)。
    """
    key = plan_change_key(wallet_address)
    lock_key = cancel_lock_key(wallet_address)

    def _txn(pipe) -> bool:
        try:
            current = _decode_plan_change(pipe.get(key))
        except MalformedStateError:
            current = None
        pipe.multi()
        if (current.request_id if current else None) != request_id:
            return False
        pipe.delete(key)
        pipe.delete(lock_key)
        return True

    deleted = r.transaction(_txn, key, lock_key, value_from_callable=True)
    if not deleted:
        logger.info(f"新しいプラン変更予約があるため削除スキップ: wallet={wallet_address}")
    return deleted


def update_plan_change(
    r: redis.Redis,
    wallet_address: str,
    mutate: Callable[[Optional[PlanChangeRequest]], Tuple[Optional[PlanChangeRequest], bool, T]],
) -> T:
    """
    ウォレットのプラン変更を WATCH/MULTI で読み取り→更新する

    mutate(現在値) は (保存する新しい値 or None, 解約ロックを外すか, 戻り値) を返す。
    競合時は再実行されるため、mutate は副作用を持たないこと。
    """
    key = plan_change_key(wallet_address)

    def _txn(pipe) -> T:
        current = _decode_plan_change(pipe.get(key))
        new_change, release_lock, result = mutate(current)
        pipe.multi()
        if new_change is not None:
            pipe.set(key, new_change.model_dump_json())
        if release_lock:
            pipe.delete(cancel_lock_key(wallet_address))
        return result

    return r.transaction(_txn, key, value_from_callable=True)


def scan_plan_changes(
    r: redis.Redis, cursor: int = 0, count: int = 100
) -> Tuple[int, list[Tuple[str, PlanChangeRequest]]]:
    """プラン変更キーを SCAN で1ページ分取得。次カーソル0で走査完了"""
    next_cursor, keys = r.scan(cursor=cursor, match=f"{PLAN_CHANGE_PREFIX}*", count=count)
    wallets = [k[len(PLAN_CHANGE_PREFIX):] for k in keys]
    changes = get_plan_changes(r, wallets)
    return int(next_cursor), [(w, changes[w]) for w in wallets if w in changes]
