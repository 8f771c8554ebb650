import logging
import sys
import json
from datetime import datetime, timezone
from typing import Optional

# extra= で渡された場合にトップレベルへ出力する項目 (ログ検索用)
CONTEXT_FIELDS = ("wallet_address", "subscription_id", "attempt", "status")


class JSONFormatter(logging.Formatter):
    """構造化JSONログフォーマッター (1行1レコード)"""

    def __init__(self, service: Optional[str] = None, env: Optional[str] = None):
        super().__init__()
        self.service = service
        self.env = env

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.service:
            log_entry["service"] = self.service
        if self.env:
            log_entry["env"] = self.env
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value
        if hasattr(record, "extra_data"):
            log_entry["data"] = record.extra_data
        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False, default=str)


def setup_logging(debug: bool = False, service: Optional[str] = None, env: Optional[str] = None):
    """ロギング設定を初期化 (stdout へJSON出力)"""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service=service, env=env))

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    root.handlers.clear()
    root.addHandler(handler)

    # ライブラリ側の過剰ログを抑制
    for name in ("sqlalchemy.engine", "httpx", "httpcore", "redis"):
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.INFO)


def get_logger(name: str) -> logging.Logger:
    """名前付きロガーを取得"""
    return logging.getLogger(name)
