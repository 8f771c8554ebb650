import time


def now_ts() -> int:
    """現在時刻 (UNIX秒)"""
    return int(time.time())
