"""
quota/events.py — 结构化事件日志

格式：event=xxx | key=val | key=val

用法：
    from quota.log import get_logger
    from quota.events import log_event, E

    logger = get_logger(__name__)
    log_event(logger, E.USAGE_CONSUME, user_id="u001", used=3, limit=5)
    # 输出：event=quota.usage.consume | user_id=u001 | used=3 | limit=5
"""

import logging
from datetime import date, datetime
from typing import Any


class E:
    """结构化事件类型常量，按功能模块分组。"""

    # ── 配额 Usage ─────────────────────────────────────────────────────────────
    USAGE_CHECK = "quota.usage.check"
    USAGE_CREATE = "quota.usage.create"
    USAGE_RESET = "quota.usage.reset"
    USAGE_CONSUME = "quota.usage.consume"
    USAGE_EXCEED = "quota.usage.exceed"
    USAGE_OVERSHOOT = "quota.usage.overshoot"

    # ── 存储 Store ─────────────────────────────────────────────────────────────
    STORE_DEGRADED = "quota.store.degraded"
    STORE_FAIL = "quota.store.fail"
    STORE_TIMEOUT = "quota.store.timeout"

    # ── 套餐 Plan ──────────────────────────────────────────────────────────────
    PLAN_UNKNOWN = "quota.plan.unknown"

    # ── 审计日志 / 缓存 ────────────────────────────────────────────────────────
    LOG_FAIL = "quota.log.fail"
    CACHE_CLEAR = "quota.cache.clear"

    # ── 系统 System ────────────────────────────────────────────────────────────
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_DB_INIT = "system.db_init"


_MAX_FIELD_LEN = 300


def _format_field(value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, BaseException):
        # 异常带上类型名，便于区分超时与连接失败
        text = f"{type(value).__name__}: {value}"
    else:
        text = value if isinstance(value, str) else str(value)
    if len(text) > _MAX_FIELD_LEN:
        text = text[: _MAX_FIELD_LEN - 3] + "..."
    return text


def log_event(
    logger: logging.Logger,
    event: str,
    level: str = "info",
    **fields: Any,
) -> None:
    """
    记录结构化事件日志，格式：event=xxx | key=val | key=val

    示例：
        log_event(logger, E.USAGE_EXCEED, user_id="u001", used=5, limit=5)
        # → event=quota.usage.exceed | user_id=u001 | used=5 | limit=5

        log_event(logger, E.STORE_FAIL, level="error",
                  user_id="u001", operation="atomic_increment", reason=err)
        # → event=quota.store.fail | user_id=u001 | operation=atomic_increment | reason=StoreUnavailable: ...
    """
    line = " | ".join([f"event={event}"] + [f"{k}={_format_field(v)}" for k, v in fields.items()])
    getattr(logger, level)(line, stacklevel=2)
