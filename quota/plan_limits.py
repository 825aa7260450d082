import re
from typing import Dict, List, Union

from quota.events import E, log_event
from quota.log import get_logger

logger = get_logger(__name__)


class _Unlimited:
    """Singleton marking a plan without a daily cap."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNLIMITED"

    def __reduce__(self):
        return (_Unlimited, ())

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


UNLIMITED = _Unlimited()

Limit = Union[int, _Unlimited]

DEFAULT_PLAN = "free"
PLAN_TABLE_VERSION = "2024-06"

PLAN_DEFINITIONS: Dict[str, Dict] = {
    "free": {
        "plan": "free",
        "label": "Free",
        "daily_limit": 5,
    },
    "creator": {
        "plan": "creator",
        "label": "Creator",
        "daily_limit": 50,
    },
    "pro": {
        "plan": "pro",
        "label": "Pro",
        "daily_limit": 50,
    },
    "agency": {
        "plan": "agency",
        "label": "Agency",
        "daily_limit": UNLIMITED,
    },
    "agency pro": {
        "plan": "agency pro",
        "label": "Agency Pro",
        "daily_limit": UNLIMITED,
    },
    "enterprise": {
        "plan": "enterprise",
        "label": "Enterprise",
        "daily_limit": UNLIMITED,
    },
}

_SEPARATORS = re.compile(r"[\s_\-]+")


def normalize_plan(plan: str) -> str:
    return _SEPARATORS.sub(" ", str(plan or "").strip().lower()).strip()


def is_unlimited(limit) -> bool:
    return limit is UNLIMITED


def limit_for(plan: str) -> Limit:
    """Daily question limit for ``plan``.

    Unrecognized plans resolve to the free tier so a bad plan id can only
    ever make the quota stricter.
    """
    key = normalize_plan(plan)
    definition = PLAN_DEFINITIONS.get(key)
    if definition is None:
        log_event(logger, E.PLAN_UNKNOWN, level="warning", plan=plan, resolved=DEFAULT_PLAN)
        definition = PLAN_DEFINITIONS[DEFAULT_PLAN]
    return definition["daily_limit"]


def plan_catalog() -> List[Dict]:
    data = []
    for key, definition in PLAN_DEFINITIONS.items():
        limit = definition["daily_limit"]
        data.append({
            "plan": key,
            "label": definition["label"],
            "daily_limit": None if is_unlimited(limit) else int(limit),
            "is_unlimited": is_unlimited(limit),
        })
    return data
