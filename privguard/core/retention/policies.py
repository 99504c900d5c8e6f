from __future__ import annotations

import threading
from typing import Any, Dict, Iterable, List, Mapping, Optional

from privguard.core.config.models import YEAR, RetentionConfig
from privguard.core.retention.models import RetentionAction, RetentionCondition, RetentionException, RetentionPolicy

DATA_TYPE_FIELD = "_data_type"
CATEGORY_FIELD = "_category"

_MISSING = object()


def infer_data_type(record: Mapping[str, Any]) -> str:
    cat = record.get(CATEGORY_FIELD)
    if isinstance(cat, str) and cat.strip():
        return cat.strip()
    if "email" in record:
        return "user_data"
    if "task_id" in record:
        return "task_data"
    return "general_data"


def _compare(actual: Any, op: str, expected: Any) -> bool:
    if op == "exists":
        return actual is not _MISSING and actual is not None
    if op == "not_exists":
        return actual is _MISSING or actual is None
    if actual is _MISSING:
        return op == "ne"
    if op == "eq":
        return actual == expected
    if op == "ne":
        return actual != expected
    if op == "in":
        return isinstance(expected, (list, tuple, set)) and actual in expected
    if op == "contains":
        if isinstance(actual, str):
            return str(expected) in actual
        if isinstance(actual, (list, tuple, set, dict)):
            return expected in actual
        return False
    if op in {"gt", "lt"}:
        try:
            a, b = float(actual), float(expected)
        except (TypeError, ValueError):
            return False
        return a > b if op == "gt" else a < b
    return False


def evaluate_conditions(conditions: Iterable[RetentionCondition], record: Mapping[str, Any]) -> bool:
    """
    Left-to-right evaluation; each condition's `logic` joins it to the result
    so far. An empty list matches everything.
    """
    result: Optional[bool] = None
    for cond in conditions:
        ok = _compare(record.get(cond.field, _MISSING), cond.operator, cond.value)
        if result is None:
            result = ok
        elif cond.logic == "OR":
            result = result or ok
        else:
            result = result and ok
    return True if result is None else bool(result)


def default_policies(cfg: RetentionConfig) -> List[RetentionPolicy]:
    out = [
        RetentionPolicy(
            id="user_data_policy",
            name="User Data Retention",
            description="Standard retention policy for user data",
            category="user_data",
            retention_period=int(cfg.default_period_seconds),
            grace_period=int(cfg.default_grace_seconds),
            action=RetentionAction.DELETE,
            priority=1,
        ),
        RetentionPolicy(
            id="task_data_policy",
            name="Task Data Retention",
            description="Retention policy for task-related data",
            category="operational_data",
            retention_period=YEAR,
            action=RetentionAction.ARCHIVE,
            priority=2,
        ),
    ]
    for i, (category, period) in enumerate(sorted(cfg.per_category_periods.items())):
        out.append(
            RetentionPolicy(
                id=f"{category}_policy",
                name=f"{category} retention",
                description=f"Configured retention period for {category} data",
                category=category,
                retention_period=int(period),
                grace_period=int(cfg.default_grace_seconds),
                action=RetentionAction.DELETE,
                priority=10 + i,
                conditions=[RetentionCondition(field=DATA_TYPE_FIELD, operator="eq", value=category)],
            )
        )
    return out


class PolicyCatalog:
    def __init__(self, policies: Optional[Iterable[RetentionPolicy]] = None):
        self._lock = threading.Lock()
        self._policies: Dict[str, RetentionPolicy] = {}
        for p in policies or []:
            self._policies[p.id] = p

    @classmethod
    def from_config(cls, cfg: RetentionConfig) -> "PolicyCatalog":
        return cls(default_policies(cfg))

    def add(self, policy: RetentionPolicy) -> None:
        with self._lock:
            self._policies[policy.id] = policy

    def remove(self, policy_id: str) -> bool:
        with self._lock:
            return self._policies.pop(str(policy_id), None) is not None

    def get(self, policy_id: str) -> Optional[RetentionPolicy]:
        with self._lock:
            return self._policies.get(str(policy_id))

    def list(self) -> List[RetentionPolicy]:
        with self._lock:
            items = list(self._policies.values())
        return sorted(items, key=lambda p: (p.priority, p.id))

    def policy_for_category(self, category: str) -> Optional[RetentionPolicy]:
        c = str(category or "").strip()
        for p in self.list():
            if p.is_active and p.category == c:
                return p
        return None

    @staticmethod
    def matches(policy: RetentionPolicy, view: Mapping[str, Any]) -> bool:
        return bool(policy.is_active) and evaluate_conditions(policy.conditions, view)

    def applicable(self, view: Mapping[str, Any]) -> List[RetentionPolicy]:
        return [p for p in self.list() if self.matches(p, view)]

    @staticmethod
    def matching_exceptions(policy: RetentionPolicy, view: Mapping[str, Any], now: float) -> List[RetentionException]:
        return [
            ex
            for ex in policy.exceptions
            if (ex.expires_at is None or float(ex.expires_at) > now) and ex.conditions and evaluate_conditions(ex.conditions, view)
        ]
