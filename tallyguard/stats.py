"""Aggregate reporting over stored permission checks."""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from .models import PermissionCheckRecord


class StatsPeriod(BaseModel):
    days: int
    start: datetime
    end: datetime


class StatsSummary(BaseModel):
    total: int = 0
    granted: int = 0
    denied: int = 0
    success_rate: float = 0.0


class Breakdown(BaseModel):
    total: int = 0
    granted: int = 0
    denied: int = 0


class ReasonCount(BaseModel):
    reason: str
    count: int


class UserCount(BaseModel):
    user_id: str
    count: int


class PermissionStats(BaseModel):
    period: StatsPeriod
    summary: StatsSummary
    by_resource_type: Dict[str, Breakdown] = Field(default_factory=dict)
    by_action: Dict[str, Breakdown] = Field(default_factory=dict)
    denial_reasons: List[ReasonCount] = Field(default_factory=list)
    top_denied_users: Optional[List[UserCount]] = None


def _tally(bucket: Dict[str, Breakdown], key: str, granted: bool) -> None:
    entry = bucket.setdefault(key, Breakdown())
    entry.total += 1
    if granted:
        entry.granted += 1
    else:
        entry.denied += 1


def summarize(
    records: Iterable[PermissionCheckRecord],
    days: int,
    start: datetime,
    end: datetime,
    top_n: int = 10,
    include_users: bool = False,
) -> PermissionStats:
    """Build :class:`PermissionStats` from audit records."""
    records = list(records)
    granted = sum(1 for r in records if r.granted)
    total = len(records)

    by_resource_type: Dict[str, Breakdown] = {}
    by_action: Dict[str, Breakdown] = {}
    reasons: Counter[str] = Counter()
    denied_users: Counter[str] = Counter()
    for r in records:
        _tally(by_resource_type, r.resource_type.value, r.granted)
        _tally(by_action, r.action.value, r.granted)
        if not r.granted:
            denied_users[r.user_id] += 1
            if r.reason:
                reasons[r.reason] += 1

    return PermissionStats(
        period=StatsPeriod(days=days, start=start, end=end),
        summary=StatsSummary(
            total=total,
            granted=granted,
            denied=total - granted,
            success_rate=(granted / total * 100) if total else 0.0,
        ),
        by_resource_type=by_resource_type,
        by_action=by_action,
        denial_reasons=[
            ReasonCount(reason=reason, count=count)
            for reason, count in reasons.most_common(top_n)
        ],
        top_denied_users=(
            [UserCount(user_id=u, count=c) for u, c in denied_users.most_common(top_n)]
            if include_users
            else None
        ),
    )
