"""Per-tenant CAPI delivery health.

WHAT:
    Maintains lifetime and rolling 24h delivery counters per tenant and
    derives a health status from them.

WHY:
    Operators need to tell a tenant with an expired token (sustained
    failures, usually `no_credentials` or auth rejections) from a transient
    Meta outage (sporadic transport errors). The rolling window keeps old
    incidents from dominating the failure rate.

    Status:
        failing   consecutive_failures >= FAILING_CONSECUTIVE_FAILURES
        degraded  window failure rate >= DEGRADED_FAILURE_RATE
        healthy   otherwise
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.models import CapiHealthStats, as_utc
from app.telemetry import capture_message

logger = logging.getLogger(__name__)

WINDOW = timedelta(hours=24)
DEGRADED_FAILURE_RATE = 0.2
FAILING_CONSECUTIVE_FAILURES = 5
MAX_ERROR_CHARS = 500

STATUS_HEALTHY = "healthy"
STATUS_DEGRADED = "degraded"
STATUS_FAILING = "failing"


@dataclass
class HealthSnapshot:
    organization_id: UUID
    status: str
    total_sent: int
    total_failed: int
    consecutive_failures: int
    window_sent: int
    window_failed: int
    failure_rate: float
    last_error: Optional[str]
    last_error_kind: Optional[str]
    last_success_at: Optional[datetime]
    last_failure_at: Optional[datetime]


def _status_for(consecutive_failures: int, window_sent: int, window_failed: int) -> str:
    attempts = window_sent + window_failed
    if consecutive_failures >= FAILING_CONSECUTIVE_FAILURES:
        return STATUS_FAILING
    if attempts and window_failed / attempts >= DEGRADED_FAILURE_RATE:
        return STATUS_DEGRADED
    return STATUS_HEALTHY


class HealthTracker:
    """Record delivery outcomes into `capi_health_stats`.

    Every write commits on its own. Callers in the outbox processor wrap
    these calls so a failing health write never fails a delivery pass.
    """

    def __init__(self, db: Session):
        self.db = db

    def _get_or_create(self, organization_id: UUID, at: datetime) -> CapiHealthStats:
        stats = self.db.get(CapiHealthStats, organization_id)
        if stats is None:
            stats = CapiHealthStats(
                organization_id=organization_id,
                total_sent=0,
                total_failed=0,
                consecutive_failures=0,
                window_started_at=at,
                window_sent=0,
                window_failed=0,
            )
            self.db.add(stats)
        return stats

    @staticmethod
    def _roll_window(stats: CapiHealthStats, at: datetime) -> None:
        started = as_utc(stats.window_started_at)
        if started is None or at - started >= WINDOW:
            stats.window_started_at = at
            stats.window_sent = 0
            stats.window_failed = 0

    def record_success(self, organization_id: UUID, at: Optional[datetime] = None) -> None:
        at = at or datetime.now(timezone.utc)
        try:
            stats = self._get_or_create(organization_id, at)
            self._roll_window(stats, at)
            stats.total_sent = (stats.total_sent or 0) + 1
            stats.window_sent = (stats.window_sent or 0) + 1
            stats.consecutive_failures = 0
            stats.last_success_at = at
            stats.updated_at = at
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def record_failure(
        self,
        organization_id: UUID,
        error: Optional[str],
        kind: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> None:
        at = at or datetime.now(timezone.utc)
        try:
            stats = self._get_or_create(organization_id, at)
            self._roll_window(stats, at)
            stats.total_failed = (stats.total_failed or 0) + 1
            stats.window_failed = (stats.window_failed or 0) + 1
            stats.consecutive_failures = (stats.consecutive_failures or 0) + 1
            stats.last_error = (error or "")[:MAX_ERROR_CHARS] or None
            stats.last_error_kind = kind
            stats.last_failure_at = at
            stats.updated_at = at
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if stats.consecutive_failures == FAILING_CONSECUTIVE_FAILURES:
            logger.warning(
                "[CAPI_HEALTH] Org %s reached %d consecutive failures (last kind: %s)",
                organization_id, stats.consecutive_failures, kind,
            )
            capture_message(
                "CAPI tenant failing",
                level="warning",
                extra={
                    "organization_id": str(organization_id),
                    "consecutive_failures": stats.consecutive_failures,
                    "last_error_kind": kind,
                },
            )

    def _snapshot(self, stats: CapiHealthStats, now: datetime) -> HealthSnapshot:
        window_sent = stats.window_sent or 0
        window_failed = stats.window_failed or 0
        started = as_utc(stats.window_started_at)
        if started is None or now - started >= WINDOW:
            # Expired window reads as empty; it is reset on the next write.
            window_sent = window_failed = 0

        attempts = window_sent + window_failed
        consecutive = stats.consecutive_failures or 0
        return HealthSnapshot(
            organization_id=stats.organization_id,
            status=_status_for(consecutive, window_sent, window_failed),
            total_sent=stats.total_sent or 0,
            total_failed=stats.total_failed or 0,
            consecutive_failures=consecutive,
            window_sent=window_sent,
            window_failed=window_failed,
            failure_rate=round(window_failed / attempts, 4) if attempts else 0.0,
            last_error=stats.last_error,
            last_error_kind=stats.last_error_kind,
            last_success_at=as_utc(stats.last_success_at),
            last_failure_at=as_utc(stats.last_failure_at),
        )

    def get_stats(self, organization_id: UUID, now: Optional[datetime] = None) -> Optional[HealthSnapshot]:
        stats = self.db.get(CapiHealthStats, organization_id)
        if stats is None:
            return None
        return self._snapshot(stats, now or datetime.now(timezone.utc))

    def list_stats(self, now: Optional[datetime] = None) -> List[HealthSnapshot]:
        now = now or datetime.now(timezone.utc)
        rows = self.db.query(CapiHealthStats).order_by(CapiHealthStats.updated_at.desc()).all()
        return [self._snapshot(row, now) for row in rows]
