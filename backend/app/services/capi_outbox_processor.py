"""Outbox processor for Meta CAPI conversion events.

WHAT:
    Runs one bounded delivery pass over `meta_conversion_events`:

        select due -> group by tenant -> claim (lease) -> resolve credentials
        once per tenant -> build -> send -> record outcome + health

WHY:
    This is the only writer of delivery state. The guarantees it keeps:

    - Bounded retries: every attempt advances `retry_count` and either
      schedules `next_retry_at` through the RetryPolicy or marks the event
      terminal `failed` at max attempts.
    - No double send: an event is sent only after a conditional UPDATE
      flipped it to `retrying` with a lease expiry. A concurrent pass that
      loses the UPDATE skips the event. If a pass crashes, the lease expires
      and the event is selected again. Each claim stamps a fresh lease
      token, and only the holder of the current token can finalize, so a
      late result from an expired lease never overwrites a newer attempt.
    - Tenant isolation: one tenant's missing credentials or unexpected
      crash never affects another tenant's events.
    - No transaction is held across an await. Every write commits
      immediately and the session is committed before each HTTP call.

    Only a failure of the batch-selection query propagates to the caller;
    everything else is recorded on the events and in the summary.

STATE MACHINE:
    pending ──claim──▶ retrying ──┬─ sent
                                  ├─ pending (retry_count+1, next_retry_at)
                                  └─ failed  (terminal, retry_count == max)

REFERENCES:
    - app/services/capi_event_builder.py
    - app/services/meta_capi_client.py
    - app/services/capi_retry.py
    - app/services/capi_health.py
    - app/routers/capi.py (HTTP trigger), app/workers/arq_worker.py (cron)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
from uuid import UUID, uuid4

import httpx
from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from app.models import ConversionEvent, ConversionStatusEnum
from app.security import decrypt_credentials
from app.services.capi_credentials import CredentialResolver, ResolvedCredentials
from app.services.capi_errors import CapiNotEnabledError, CapiValidationError, NoCredentialsError
from app.services.capi_event_builder import build_capi_event, build_request_body
from app.services.capi_health import HealthTracker
from app.services.capi_privacy import resolve_allowed_fields
from app.services.capi_retry import RetryPolicy
from app.services.meta_capi_client import DeliveryResult, MetaCAPIClient
from app.telemetry import capture_exception

logger = logging.getLogger(__name__)

MAX_LAST_ERROR_CHARS = 1000
REDACTED = "***REDACTED***"

NOT_ENABLED_ERROR = "CAPI not enabled"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _truncate_error(message: Optional[str]) -> Optional[str]:
    if message is None:
        return None
    return message[:MAX_LAST_ERROR_CHARS]


# =============================================================================
# REPOSITORY
# =============================================================================

class ConversionEventRepository:
    """All SQL touching outbox delivery state.

    Every mutating method commits before returning.
    """

    def __init__(self, db: Session, max_attempts: int):
        self.db = db
        self.max_attempts = max_attempts

    def _due_clause(self, now: datetime):
        return and_(
            ConversionEvent.status != ConversionStatusEnum.sent,
            ConversionEvent.retry_count < self.max_attempts,
            or_(ConversionEvent.next_retry_at.is_(None), ConversionEvent.next_retry_at <= now),
        )

    def select_due_events(self, now: datetime, limit: int) -> List[ConversionEvent]:
        """Due events ordered by next_retry_at, oldest (and never-scheduled) first.

        `retrying` rows only qualify once their lease has expired.
        """
        stmt = (
            select(ConversionEvent)
            .where(self._due_clause(now))
            .order_by(ConversionEvent.next_retry_at.asc().nulls_first(), ConversionEvent.created_at.asc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def claim(self, event_id: UUID, now: datetime, lease: timedelta) -> Optional[str]:
        """Atomically lease an event for this pass.

        The UPDATE repeats the due predicates, so of two concurrent passes
        only one sees rowcount == 1. Returns the lease token the winner must
        present when finalizing, or None when the claim was lost.
        """
        lease_token = uuid4().hex
        stmt = (
            update(ConversionEvent)
            .where(ConversionEvent.id == event_id, self._due_clause(now))
            .values(
                status=ConversionStatusEnum.retrying,
                next_retry_at=now + lease,
                lease_token=lease_token,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.commit()
        return lease_token if result.rowcount == 1 else None

    def get(self, event_id: UUID) -> Optional[ConversionEvent]:
        return self.db.get(ConversionEvent, event_id)

    def _update_leased(self, event_id: UUID, lease_token: str, **values: Any) -> bool:
        # Only the current lease holder may finalize; a pass whose lease
        # expired and was re-claimed loses here.
        stmt = (
            update(ConversionEvent)
            .where(
                ConversionEvent.id == event_id,
                ConversionEvent.status == ConversionStatusEnum.retrying,
                ConversionEvent.lease_token == lease_token,
            )
            .values(lease_token=None, **values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.commit()
        if result.rowcount != 1:
            logger.warning("[CAPI_OUTBOX] Lease on event %s was lost before finalizing", event_id)
            return False
        return True

    def mark_sent(self, event_id: UUID, lease_token: str, result: DeliveryResult, now: datetime) -> bool:
        return self._update_leased(
            event_id,
            lease_token,
            status=ConversionStatusEnum.sent,
            delivered_at=now,
            next_retry_at=None,
            last_error=None,
            last_status_code=result.status_code,
            meta_response=result.response_metadata(),
            updated_at=now,
        )

    def mark_attempt_failed(
        self,
        event_id: UUID,
        lease_token: str,
        previous_retry_count: int,
        error: str,
        now: datetime,
        policy: RetryPolicy,
        *,
        status_code: Optional[int] = None,
        response: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Record a failed attempt; returns True when the event became terminal."""
        attempts = previous_retry_count + 1
        terminal = policy.is_terminal(attempts)
        applied = self._update_leased(
            event_id,
            lease_token,
            retry_count=attempts,
            status=ConversionStatusEnum.failed if terminal else ConversionStatusEnum.pending,
            next_retry_at=None if terminal else policy.next_retry_at(attempts, now),
            last_error=_truncate_error(error),
            last_status_code=status_code,
            meta_response=response,
            updated_at=now,
        )
        return applied and terminal

    def mark_terminal(self, event_id: UUID, lease_token: str, error: str, now: datetime) -> bool:
        """Fail an event permanently without further attempts."""
        return self._update_leased(
            event_id,
            lease_token,
            status=ConversionStatusEnum.failed,
            retry_count=self.max_attempts,
            next_retry_at=None,
            last_error=_truncate_error(error),
            updated_at=now,
        )


# =============================================================================
# RUN SUMMARY
# =============================================================================

@dataclass
class TenantRunSummary:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    error: Optional[str] = None


@dataclass
class OutboxRunSummary:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    duration_ms: int = 0
    tenants: Dict[str, TenantRunSummary] = field(default_factory=dict)

    def add(self, organization_id: UUID, tenant: TenantRunSummary) -> None:
        self.tenants[str(organization_id)] = tenant
        self.processed += tenant.processed
        self.sent += tenant.sent
        self.failed += tenant.failed
        self.skipped += tenant.skipped


# =============================================================================
# PROCESSOR
# =============================================================================

class CapiOutboxProcessor:
    """Deliver due conversion events, tenant by tenant.

    Args:
        session_factory: Callable returning a new SQLAlchemy Session.
        http_client: Shared httpx.AsyncClient used for every send.
        settings: app.deps.Settings (batch size, lease, concurrency, ...).
        retry_policy: Defaults to RetryPolicy.from_settings(settings).
        fallback_token: Process-wide legacy token; defaults to
            settings.META_CONVERSIONS_API_TOKEN.
        decrypt: Credential decryption function (injectable for tests).
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        http_client: httpx.AsyncClient,
        settings,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        fallback_token: Optional[str] = None,
        decrypt: Callable[..., Dict] = decrypt_credentials,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self.fallback_token = fallback_token if fallback_token is not None else settings.META_CONVERSIONS_API_TOKEN
        self.decrypt = decrypt
        self.clock = clock
        self.lease = timedelta(minutes=settings.CAPI_LEASE_MINUTES)
        self.max_event_age = timedelta(days=settings.CAPI_MAX_EVENT_AGE_DAYS)
        self.max_future_skew = timedelta(minutes=settings.CAPI_MAX_FUTURE_SKEW_MINUTES)
        self.client = MetaCAPIClient(
            http_client,
            base_url=settings.META_GRAPH_BASE_URL,
            api_version=settings.META_GRAPH_API_VERSION,
            timeout=settings.CAPI_REQUEST_TIMEOUT_SECONDS,
        )

    def _resolver(self, db: Session) -> CredentialResolver:
        return CredentialResolver(db, fallback_token=self.fallback_token, decrypt=self.decrypt)

    def _allowed_fields(self, creds: ResolvedCredentials) -> frozenset:
        return resolve_allowed_fields(
            creds.privacy_mode,
            self.settings.CAPI_PRIVACY_MODE_FIELDS,
            creds.allowed_fields,
        )

    # -------------------------------------------------------------------------
    # Batch
    # -------------------------------------------------------------------------

    async def process_batch(self) -> OutboxRunSummary:
        """Run one delivery pass and return its summary.

        Raises:
            SQLAlchemyError: Only when selecting the batch fails.
        """
        started = time.monotonic()
        now = self.clock()
        summary = OutboxRunSummary()

        db = self.session_factory()
        try:
            repo = ConversionEventRepository(db, self.retry_policy.max_attempts)
            due = repo.select_due_events(now, self.settings.CAPI_BATCH_SIZE)
            grouped: "OrderedDict[UUID, List[UUID]]" = OrderedDict()
            for event in due:
                grouped.setdefault(event.organization_id, []).append(event.id)
            db.commit()
        finally:
            db.close()

        if not grouped:
            summary.duration_ms = int((time.monotonic() - started) * 1000)
            logger.info("[CAPI_OUTBOX] No due events")
            return summary

        logger.info("[CAPI_OUTBOX] Processing %d due event(s) across %d tenant(s)", len(due), len(grouped))

        tenant_slots = asyncio.Semaphore(max(1, self.settings.CAPI_MAX_CONCURRENT_TENANTS))

        async def run(org_id: UUID, event_ids: List[UUID]) -> TenantRunSummary:
            async with tenant_slots:
                return await self._process_tenant(org_id, event_ids)

        results = await asyncio.gather(*(run(org_id, ids) for org_id, ids in grouped.items()))
        for org_id, tenant_summary in zip(grouped.keys(), results):
            summary.add(org_id, tenant_summary)

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "[CAPI_OUTBOX] Pass complete: processed=%d sent=%d failed=%d skipped=%d in %dms",
            summary.processed, summary.sent, summary.failed, summary.skipped, summary.duration_ms,
        )
        return summary

    # -------------------------------------------------------------------------
    # Tenant
    # -------------------------------------------------------------------------

    async def _process_tenant(self, organization_id: UUID, event_ids: Sequence[UUID]) -> TenantRunSummary:
        tenant = TenantRunSummary()
        db = self.session_factory()
        repo = ConversionEventRepository(db, self.retry_policy.max_attempts)
        health = HealthTracker(db)
        claims: "OrderedDict[UUID, str]" = OrderedDict()
        finalized: set = set()

        try:
            now = self.clock()
            for event_id in event_ids:
                lease_token = repo.claim(event_id, now, self.lease)
                if lease_token is not None:
                    claims[event_id] = lease_token
                else:
                    logger.info("[CAPI_OUTBOX] Event %s claimed by another pass, skipping", event_id)
            if not claims:
                return tenant
            tenant.processed = len(claims)

            try:
                creds = self._resolver(db).resolve(organization_id)
            except CapiNotEnabledError:
                now = self.clock()
                for event_id, lease_token in claims.items():
                    repo.mark_terminal(event_id, lease_token, NOT_ENABLED_ERROR, now)
                    finalized.add(event_id)
                tenant.skipped = len(claims)
                logger.warning(
                    "[CAPI_OUTBOX] Org %s has CAPI disabled, failed %d event(s)", organization_id, len(claims),
                )
                return tenant
            except NoCredentialsError as exc:
                self._defer_for_missing_credentials(repo, health, organization_id, claims, str(exc))
                finalized.update(claims)
                tenant.skipped = len(claims)
                return tenant
            db.commit()

            allowed = self._allowed_fields(creds)
            event_slots = asyncio.Semaphore(max(1, self.settings.CAPI_TENANT_CONCURRENCY))

            async def deliver(event_id: UUID, lease_token: str) -> Optional[str]:
                async with event_slots:
                    return await self._deliver_event(db, repo, health, creds, allowed, event_id, lease_token)

            outcomes = await asyncio.gather(
                *(deliver(event_id, lease_token) for event_id, lease_token in claims.items()),
                return_exceptions=True,
            )

            for event_id, outcome in zip(claims, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(
                        "[CAPI_OUTBOX] Unexpected error delivering event %s: %s", event_id, outcome,
                        exc_info=outcome,
                    )
                    capture_exception(outcome, extra={"organization_id": str(organization_id), "event_id": str(event_id)})
                    continue
                finalized.add(event_id)
                if outcome == "sent":
                    tenant.sent += 1
                else:
                    tenant.failed += 1

            return tenant

        except Exception as exc:
            # Clear a failed transaction so the release below can still write.
            db.rollback()
            logger.exception("[CAPI_OUTBOX] Tenant %s processing crashed", organization_id)
            capture_exception(exc, extra={"organization_id": str(organization_id)})
            tenant.error = _truncate_error(str(exc))
            return tenant

        finally:
            remaining = {
                event_id: lease_token for event_id, lease_token in claims.items() if event_id not in finalized
            }
            if remaining:
                tenant.failed += self._release_unfinished(db, repo, remaining)
            db.close()

    def _defer_for_missing_credentials(
        self,
        repo: ConversionEventRepository,
        health: HealthTracker,
        organization_id: UUID,
        claims: Mapping[UUID, str],
        error: str,
    ) -> None:
        now = self.clock()
        terminal = 0
        for event_id, lease_token in claims.items():
            event = repo.get(event_id)
            if repo.mark_attempt_failed(
                event_id, lease_token, event.retry_count, f"no_credentials: {error}", now, self.retry_policy,
            ):
                terminal += 1

        logger.warning(
            "[CAPI_OUTBOX] No credentials for org %s: deferred %d event(s), %d now terminal",
            organization_id, len(claims), terminal,
        )
        # One health failure per tenant per pass, not per event.
        self._record_health(health.record_failure, organization_id, error, NoCredentialsError.kind, now)

    def _release_unfinished(self, db: Session, repo: ConversionEventRepository, claims: Mapping[UUID, str]) -> int:
        """Reschedule leased events whose attempt never finished."""
        try:
            db.rollback()
            now = self.clock()
            for event_id, lease_token in claims.items():
                event = repo.get(event_id)
                if event is None:
                    continue
                repo.mark_attempt_failed(
                    event_id, lease_token, event.retry_count, "Unexpected processing error", now, self.retry_policy,
                )
        except Exception as exc:
            # Leases expire on their own; the next pass picks these up.
            logger.exception("[CAPI_OUTBOX] Failed to release %d leased event(s)", len(claims))
            capture_exception(exc)
        return len(claims)

    # -------------------------------------------------------------------------
    # Event
    # -------------------------------------------------------------------------

    async def _deliver_event(
        self,
        db: Session,
        repo: ConversionEventRepository,
        health: HealthTracker,
        creds: ResolvedCredentials,
        allowed: frozenset,
        event_id: UUID,
        lease_token: str,
    ) -> str:
        event = repo.get(event_id)
        organization_id = event.organization_id
        retry_count = event.retry_count
        pixel_id = event.pixel_id or creds.pixel_id

        try:
            payload = build_capi_event(
                event,
                creds.privacy_mode,
                allowed,
                self.clock(),
                max_age=self.max_event_age,
                max_future_skew=self.max_future_skew,
            )
        except CapiValidationError as exc:
            now = self.clock()
            repo.mark_terminal(event_id, lease_token, f"validation_error: {exc}", now)
            logger.warning("[CAPI_OUTBOX] Event %s failed validation: %s", event_id, exc)
            self._record_health(health.record_failure, organization_id, str(exc), CapiValidationError.kind, now)
            return "failed"

        # End the read transaction before awaiting the network.
        db.commit()

        result = await self.client.send(pixel_id, creds.access_token, payload, creds.test_event_code)
        now = self.clock()

        if result.ok:
            repo.mark_sent(event_id, lease_token, result, now)
            self._record_health(health.record_success, organization_id, now)
            return "sent"

        error = f"{result.error_kind}: {result.error_message}"
        if result.response_body:
            error = f"{error} | body: {result.response_body}"
        terminal = repo.mark_attempt_failed(
            event_id,
            lease_token,
            retry_count,
            error,
            now,
            self.retry_policy,
            status_code=result.status_code,
            response=result.response_metadata(),
        )
        if terminal:
            logger.error("[CAPI_OUTBOX] Event %s failed permanently after %d attempts", event_id, retry_count + 1)
        self._record_health(health.record_failure, organization_id, result.error_message, result.error_kind, now)
        return "failed"

    @staticmethod
    def _record_health(record: Callable[..., None], organization_id: UUID, *args: Any) -> None:
        try:
            record(organization_id, *args)
        except Exception as exc:
            logger.exception("[CAPI_HEALTH] Failed to update health stats for org %s", organization_id)
            capture_exception(exc, extra={"organization_id": str(organization_id)})

    # -------------------------------------------------------------------------
    # Dry run
    # -------------------------------------------------------------------------

    def dry_run(self, event_id: UUID) -> Optional[Dict[str, Any]]:
        """Build the full request for one event without sending or writing.

        Returns None when the event does not exist. Credential and validation
        problems are reported in the result instead of raised.
        """
        db = self.session_factory()
        try:
            event = db.get(ConversionEvent, event_id)
            if event is None:
                return None

            report: Dict[str, Any] = {
                "id": str(event.id),
                "organization_id": str(event.organization_id),
                "event_id": event.event_id,
                "status": event.status.value if event.status else None,
                "retry_count": event.retry_count,
                "would_send": False,
                "credential_source": None,
                "url": None,
                "request_body": None,
                "error": None,
            }

            try:
                creds = self._resolver(db).resolve(event.organization_id)
            except (CapiNotEnabledError, NoCredentialsError) as exc:
                report["error"] = f"{exc.kind}: {exc}"
                return report

            pixel_id = event.pixel_id or creds.pixel_id
            report["credential_source"] = creds.source
            report["url"] = self.client.events_url(pixel_id)

            try:
                payload = build_capi_event(
                    event,
                    creds.privacy_mode,
                    self._allowed_fields(creds),
                    self.clock(),
                    max_age=self.max_event_age,
                    max_future_skew=self.max_future_skew,
                )
            except CapiValidationError as exc:
                report["error"] = f"{exc.kind}: {exc}"
                return report

            report["request_body"] = build_request_body(payload, REDACTED, creds.test_event_code)
            report["would_send"] = True
            return report
        finally:
            db.rollback()
            db.close()
