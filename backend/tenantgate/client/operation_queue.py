# Overview: Durable, capped offline queue of sales/feedback/bookings with ordered at-least-once replay.

"""
Offline Operation Queue

ENQUEUE: synchronous local insert, never touches the network. The queue is
capped (default 50); beyond the cap the oldest entries are dropped. That is
a deliberate lossy-under-extreme-backlog policy.

DRAIN (oldest first, up to a batch limit of 1..50, default 10):
- Only entries owned by the current tenant + account are sent; the rest are
  left untouched
- Accepted (201) or replayed (200) -> removed
- ValidationFailed -> marked rejected (kept for admin review), drain continues
- TransientNetworkFailure -> drain stops; this and later entries stay in order
- Any other refusal (locked tenant, expired session, ...) -> drain stops

RETRY: a drain stopped by TransientNetworkFailure backs off. drain_due() is
False until retry_interval has passed (30 s, doubling per consecutive
failure up to 15 minutes); the connectivity heartbeat retries once it is
due. A drain that gets through its batch resets the backoff.

Delivery is at-least-once; the authority deduplicates on operation_id.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from sqlalchemy import delete, func, select

from ..errors import AccessError, TransientNetworkFailure, ValidationFailed
from ..services.operations_service import OPERATION_KINDS
from ..time_utils import utcnow
from ..validation import clamp_int
from .local_store import QueuedOperationRow


logger = logging.getLogger(__name__)

MAX_DRAIN_BATCH = 50
DEFAULT_RETRY_INTERVAL = 30.0
MAX_RETRY_INTERVAL = 15 * 60.0


@dataclass
class QueuedOperation:
    operation_id: str
    kind: str
    payload: dict
    tenant_id: int
    account_id: int
    created_at: datetime
    last_error: str | None = None
    rejected_at: datetime | None = None


@dataclass
class DrainReport:
    sent: list[str] = field(default_factory=list)
    rejected: list[tuple[str, str]] = field(default_factory=list)
    remaining: int = 0
    stopped_reason: str | None = None


class OfflineOperationQueue:
    def __init__(
        self,
        state,
        authority,
        cap: int = 50,
        default_batch: int = 10,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._state = state
        self._authority = authority
        self.cap = max(1, int(cap))
        self.default_batch = clamp_int(default_batch, 1, MAX_DRAIN_BATCH, 10)

        self.base_retry_interval = max(0.0, float(retry_interval))
        self.retry_interval = self.base_retry_interval
        self._monotonic = monotonic
        self._failed_at_mono: float | None = None

    def drain_due(self) -> bool:
        """False while backing off after a drain stopped on a network failure."""
        if self._failed_at_mono is None:
            return True
        return self._monotonic() - self._failed_at_mono >= self.retry_interval

    def _back_off(self) -> None:
        if self._failed_at_mono is None:
            self.retry_interval = self.base_retry_interval
        else:
            self.retry_interval = min(MAX_RETRY_INTERVAL, self.retry_interval * 2)
        self._failed_at_mono = self._monotonic()
        logger.warning("Queue drain interrupted; next attempt in %.0f s", self.retry_interval)

    def _reset_backoff(self) -> None:
        self._failed_at_mono = None
        self.retry_interval = self.base_retry_interval

    def _to_entry(self, row: QueuedOperationRow) -> QueuedOperation:
        raw = self._state.decrypt(row.payload)
        try:
            payload = json.loads(raw) if raw is not None else {}
        except ValueError:
            payload = {}
        return QueuedOperation(
            operation_id=row.operation_id,
            kind=row.kind,
            payload=payload,
            tenant_id=row.tenant_id,
            account_id=row.account_id,
            created_at=row.created_at,
            last_error=row.last_error,
            rejected_at=row.rejected_at,
        )

    def enqueue(
        self,
        kind: str,
        payload: dict,
        *,
        tenant_id: int,
        account_id: int,
        operation_id: str | None = None,
    ) -> QueuedOperation:
        if kind not in OPERATION_KINDS:
            raise ValueError(f"Unknown operation kind: {kind}")

        row = QueuedOperationRow(
            operation_id=operation_id or uuid.uuid4().hex,
            kind=kind,
            payload=self._state.encrypt(json.dumps(payload)),
            tenant_id=int(tenant_id),
            account_id=int(account_id),
            created_at=utcnow(),
        )
        with self._state.transaction() as s:
            s.add(row)
            s.flush()

            overflow = s.scalar(select(func.count(QueuedOperationRow.id))) - self.cap
            if overflow > 0:
                oldest = s.scalars(
                    select(QueuedOperationRow.id).order_by(QueuedOperationRow.id.asc()).limit(overflow)
                ).all()
                s.execute(delete(QueuedOperationRow).where(QueuedOperationRow.id.in_(oldest)))
                logger.warning("Offline queue over capacity; dropped %d oldest entries", overflow)

            return self._to_entry(row)

    def entries(self) -> list[QueuedOperation]:
        """Newest first (display order)."""
        with self._state.transaction() as s:
            rows = s.scalars(select(QueuedOperationRow).order_by(QueuedOperationRow.id.desc())).all()
            return [self._to_entry(r) for r in rows]

    def count(self, tenant_id: int | None = None, account_id: int | None = None) -> int:
        query = select(func.count(QueuedOperationRow.id))
        if tenant_id is not None:
            query = query.where(QueuedOperationRow.tenant_id == tenant_id)
        if account_id is not None:
            query = query.where(QueuedOperationRow.account_id == account_id)
        with self._state.transaction() as s:
            return s.scalar(query)

    def discard(self, operation_id: str) -> bool:
        """Admin action: drop an entry without sending it."""
        with self._state.transaction() as s:
            result = s.execute(delete(QueuedOperationRow).where(QueuedOperationRow.operation_id == operation_id))
        return result.rowcount > 0

    def retry(self, operation_id: str) -> bool:
        """Admin action: put a rejected entry back into the drain."""
        with self._state.transaction() as s:
            row = s.scalars(select(QueuedOperationRow).where(QueuedOperationRow.operation_id == operation_id)).first()
            if row is None:
                return False
            row.rejected_at = None
            return True

    def _set_error(self, row_id: int, message: str, rejected: bool) -> None:
        with self._state.transaction() as s:
            row = s.get(QueuedOperationRow, row_id)
            if row is None:
                return
            row.last_error = message
            if rejected:
                row.rejected_at = utcnow()

    def _remove(self, row_id: int) -> None:
        with self._state.transaction() as s:
            s.execute(delete(QueuedOperationRow).where(QueuedOperationRow.id == row_id))

    def drain(
        self,
        access_token: str | None,
        *,
        tenant_id: int | None,
        account_id: int | None,
        limit: int | None = None,
    ) -> DrainReport:
        report = DrainReport()
        limit = clamp_int(limit if limit is not None else self.default_batch, 1, MAX_DRAIN_BATCH, self.default_batch)

        if not access_token:
            report.stopped_reason = "no_session"
        elif tenant_id is None or account_id is None:
            report.stopped_reason = "missing_user"
        else:
            with self._state.transaction() as s:
                rows = s.scalars(
                    select(QueuedOperationRow)
                    .where(
                        QueuedOperationRow.tenant_id == tenant_id,
                        QueuedOperationRow.account_id == account_id,
                        QueuedOperationRow.rejected_at.is_(None),
                    )
                    .order_by(QueuedOperationRow.id.asc())
                    .limit(limit)
                ).all()
                batch = [(r.id, self._to_entry(r)) for r in rows]

            for row_id, entry in batch:
                try:
                    self._authority.submit_operation(access_token, entry.operation_id, entry.kind, entry.payload)
                except ValidationFailed as e:
                    logger.warning("Queued %s %s rejected: %s", entry.kind, entry.operation_id, e.message)
                    self._set_error(row_id, e.message, rejected=True)
                    report.rejected.append((entry.operation_id, e.message))
                    continue
                except TransientNetworkFailure as e:
                    self._set_error(row_id, e.message, rejected=False)
                    report.stopped_reason = e.code
                    self._back_off()
                    break
                except AccessError as e:
                    self._set_error(row_id, e.message, rejected=False)
                    report.stopped_reason = e.code
                    break

                self._remove(row_id)
                report.sent.append(entry.operation_id)

            if report.stopped_reason != TransientNetworkFailure.code:
                self._reset_backoff()

        report.remaining = self.count()
        return report
