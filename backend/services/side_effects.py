"""
Side-effect runner for mail and realtime emits.
Each effect is attempted inline; a failure is captured into side_effect_queue
(outbox pattern) and retried by the side_effect_retry_worker job with backoff.
Failures never propagate to the caller's business operation. A claimed row
carries a lease; rows left RUNNING past it are put back in the queue.
"""
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, Optional
import logging
import os
import uuid

from database import database
from models import AuditAction
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

KIND_MAIL = "mail"
KIND_EMIT = "emit"

STATUS_PENDING = "PENDING"
STATUS_RUNNING = "RUNNING"
STATUS_DONE = "DONE"
STATUS_DEAD = "DEAD"

# Retry backoff seconds after the inline attempt: 30s, 2m, 10m
SIDE_EFFECT_BACKOFFS = [30, 120, 600]
MAX_SIDE_EFFECT_ATTEMPTS = len(SIDE_EFFECT_BACKOFFS) + 1

# A RUNNING row older than the lease belongs to a worker that died mid-retry
SIDE_EFFECT_LEASE_SECONDS = int(os.getenv("SIDE_EFFECT_LEASE_SECONDS", "600"))
SIDE_EFFECT_RECORD_ATTEMPTS = 3


@dataclass
class SideEffectOutcome:
    kind: str
    ok: bool
    queued: bool = False
    effect_id: Optional[str] = None
    error: Optional[str] = None


class SideEffectRunner:
    def __init__(self, email_service, hub):
        self.email_service = email_service
        self.hub = hub

    async def send_mail(self, to: str, subject: str, html: str,
                        context: Optional[Dict[str, Any]] = None) -> SideEffectOutcome:
        return await self._attempt(KIND_MAIL, {"to": to, "subject": subject, "html": html}, context)

    async def emit(self, channel: str, event: str, payload: Dict[str, Any],
                   context: Optional[Dict[str, Any]] = None) -> SideEffectOutcome:
        return await self._attempt(KIND_EMIT, {"channel": channel, "event": event, "payload": payload}, context)

    async def _execute(self, kind: str, payload: Dict[str, Any]):
        if kind == KIND_MAIL:
            await self.email_service.send(payload["to"], payload["subject"], payload["html"])
        elif kind == KIND_EMIT:
            await self.hub.emit(payload["channel"], payload["event"], payload["payload"])
        else:
            raise ValueError(f"Unknown side effect kind: {kind}")

    async def _attempt(self, kind, payload, context) -> SideEffectOutcome:
        try:
            await self._execute(kind, payload)
            return SideEffectOutcome(kind=kind, ok=True)
        except Exception as e:
            logger.warning(f"Side effect {kind} failed, queueing retry: {e}")
            effect_id = await self._capture(kind, payload, str(e), context)
            return SideEffectOutcome(kind=kind, ok=False, queued=effect_id is not None,
                                     effect_id=effect_id, error=str(e))

    async def _capture(self, kind, payload, error, context) -> Optional[str]:
        try:
            db = database.get_db()
            now = datetime.now(timezone.utc)
            effect_id = str(uuid.uuid4())
            await db.side_effect_queue.insert_one({
                "effect_id": effect_id,
                "kind": kind,
                "payload": payload,
                "context": context or {},
                "attempt_count": 1,
                "next_run_at": now + timedelta(seconds=SIDE_EFFECT_BACKOFFS[0]),
                "status": STATUS_PENDING,
                "last_error": error[:500],
                "created_at": now,
            })
            return effect_id
        except Exception as e:
            logger.error(f"Failed to queue side effect {kind}: {e}")
            return None

    async def _record(self, effect_id: str, fields: Dict[str, Any]):
        """Write a row's outcome, retrying briefly so a delivered effect is not left to be re-run."""
        db = database.get_db()
        fields = {**fields, "updated_at": datetime.now(timezone.utc)}
        for attempt in range(1, SIDE_EFFECT_RECORD_ATTEMPTS + 1):
            try:
                await db.side_effect_queue.update_one({"effect_id": effect_id}, {"$set": fields})
                return
            except Exception as e:
                if attempt == SIDE_EFFECT_RECORD_ATTEMPTS:
                    raise
                logger.warning(f"Recording side effect {effect_id} failed (attempt {attempt}): {e}")

    async def reclaim_stale(self, now: Optional[datetime] = None) -> int:
        """Return RUNNING rows whose lease expired to PENDING."""
        db = database.get_db()
        now = now or datetime.now(timezone.utc)
        result = await db.side_effect_queue.update_many(
            {"status": STATUS_RUNNING, "claimed_at": {"$lte": now - timedelta(seconds=SIDE_EFFECT_LEASE_SECONDS)}},
            {"$set": {"status": STATUS_PENDING, "next_run_at": now, "updated_at": now}},
        )
        if result.modified_count:
            logger.warning(f"Reclaimed {result.modified_count} side effects with an expired lease")
        return result.modified_count

    async def process_retry_queue(self, limit: int = 50) -> Dict[str, int]:
        """Re-attempt due PENDING effects.

        Returns counts of retried, succeeded, dead and errors. A row whose
        outcome cannot be recorded stays RUNNING until its lease expires;
        the rest of the batch still runs.
        """
        db = database.get_db()
        now = datetime.now(timezone.utc)
        summary = {"retried": 0, "succeeded": 0, "dead": 0, "errors": 0}
        try:
            await self.reclaim_stale(now)
        except Exception as e:
            summary["errors"] += 1
            logger.error(f"Failed to reclaim stale side effects: {e}")

        cursor = db.side_effect_queue.find(
            {"status": STATUS_PENDING, "next_run_at": {"$lte": now}}
        ).sort("next_run_at", 1).limit(limit)
        items = await cursor.to_list(limit)

        for item in items:
            effect_id = item["effect_id"]
            try:
                outcome = await self._retry_one(item, now)
            except Exception as e:
                summary["errors"] += 1
                logger.error(f"Side effect {effect_id} ({item.get('kind')}) retry bookkeeping failed: {e}")
                continue
            if outcome is None:
                continue
            summary["retried"] += 1
            if outcome == STATUS_DONE:
                summary["succeeded"] += 1
            elif outcome == STATUS_DEAD:
                summary["dead"] += 1
        logger.info(f"Side effect retry: {summary}")
        return summary

    async def _retry_one(self, item: Dict[str, Any], now: datetime) -> Optional[str]:
        """Claim and re-run one row. Returns the status it ends in, or None if another worker has it."""
        db = database.get_db()
        effect_id = item["effect_id"]
        # Atomic claim
        claim = await db.side_effect_queue.update_one(
            {"effect_id": effect_id, "status": STATUS_PENDING},
            {"$set": {"status": STATUS_RUNNING, "claimed_at": now, "updated_at": now}},
        )
        if claim.modified_count == 0:
            return None

        try:
            await self._execute(item["kind"], item["payload"])
        except Exception as e:
            return await self._record_failure(item, e)

        try:
            await self._record(effect_id, {"status": STATUS_DONE})
        except Exception as e:
            logger.error(f"Side effect {effect_id} delivered but could not be marked done: {e}")
        return STATUS_DONE

    async def _record_failure(self, item: Dict[str, Any], error: Exception) -> str:
        effect_id = item["effect_id"]
        attempts = item.get("attempt_count", 1) + 1
        err_str = str(error)[:500]
        if attempts >= MAX_SIDE_EFFECT_ATTEMPTS:
            await self._record(effect_id, {
                "status": STATUS_DEAD,
                "attempt_count": attempts,
                "last_error": err_str,
            })
            logger.error(f"Side effect {effect_id} ({item['kind']}) dead after {attempts} attempts: {error}")
            await create_audit_log(
                action=AuditAction.SIDE_EFFECT_FAILED_PERMANENT,
                resource_type="side_effect",
                resource_id=effect_id,
                metadata={
                    "kind": item["kind"],
                    "attempts": attempts,
                    "error": err_str,
                    "context": item.get("context") or {},
                },
            )
            return STATUS_DEAD

        delta = SIDE_EFFECT_BACKOFFS[min(attempts - 1, len(SIDE_EFFECT_BACKOFFS) - 1)]
        await self._record(effect_id, {
            "status": STATUS_PENDING,
            "attempt_count": attempts,
            "next_run_at": datetime.now(timezone.utc) + timedelta(seconds=delta),
            "last_error": err_str,
        })
        return STATUS_PENDING
