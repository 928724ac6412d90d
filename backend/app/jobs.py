"""
Async job dispatcher.

Named queues with at-least-once delivery. Side effects (notification sends,
real-time events, internal transfers) are enqueued here so that their failure
never unwinds the business write that produced them.

- RetryPolicy is a plain value object: max attempts + exponential backoff.
- JobQueue implementations: InMemoryJobQueue (tests, single process) and
  PostgresJobQueue (durable; `background_jobs` table, claimed with
  FOR UPDATE SKIP LOCKED so several workers can share it).
- Jobs that exhaust their attempts are parked as `dead` for inspection.
- WorkerPool runs claimed jobs on a bounded thread pool.
"""
from __future__ import annotations

import hashlib
import json
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Literal, Mapping, Optional, Protocol

from pydantic import BaseModel, Field

from .logs import json_log


class QueueName(str, Enum):
    EMAIL_NOTIFICATIONS = "email-notifications"
    REALTIME_EVENTS = "realtime-events"
    PAYOUT_PROCESSING = "payout-processing"


class NotificationJob(BaseModel):
    type: Literal["order_confirmation", "receipt", "payout_confirmation", "payout_failed"]
    to: str = Field(min_length=3)
    data: dict[str, Any] = Field(default_factory=dict)


class RealtimeJob(BaseModel):
    room: str = Field(min_length=1)
    event: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


class PayoutJob(BaseModel):
    source_type: Literal["revenue_split", "tip_out"]
    source_id: str
    amount: int = Field(ge=0)
    recipient_ref: str
    organization_id: str
    order_id: Optional[str] = None
    idempotency_key: str = Field(min_length=1)


PAYLOAD_MODELS: dict[str, type[BaseModel]] = {
    QueueName.EMAIL_NOTIFICATIONS.value: NotificationJob,
    QueueName.REALTIME_EVENTS.value: RealtimeJob,
    QueueName.PAYOUT_PROCESSING.value: PayoutJob,
}


def _queue_key(queue) -> str:
    return queue.value if isinstance(queue, QueueName) else str(queue)


def validate_payload(queue, payload) -> BaseModel:
    model = PAYLOAD_MODELS.get(_queue_key(queue))
    if model is None:
        raise ValueError(f"unknown queue: {_queue_key(queue)}")
    if isinstance(payload, model):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    return model.model_validate(payload)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 2
    max_backoff_seconds: float = 300

    def delay_for(self, attempt: int, job_id: Optional[str] = None) -> float:
        delay = min(self.max_backoff_seconds, self.backoff_seconds * (2 ** max(attempt - 1, 0)))
        if job_id:
            # Deterministic per-job jitter to reduce synchronized retry storms.
            digest = hashlib.sha1(f"{job_id}:{attempt}".encode("utf-8")).hexdigest()
            jitter_window = max(1, min(30, int(delay) // 5 or 1))
            delay = min(self.max_backoff_seconds, delay + (int(digest[:8], 16) % (jitter_window + 1)))
        return float(delay)

    def next_attempt_at(self, attempt: int, job_id: Optional[str], now: datetime) -> datetime:
        return now + timedelta(seconds=self.delay_for(attempt, job_id))

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


@dataclass
class Job:
    id: str
    queue: str
    payload: dict[str, Any]
    status: str = "pending"
    attempts: int = 0
    max_attempts: int = 3
    backoff_seconds: float = 2
    max_backoff_seconds: float = 300
    idempotency_key: Optional[str] = None
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None

    @property
    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            backoff_seconds=self.backoff_seconds,
            max_backoff_seconds=self.max_backoff_seconds,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "queue": self.queue,
            "payload": self.payload,
            "status": self.status,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "idempotency_key": self.idempotency_key,
            "last_error": self.last_error,
            "next_attempt_at": self.next_attempt_at,
            "created_at": self.created_at,
        }


class JobQueue(Protocol):
    def enqueue(
        self,
        queue,
        payload,
        *,
        policy: Optional[RetryPolicy] = None,
        idempotency_key: Optional[str] = None,
        cur=None,
    ) -> Optional[str]: ...

    def claim(self, queues: Optional[Iterable[str]] = None) -> Optional[Job]: ...

    def complete(self, job: Job) -> None: ...

    def fail(self, job: Job, error: str) -> str: ...

    def list_dead(self, queue: Optional[str] = None, limit: int = 100) -> list[Job]: ...

    def retry_dead(self, job_id: str) -> bool: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryJobQueue:
    """Thread-safe in-process queue with the same semantics as the durable one."""

    def __init__(self, *, default_policy: Optional[RetryPolicy] = None, clock: Callable[[], datetime] = _utcnow):
        self.default_policy = default_policy or RetryPolicy()
        self._clock = clock
        self._lock = threading.Lock()
        self._jobs: dict[str, Job] = {}

    def enqueue(self, queue, payload, *, policy=None, idempotency_key=None, cur=None) -> Optional[str]:
        name = _queue_key(queue)
        body = validate_payload(name, payload).model_dump(mode="json")
        pol = policy or self.default_policy
        now = self._clock()
        with self._lock:
            if idempotency_key:
                for existing in self._jobs.values():
                    if existing.queue == name and existing.idempotency_key == idempotency_key:
                        return None
            job = Job(
                id=str(uuid.uuid4()),
                queue=name,
                payload=body,
                max_attempts=pol.max_attempts,
                backoff_seconds=pol.backoff_seconds,
                max_backoff_seconds=pol.max_backoff_seconds,
                idempotency_key=idempotency_key,
                next_attempt_at=now,
                created_at=now,
            )
            self._jobs[job.id] = job
            return job.id

    def claim(self, queues=None) -> Optional[Job]:
        wanted = {_queue_key(q) for q in queues} if queues else None
        now = self._clock()
        with self._lock:
            due = [
                j
                for j in self._jobs.values()
                if j.status in {"pending", "failed"}
                and (wanted is None or j.queue in wanted)
                and (j.next_attempt_at is None or j.next_attempt_at <= now)
            ]
            if not due:
                return None
            due.sort(key=lambda j: (j.next_attempt_at or now, j.created_at or now))
            job = due[0]
            job.status = "running"
            job.attempts += 1
            job.locked_at = now
            return replace(job)

    def complete(self, job: Job) -> None:
        with self._lock:
            stored = self._jobs[job.id]
            stored.status = "completed"
            stored.last_error = None
            stored.locked_at = None

    def fail(self, job: Job, error: str) -> str:
        now = self._clock()
        with self._lock:
            stored = self._jobs[job.id]
            stored.last_error = error
            stored.locked_at = None
            if stored.policy.exhausted(stored.attempts):
                stored.status = "dead"
                stored.next_attempt_at = None
            else:
                stored.status = "failed"
                stored.next_attempt_at = stored.policy.next_attempt_at(stored.attempts, stored.id, now)
            return stored.status

    def list_dead(self, queue=None, limit: int = 100) -> list[Job]:
        with self._lock:
            rows = [
                replace(j)
                for j in self._jobs.values()
                if j.status == "dead" and (queue is None or j.queue == _queue_key(queue))
            ]
        return rows[:limit]

    def retry_dead(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job or job.status != "dead":
                return False
            job.status = "pending"
            job.attempts = 0
            job.last_error = None
            job.next_attempt_at = self._clock()
            return True

    def jobs(self, queue=None, status: Optional[str] = None) -> list[Job]:
        with self._lock:
            return [
                replace(j)
                for j in self._jobs.values()
                if (queue is None or j.queue == _queue_key(queue)) and (status is None or j.status == status)
            ]


def _row_to_job(row: Mapping[str, Any]) -> Job:
    payload = row.get("payload_json") or {}
    if isinstance(payload, str):
        payload = json.loads(payload)
    return Job(
        id=str(row["id"]),
        queue=row["queue_name"],
        payload=payload,
        status=row["status"],
        attempts=int(row.get("attempts") or 0),
        max_attempts=int(row.get("max_attempts") or 3),
        backoff_seconds=float(row.get("backoff_seconds") or 2),
        max_backoff_seconds=float(row.get("max_backoff_seconds") or 300),
        idempotency_key=row.get("idempotency_key"),
        last_error=row.get("last_error"),
        next_attempt_at=row.get("next_attempt_at"),
        created_at=row.get("created_at"),
        locked_at=row.get("locked_at"),
    )


_JOB_COLUMNS = """
    id, queue_name, payload_json, status, attempts, max_attempts, backoff_seconds,
    max_backoff_seconds, idempotency_key, last_error, next_attempt_at, created_at, locked_at
"""


class PostgresJobQueue:
    """
    Durable queue on `background_jobs`.

    `enqueue(..., cur=cur)` writes through the caller's cursor so the job only
    becomes visible if the caller's transaction commits (outbox style).
    """

    def __init__(self, db, *, default_policy: Optional[RetryPolicy] = None, visibility_timeout_seconds: int = 600):
        self.db = db
        self.default_policy = default_policy or RetryPolicy()
        self.visibility_timeout_seconds = visibility_timeout_seconds

    def _insert(self, cur, name: str, body: dict, pol: RetryPolicy, idempotency_key: Optional[str]) -> Optional[str]:
        cur.execute(
            """
            INSERT INTO background_jobs
              (id, queue_name, payload_json, status, attempts, max_attempts, backoff_seconds,
               max_backoff_seconds, idempotency_key, next_attempt_at)
            VALUES
              (gen_random_uuid(), %s, %s::jsonb, 'pending', 0, %s, %s, %s, %s, now())
            ON CONFLICT (queue_name, idempotency_key) WHERE idempotency_key IS NOT NULL
            DO NOTHING
            RETURNING id
            """,
            (name, json.dumps(body), pol.max_attempts, pol.backoff_seconds, pol.max_backoff_seconds, idempotency_key),
        )
        row = cur.fetchone()
        return str(row["id"]) if row else None

    def enqueue(self, queue, payload, *, policy=None, idempotency_key=None, cur=None) -> Optional[str]:
        name = _queue_key(queue)
        body = validate_payload(name, payload).model_dump(mode="json")
        pol = policy or self.default_policy
        if cur is not None:
            return self._insert(cur, name, body, pol, idempotency_key)
        with self.db.connection() as conn:
            with conn.cursor() as own:
                return self._insert(own, name, body, pol, idempotency_key)

    def _reap_expired(self, cur) -> None:
        # Jobs whose worker died mid-flight and have no attempts left.
        cur.execute(
            """
            UPDATE background_jobs
            SET status = 'dead',
                last_error = COALESCE(last_error, 'visibility timeout exceeded'),
                locked_at = NULL,
                updated_at = now()
            WHERE status = 'running'
              AND locked_at < now() - interval '1 second' * %s
              AND attempts >= max_attempts
            """,
            (self.visibility_timeout_seconds,),
        )

    def claim(self, queues=None) -> Optional[Job]:
        names = [_queue_key(q) for q in queues] if queues else [q.value for q in QueueName]
        with self.db.connection() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    self._reap_expired(cur)
                    cur.execute(
                        """
                        WITH due AS (
                          SELECT id
                          FROM background_jobs
                          WHERE queue_name = ANY(%s)
                            AND (
                              (status IN ('pending', 'failed') AND next_attempt_at <= now())
                              OR (status = 'running' AND locked_at < now() - interval '1 second' * %s)
                            )
                          ORDER BY next_attempt_at, created_at
                          FOR UPDATE SKIP LOCKED
                          LIMIT 1
                        )
                        UPDATE background_jobs j
                        SET status = 'running',
                            attempts = j.attempts + 1,
                            locked_at = now(),
                            updated_at = now()
                        FROM due
                        WHERE j.id = due.id
                        RETURNING j.*
                        """,
                        (names, self.visibility_timeout_seconds),
                    )
                    row = cur.fetchone()
                    return _row_to_job(row) if row else None

    def complete(self, job: Job) -> None:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE background_jobs
                    SET status = 'completed',
                        last_error = NULL,
                        locked_at = NULL,
                        completed_at = now(),
                        updated_at = now()
                    WHERE id = %s
                    """,
                    (job.id,),
                )

    def fail(self, job: Job, error: str) -> str:
        pol = job.policy
        if pol.exhausted(job.attempts):
            status, next_at = "dead", None
        else:
            status, next_at = "failed", pol.next_attempt_at(job.attempts, job.id, _utcnow())
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE background_jobs
                    SET status = %s,
                        last_error = %s,
                        next_attempt_at = %s,
                        locked_at = NULL,
                        updated_at = now()
                    WHERE id = %s
                    """,
                    (status, error, next_at, job.id),
                )
        return status

    def list_dead(self, queue=None, limit: int = 100) -> list[Job]:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_JOB_COLUMNS}
                    FROM background_jobs
                    WHERE status = 'dead'
                      AND (%s::text IS NULL OR queue_name = %s)
                    ORDER BY updated_at DESC
                    LIMIT %s
                    """,
                    (_queue_key(queue) if queue else None, _queue_key(queue) if queue else None, limit),
                )
                return [_row_to_job(r) for r in cur.fetchall()]

    def retry_dead(self, job_id: str) -> bool:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE background_jobs
                    SET status = 'pending',
                        attempts = 0,
                        last_error = NULL,
                        next_attempt_at = now(),
                        updated_at = now()
                    WHERE id = %s AND status = 'dead'
                    RETURNING id
                    """,
                    (job_id,),
                )
                return cur.fetchone() is not None


JobHandler = Callable[[BaseModel], Any]


@dataclass
class WorkerPool:
    queue: Any
    handlers: Mapping[str, JobHandler]
    concurrency: int = 5
    name: str = "job-worker"
    _executor: Optional[ThreadPoolExecutor] = field(default=None, init=False, repr=False)

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix=self.name)

    def _run(self, job: Job) -> str:
        handler = self.handlers.get(job.queue)
        try:
            if handler is None:
                raise LookupError(f"no handler registered for queue {job.queue}")
            handler(validate_payload(job.queue, job.payload))
        except Exception as ex:
            status = self.queue.fail(job, str(ex) or ex.__class__.__name__)
            json_log(
                "error" if status == "dead" else "warning",
                "jobs.failed",
                worker=self.name,
                queue=job.queue,
                job_id=job.id,
                attempt=job.attempts,
                max_attempts=job.max_attempts,
                status=status,
                error=str(ex),
            )
            return status
        self.queue.complete(job)
        json_log("info", "jobs.completed", worker=self.name, queue=job.queue, job_id=job.id, attempt=job.attempts)
        return "completed"

    def run_once(self) -> int:
        claimed: list[Job] = []
        queues = list(self.handlers.keys())
        while len(claimed) < self.concurrency:
            job = self.queue.claim(queues)
            if job is None:
                break
            claimed.append(job)
        if not claimed:
            return 0
        futures = [self._executor.submit(self._run, job) for job in claimed]
        for f in futures:
            f.result()
        return len(claimed)

    def run_forever(self, stop: threading.Event, sleep: float = 1.0) -> None:
        while not stop.is_set():
            try:
                did = self.run_once()
            except Exception as ex:
                # Never crash the worker loop because the queue is unreachable.
                json_log("error", "jobs.loop.error", worker=self.name, error=str(ex))
                did = 0
            if not did:
                stop.wait(sleep)

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
