from types import SimpleNamespace

from backend.app.jobs import InMemoryJobQueue, QueueName, RetryPolicy, WorkerPool
from backend.app.notifications import InMemoryNotificationSink, InMemoryPublisher
from backend.app.orders import enqueue_completion_effects
from backend.workers.job_handlers import build_handlers


class _NoSplitsCursor:
    def execute(self, sql, params=None):
        assert "FROM revenue_splits" in sql

    def fetchall(self):
        return []


def _services(jobs):
    return SimpleNamespace(
        jobs=jobs,
        db=None,
        processor=None,
        notifications=InMemoryNotificationSink(),
        realtime=InMemoryPublisher(),
    )


def test_build_handlers_covers_every_queue():
    handlers = build_handlers(_services(InMemoryJobQueue()))
    assert set(handlers) == {q.value for q in QueueName}


def test_completed_order_effects_are_delivered_by_the_worker():
    jobs = InMemoryJobQueue()
    services = _services(jobs)
    order = {
        "id": "ord-1",
        "organization_id": "org-1",
        "catalog_id": "cat-1",
        "subtotal": 2000,
        "tax_amount": 160,
        "tip_amount": 300,
        "total_amount": 2460,
        "customer_email": "diner@example.com",
    }
    enqueue_completion_effects(_NoSplitsCursor(), jobs, order)

    handlers = build_handlers(services)
    handlers.pop(QueueName.PAYOUT_PROCESSING.value)
    pool = WorkerPool(jobs, handlers, concurrency=2)
    try:
        assert pool.run_once() == 2
    finally:
        pool.shutdown()

    assert services.realtime.events == [
        {"room": "org:org-1", "event": "payment_received", "data": {"order_id": "ord-1", "total_amount": 2460, "tip_amount": 300}}
    ]
    assert [(m["type"], m["to"]) for m in services.notifications.sent] == [("order_confirmation", "diner@example.com")]
    assert len(jobs.jobs(status="completed")) == 2


def test_failing_sink_does_not_lose_the_job():
    jobs = InMemoryJobQueue(default_policy=RetryPolicy(max_attempts=2))
    jobs.enqueue(QueueName.EMAIL_NOTIFICATIONS, {"type": "receipt", "to": "a@b.c", "data": {}})

    class _Down:
        def send(self, kind, to, data):
            raise ConnectionError("smtp unavailable")

    services = _services(jobs)
    services.notifications = _Down()
    handlers = {QueueName.EMAIL_NOTIFICATIONS.value: build_handlers(services)[QueueName.EMAIL_NOTIFICATIONS.value]}
    pool = WorkerPool(jobs, handlers, concurrency=1)
    try:
        pool.run_once()
    finally:
        pool.shutdown()

    failed = jobs.jobs(QueueName.EMAIL_NOTIFICATIONS, status="failed")
    assert len(failed) == 1
    assert failed[0].last_error == "smtp unavailable"
