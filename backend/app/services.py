"""
Explicitly constructed service graph.

Nothing here connects at import time: the API builds one `Services` on
startup (stored on `app.state.services`) and closes it on shutdown; the worker
service does the same for its own process.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .account_sync import AccountSyncService
from .config import Settings
from .db import Database
from .jobs import PostgresJobQueue, RetryPolicy
from .logs import json_log
from .notifications import OutboxNotificationSink, PgNotifyPublisher
from .processor import StripeProcessorClient, UnconfiguredProcessorClient
from .webhooks.gateway import WebhookGateway


@dataclass
class Services:
    settings: Settings
    db: Any
    jobs: Any
    processor: Any
    accounts: AccountSyncService
    platform_webhooks: WebhookGateway
    connect_webhooks: WebhookGateway
    notifications: Any
    realtime: Any

    def close(self) -> None:
        close = getattr(self.db, "close", None)
        if close:
            close()
        json_log("info", "services.closed")


def default_retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.job_max_attempts,
        backoff_seconds=settings.job_backoff_seconds,
        max_backoff_seconds=settings.job_max_backoff_seconds,
    )


def build_services(settings: Settings, *, db=None, jobs=None, processor=None) -> Services:
    if db is None:
        db = Database(settings.db_url, min_size=settings.db_pool_min_size, max_size=settings.db_pool_max_size)
        db.open()
    if jobs is None:
        jobs = PostgresJobQueue(
            db,
            default_policy=default_retry_policy(settings),
            visibility_timeout_seconds=settings.job_visibility_timeout_seconds,
        )
    if processor is None:
        if settings.processor_api_key:
            processor = StripeProcessorClient(settings.processor_api_key)
        else:
            json_log("warning", "services.processor_not_configured", env=settings.env)
            processor = UnconfiguredProcessorClient()

    accounts = AccountSyncService(
        db,
        processor,
        ttl_seconds=settings.account_sync_ttl_seconds,
        dashboard_url=settings.dashboard_url,
    )
    platform = WebhookGateway(
        db,
        jobs,
        secret=settings.webhook_secret,
        tolerance_seconds=settings.webhook_tolerance_seconds,
        source="platform",
    )
    connect = WebhookGateway(
        db,
        jobs,
        secret=settings.connect_webhook_secret,
        tolerance_seconds=settings.webhook_tolerance_seconds,
        source="connect",
    )
    return Services(
        settings=settings,
        db=db,
        jobs=jobs,
        processor=processor,
        accounts=accounts,
        platform_webhooks=platform,
        connect_webhooks=connect,
        notifications=OutboxNotificationSink(db),
        realtime=PgNotifyPublisher(db),
    )
