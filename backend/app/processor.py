"""
Payment processor client.

Thin wrapper over the `stripe` SDK. The API key is passed on every call
instead of being set on the module, so several clients (and tests) can live
in one process.
"""
from __future__ import annotations

from typing import Any, Optional

import stripe

from .logs import json_log


class ProcessorError(Exception):
    def __init__(self, operation: str, message: str, *, code: Optional[str] = None):
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.code = code


def _as_dict(obj) -> dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


class StripeProcessorClient:
    def __init__(self, api_key: str):
        if not api_key:
            raise ValueError("processor api key is not configured")
        self.api_key = api_key

    def _call(self, operation: str, fn, *args, **kwargs) -> dict[str, Any]:
        try:
            return _as_dict(fn(*args, api_key=self.api_key, **kwargs))
        except stripe.StripeError as ex:
            json_log("error", "processor.call_failed", operation=operation, error=str(ex), code=getattr(ex, "code", None))
            raise ProcessorError(operation, str(ex), code=getattr(ex, "code", None)) from ex

    def retrieve_account(self, account_id: str) -> dict[str, Any]:
        return self._call("retrieve_account", stripe.Account.retrieve, account_id)

    def create_account(
        self,
        *,
        country: str,
        email: str,
        business_type: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "type": "express",
            "country": country,
            "email": email,
            "capabilities": {
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
            },
            "metadata": metadata or {},
        }
        if business_type:
            params["business_type"] = business_type
        return self._call("create_account", stripe.Account.create, **params)

    def create_account_link(
        self,
        account_id: str,
        *,
        refresh_url: str,
        return_url: str,
        link_type: str = "account_onboarding",
    ) -> dict[str, Any]:
        return self._call(
            "create_account_link",
            stripe.AccountLink.create,
            account=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
            type=link_type,
        )

    def create_transfer(
        self,
        *,
        amount: int,
        destination: str,
        idempotency_key: str,
        currency: str = "usd",
        metadata: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        return self._call(
            "create_transfer",
            stripe.Transfer.create,
            amount=amount,
            currency=currency,
            destination=destination,
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )


class UnconfiguredProcessorClient:
    """Stands in when STRIPE_SECRET_KEY is unset; every call fails cleanly."""

    def _fail(self, operation: str):
        raise ProcessorError(operation, "processor api key is not configured", code="not_configured")

    def retrieve_account(self, account_id: str) -> dict[str, Any]:
        self._fail("retrieve_account")

    def create_account(self, **_kwargs) -> dict[str, Any]:
        self._fail("create_account")

    def create_account_link(self, account_id: str, **_kwargs) -> dict[str, Any]:
        self._fail("create_account_link")

    def create_transfer(self, **_kwargs) -> dict[str, Any]:
        self._fail("create_transfer")
