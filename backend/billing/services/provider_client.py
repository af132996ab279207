"""REST client for the billing provider's subscriber API."""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests
from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_datetime

logger = logging.getLogger(__name__)


class ProviderConfigurationError(RuntimeError):
    """Raised when the billing provider credentials are missing."""


class ProviderServiceError(RuntimeError):
    """Raised when the billing provider returns an operational error."""


class SubscriptionState(str, enum.Enum):
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    NONE = "none"


@dataclass(frozen=True)
class SubscriptionDetails:
    """Summary of the subscriber's best current subscription."""

    state: SubscriptionState
    expires_at: Optional[datetime] = None
    product_id: Optional[str] = None
    store: Optional[str] = None
    is_trialing: bool = False


def _parse_date(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return parse_datetime(str(value))


class ProviderClient:
    """Thin wrapper over ``GET /subscribers/{app_user_id}``."""

    def __init__(self, *, api_base: Optional[str] = None, secret_key: Optional[str] = None,
                 timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        self.api_base = (api_base or getattr(settings, "BILLING_PROVIDER_API_BASE", "")).rstrip("/")
        self.secret_key = secret_key if secret_key is not None else getattr(settings, "BILLING_PROVIDER_SECRET_KEY", "")
        self.timeout = timeout or getattr(settings, "BILLING_HTTP_TIMEOUT_SECONDS", 10)
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls) -> Optional["ProviderClient"]:
        """Return a configured client, or ``None`` when no secret key is set."""
        if not getattr(settings, "BILLING_PROVIDER_SECRET_KEY", ""):
            return None
        return cls()

    @property
    def is_configured(self) -> bool:
        return bool(self.api_base and self.secret_key)

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        if not self.is_configured:
            raise ProviderConfigurationError("BILLING_PROVIDER_SECRET_KEY is not configured.")

        url = f"{self.api_base}/{path.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }
        try:
            response = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            logger.warning("Billing provider request %s %s failed: %s", method, path, exc)
            raise ProviderServiceError(str(exc)) from exc

        if response.status_code >= 400:
            logger.warning(
                "Billing provider returned %s for %s %s: %s",
                response.status_code,
                method,
                path,
                response.text[:500],
            )
            raise ProviderServiceError(f"Billing provider error {response.status_code}")

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderServiceError("Failed to parse billing provider response.") from exc

    def get_subscriber(self, app_user_id: str) -> Dict[str, Any]:
        return self._request("GET", f"subscribers/{quote(str(app_user_id), safe='')}")

    def get_subscription_details(self, app_user_id: str, *, now: Optional[datetime] = None) -> SubscriptionDetails:
        now = now or timezone.now()
        data = self.get_subscriber(app_user_id)
        subscriptions = ((data.get("subscriber") or {}).get("subscriptions")) or {}

        best: Optional[Dict[str, Any]] = None
        best_product: Optional[str] = None
        best_expiry: Optional[datetime] = None
        for product_id, subscription in subscriptions.items():
            if not isinstance(subscription, dict) or subscription.get("refunded_at"):
                continue
            expires_at = _parse_date(subscription.get("expires_date"))
            if expires_at is None or expires_at <= now:
                continue
            if best_expiry is None or expires_at > best_expiry:
                best, best_product, best_expiry = subscription, product_id, expires_at

        if best is None:
            return SubscriptionDetails(state=SubscriptionState.NONE)

        grace_expires = _parse_date(best.get("grace_period_expires_date"))
        in_grace = bool(best.get("billing_issues_detected_at") and grace_expires and grace_expires > now)
        return SubscriptionDetails(
            state=SubscriptionState.GRACE_PERIOD if in_grace else SubscriptionState.ACTIVE,
            expires_at=best_expiry,
            product_id=best_product,
            store=best.get("store"),
            is_trialing=best.get("period_type") == "trial",
        )

    def get_subscription_state(self, app_user_id: str, *, now: Optional[datetime] = None) -> SubscriptionState:
        return self.get_subscription_details(app_user_id, now=now).state
