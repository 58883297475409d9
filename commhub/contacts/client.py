"""HTTP client for the external customer-record system."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urljoin

import requests

from .models import VIP_CUSTOMER_TYPES, Contact, PriorityTier


class CustomerRecordError(RuntimeError):
    """Raised when the customer-record system cannot be reached or answers badly."""


class CustomerRecordClient:
    """Look up customers by phone and log communications against them.

    Every request carries the configured timeout; transport failures and
    non-2xx answers surface as :class:`CustomerRecordError`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_token: str | None = None,
        timeout: float = 5.0,
        session: requests.Session | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/") + "/"
        self._timeout = timeout
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger(__name__)
        self._headers = {"Accept": "application/json"}
        if api_token:
            self._headers["Authorization"] = f"Bearer {api_token}"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        return urljoin(self._base_url, path.lstrip("/"))

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        try:
            response = self.session.request(
                method,
                self._url(path),
                headers=self._headers,
                timeout=self._timeout,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise CustomerRecordError(f"{method} {path} failed: {exc}") from exc
        return response

    @staticmethod
    def _to_contact(record: dict[str, Any]) -> Contact:
        phones = record.get("phones") or []
        if record.get("phone") and record["phone"] not in phones:
            phones = [record["phone"], *phones]
        customer_type = str(record.get("customerType") or "").lower()
        tier = PriorityTier.VIP if customer_type in VIP_CUSTOMER_TYPES else PriorityTier.STANDARD
        return Contact(
            external_id=str(record["id"]),
            display_name=record.get("name"),
            addresses=[str(phone) for phone in phones],
            assigned_coordinator_id=(
                str(record["coordinatorId"]) if record.get("coordinatorId") else None
            ),
            priority_tier=tier,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def find_by_phone(self, phone: str) -> Contact | None:
        """Return the customer owning ``phone`` or ``None`` when there is none."""

        response = self._request("GET", "customers", params={"phone": phone})
        if response.status_code == 404:
            return None
        try:
            response.raise_for_status()
            payload = response.json()
        except (requests.HTTPError, ValueError) as exc:
            raise CustomerRecordError(f"Customer lookup failed: {exc}") from exc
        records = payload.get("customers") if isinstance(payload, dict) else payload
        if not records:
            return None
        return self._to_contact(records[0])

    def log_communication(self, communication: dict[str, Any]) -> None:
        response = self._request("POST", "communications", json=communication)
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise CustomerRecordError(f"Communication log rejected: {exc}") from exc
        self.logger.debug("Logged %s %s", communication.get("type"), communication.get("id"))
