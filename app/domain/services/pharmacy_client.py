"""
Pharmacy API client - the contract for calling the upstream pharmacy system.

Only the calls this service makes are modelled: posting an order note
(used by the webhook dispatcher), creating and looking up customers
(member link) and creating an order (order-create route). Pharmacy
business semantics stay on their side.
"""
from __future__ import annotations

import json
from typing import Any
from urllib.parse import quote

from app.core.exceptions import CustomerNotFoundError, UpstreamFailureError
from app.core.logging import get_logger
from app.domain.services.http_client import HttpClient, HttpResponse, HttpxClient

logger = get_logger(__name__)

SERVICE_NAME = "pharmacy"

# note_type של Perch → type של בית המרקחת
PHARMACY_NOTE_TYPE_MAP = {
    "admin_note": "ADMIN",
    "clinical_note": "CLINICAL",
}


def pharmacy_note_type(note_type: str | None) -> str:
    return PHARMACY_NOTE_TYPE_MAP.get(note_type or "", "ADMIN")


class PharmacyClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        http_client: HttpClient | None = None,
        timeout_seconds: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.http_client = http_client or HttpxClient(timeout_seconds, service_name=SERVICE_NAME)

    def headers(self) -> dict[str, str]:
        return {"x-api-key": self.api_key, "Content-Type": "application/json"}

    def order_notes_url(self, order_number: str) -> str:
        return f"{self.base_url}/api/orders/{quote(order_number, safe='')}/notes"

    @staticmethod
    def order_note_body(body: str, note_type: str, author: str | None) -> str:
        payload: dict[str, Any] = {"body": body, "type": note_type}
        if author:
            payload["author"] = author
        return json.dumps(payload, ensure_ascii=False)

    async def _post_json(self, url: str, body: str, operation: str) -> dict[str, Any]:
        response = await self.http_client.post(url, self.headers(), body)
        return self._json_or_raise(response, operation)

    def _json_or_raise(self, response: HttpResponse, operation: str) -> dict[str, Any]:
        if not response.ok:
            logger.warning(
                "Pharmacy API returned error status",
                extra_data={"operation": operation, "status_code": response.status},
            )
            raise UpstreamFailureError.from_response(SERVICE_NAME, response.status, response.body)
        try:
            return json.loads(response.body) if response.body else {}
        except ValueError as e:
            raise UpstreamFailureError(
                SERVICE_NAME, f"{operation}: invalid JSON response"
            ) from e

    async def create_customer(self, customer: dict[str, Any]) -> str:
        """Create the pharmacy customer and return its customerId"""
        data = await self._post_json(
            f"{self.base_url}/api/customers",
            json.dumps(customer, ensure_ascii=False),
            "create_customer",
        )
        customer_id = (data.get("data") or {}).get("customerId")
        if not customer_id:
            raise UpstreamFailureError(SERVICE_NAME, "Pharmacy API missing customerId")
        return str(customer_id)

    async def get_customer_by_email(self, email: str) -> dict[str, Any]:
        """The pharmacy's lookup response as-is; 404 upstream becomes CustomerNotFoundError"""
        response = await self.http_client.get(
            f"{self.base_url}/api/customers/{quote(email, safe='')}",
            {"x-api-key": self.api_key},
        )
        if response.status == 404:
            raise CustomerNotFoundError(email)
        return self._json_or_raise(response, "get_customer_by_email")

    async def create_order(self, order: dict[str, Any]) -> str:
        """Create the order upstream and return the pharmacy order number"""
        data = await self._post_json(
            f"{self.base_url}/api/orders/create",
            json.dumps(order, ensure_ascii=False),
            "create_order",
        )
        order_number = data.get("orderNumber")
        if not order_number:
            raise UpstreamFailureError(SERVICE_NAME, "Pharmacy API missing orderNumber")
        return str(order_number)
