"""HTTP client for the POS customer-group and catalog automation API."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence
from uuid import UUID

import httpx

from punchcard_api.core.logging import log_pos_api_call
from punchcard_api.core.settings import settings


class PosApiError(RuntimeError):
    """Raised when the POS API rejects a request, times out, or is unreachable."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        url: str | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.url = url
        self.payload = payload or {}


@dataclass(slots=True)
class CatalogUpsertResult:
    discount_id: str
    product_set_id: str
    pricing_rule_id: str


def _parse_body(response: httpx.Response) -> Mapping[str, Any]:
    if not response.content:
        return {}
    try:
        parsed = response.json()
    except ValueError:
        return {"text": response.text}
    return parsed if isinstance(parsed, Mapping) else {"data": parsed}


class PosAutomationClient:
    """Thin async wrapper over the POS automation endpoints used by reward sync."""

    def __init__(
        self,
        *,
        access_token: str,
        base_url: str | None = None,
        api_version: str | None = None,
        timeout_seconds: float | None = None,
        http_client: httpx.AsyncClient | None = None,
        tenant_id: UUID | None = None,
    ) -> None:
        self._base_url = (base_url or settings.pos_api_base_url).rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Square-Version": api_version or settings.pos_api_version,
        }
        self._timeout = timeout_seconds or settings.pos_api_timeout_seconds
        self._client = http_client
        self._owns_client = http_client is None
        self._tenant_id = tenant_id

    async def __aenter__(self) -> "PosAutomationClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Mapping[str, Any] | None = None,
        context: str,
        allow_not_found: bool = False,
    ) -> Mapping[str, Any] | None:
        url = f"{self._base_url}{path}"
        started = time.perf_counter()
        try:
            response = await self._http().request(method, url, headers=self._headers, json=json, timeout=self._timeout)
        except httpx.HTTPError as exc:
            log_pos_api_call(
                endpoint=path,
                method=method,
                status=None,
                duration_ms=(time.perf_counter() - started) * 1000,
                tenant_id=self._tenant_id,
                context=context,
            )
            raise PosApiError(f"{method} {path} failed: {exc}", url=url) from exc

        log_pos_api_call(
            endpoint=path,
            method=method,
            status=response.status_code,
            duration_ms=(time.perf_counter() - started) * 1000,
            tenant_id=self._tenant_id,
            context=context,
        )

        if response.status_code == 404 and allow_not_found:
            return None
        body = _parse_body(response)
        if response.is_error:
            raise PosApiError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
                url=url,
                payload=body,
            )
        return body

    # Customer groups ---------------------------------------------------
    async def create_customer_group(self, *, reward_id: UUID, name: str) -> str:
        body = await self._request(
            "POST",
            "/customers/groups",
            json={"idempotency_key": f"loyalty-reward-group-{reward_id}", "group": {"name": name[:255]}},
            context="create_customer_group",
        )
        group_id = ((body or {}).get("group") or {}).get("id")
        if not group_id:
            raise PosApiError("Customer group response missing id", payload=body)
        return str(group_id)

    async def delete_customer_group(self, group_id: str) -> bool:
        """Returns ``False`` when the group was already gone."""

        body = await self._request(
            "DELETE", f"/customers/groups/{group_id}", context="delete_customer_group", allow_not_found=True
        )
        return body is not None

    async def add_customer_to_group(self, *, customer_id: str, group_id: str) -> None:
        await self._request(
            "PUT", f"/customers/{customer_id}/groups/{group_id}", context="add_customer_to_group"
        )

    async def remove_customer_from_group(self, *, customer_id: str, group_id: str) -> bool:
        body = await self._request(
            "DELETE",
            f"/customers/{customer_id}/groups/{group_id}",
            context="remove_customer_from_group",
            allow_not_found=True,
        )
        return body is not None

    async def retrieve_customer(self, customer_id: str) -> Mapping[str, Any] | None:
        body = await self._request(
            "GET", f"/customers/{customer_id}", context="retrieve_customer", allow_not_found=True
        )
        if body is None:
            return None
        return body.get("customer") or {}

    # Catalog -----------------------------------------------------------
    async def upsert_reward_catalog(
        self,
        *,
        reward_id: UUID,
        group_id: str,
        offer_name: str,
        variation_ids: Sequence[str],
    ) -> CatalogUpsertResult:
        """Create the discount, eligible-item set and pricing rule in one idempotent batch."""

        discount_ref = f"#loyalty-discount-{reward_id}"
        product_set_ref = f"#loyalty-productset-{reward_id}"
        pricing_rule_ref = f"#loyalty-pricingrule-{reward_id}"
        objects = [
            {
                "type": "DISCOUNT",
                "id": discount_ref,
                "discount_data": {
                    "name": f"Loyalty: {offer_name} (Reward {reward_id})",
                    "discount_type": "FIXED_PERCENTAGE",
                    "percentage": "100",
                    "application_method": "AUTOMATICALLY_APPLIED",
                    "modify_tax_basis": "MODIFY_TAX_BASIS",
                },
            },
            {
                "type": "PRODUCT_SET",
                "id": product_set_ref,
                "product_set_data": {
                    "name": f"Loyalty Products: {offer_name}",
                    "product_ids_any": list(variation_ids),
                    "quantity_exact": 1,
                },
            },
            {
                "type": "PRICING_RULE",
                "id": pricing_rule_ref,
                "pricing_rule_data": {
                    "name": f"Loyalty Rule: {offer_name}",
                    "discount_id": discount_ref,
                    "match_products_id": product_set_ref,
                    "customer_group_ids_any": [group_id],
                    "exclude_strategy": "LEAST_EXPENSIVE",
                },
            },
        ]
        body = await self._request(
            "POST",
            "/catalog/batch-upsert",
            json={"idempotency_key": f"loyalty-discount-batch-{reward_id}", "batches": [{"objects": objects}]},
            context="upsert_reward_catalog",
        )
        mappings = {
            entry.get("client_object_id"): entry.get("object_id")
            for entry in (body or {}).get("id_mappings") or []
            if isinstance(entry, Mapping)
        }
        discount_id = mappings.get(discount_ref)
        product_set_id = mappings.get(product_set_ref)
        pricing_rule_id = mappings.get(pricing_rule_ref)
        if not (discount_id and product_set_id and pricing_rule_id):
            raise PosApiError("Catalog upsert response missing id mappings", payload=body)
        return CatalogUpsertResult(
            discount_id=str(discount_id),
            product_set_id=str(product_set_id),
            pricing_rule_id=str(pricing_rule_id),
        )

    async def delete_catalog_object(self, object_id: str) -> bool:
        body = await self._request(
            "DELETE", f"/catalog/object/{object_id}", context="delete_catalog_object", allow_not_found=True
        )
        return body is not None

    async def retrieve_catalog_object(self, object_id: str) -> Mapping[str, Any] | None:
        body = await self._request(
            "GET", f"/catalog/object/{object_id}", context="retrieve_catalog_object", allow_not_found=True
        )
        if body is None:
            return None
        return body.get("object") or {}


PosClientFactory = Callable[[UUID], PosAutomationClient]


def default_pos_client_factory(tenant_id: UUID) -> PosAutomationClient:
    """Build a client from process settings; multi-token deployments inject their own factory."""

    return PosAutomationClient(access_token=settings.pos_api_access_token, tenant_id=tenant_id)


__all__ = [
    "CatalogUpsertResult",
    "PosApiError",
    "PosAutomationClient",
    "PosClientFactory",
    "default_pos_client_factory",
]
