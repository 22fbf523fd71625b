"""Normalized order payloads.

POS orders arrive as loosely typed mappings in either snake_case or camelCase, with
money either as ``{"amount": 1399, "currency": "USD"}`` or a bare integer of cents.
They are normalized once here; everything downstream works on these dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Sequence

from .dates import as_utc


def _pick(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.title() for part in rest)


def _get(payload: Mapping[str, Any], key: str) -> Any:
    return _pick(payload, key, _camel(key))


def _money_cents(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, Mapping):
        value = value.get("amount")
        if value is None:
            return None
    try:
        return int(Decimal(str(value)))
    except (InvalidOperation, ValueError):
        return None


def _quantity(value: Any) -> int:
    if value is None:
        return 0
    try:
        return int(Decimal(str(value)))
    except (InvalidOperation, ValueError):
        return 0


def _timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str) and value:
        try:
            return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def _mappings(value: Any) -> list[Mapping[str, Any]]:
    if not isinstance(value, Sequence) or isinstance(value, (str, bytes)):
        return []
    return [item for item in value if isinstance(item, Mapping)]


@dataclass(slots=True)
class OrderDiscount:
    uid: str | None
    name: str | None
    discount_type: str | None
    catalog_object_id: str | None
    pricing_rule_id: str | None
    applied_cents: int
    scope: str | None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "OrderDiscount":
        return cls(
            uid=_get(payload, "uid"),
            name=_get(payload, "name"),
            discount_type=_get(payload, "type"),
            catalog_object_id=_get(payload, "catalog_object_id"),
            pricing_rule_id=_get(payload, "pricing_rule_id"),
            applied_cents=_money_cents(_get(payload, "applied_money")) or 0,
            scope=_get(payload, "scope"),
        )


@dataclass(slots=True)
class OrderLineItem:
    uid: str | None
    name: str | None
    variation_id: str | None
    quantity: int
    base_price_cents: int
    gross_sales_cents: int
    total_discount_cents: int
    total_cents: int
    applied_discount_uids: list[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "OrderLineItem":
        quantity = _quantity(_get(payload, "quantity"))
        base_price = _money_cents(_get(payload, "base_price_money")) or 0
        gross_sales = _money_cents(_get(payload, "gross_sales_money")) or base_price * max(quantity, 0)
        total_discount = _money_cents(_get(payload, "total_discount_money")) or 0
        total = _money_cents(_get(payload, "total_money"))
        if total is None:
            total = gross_sales - total_discount
        applied = [
            str(uid)
            for uid in (_get(entry, "discount_uid") for entry in _mappings(_get(payload, "applied_discounts")))
            if uid
        ]
        return cls(
            uid=_get(payload, "uid"),
            name=_get(payload, "name"),
            variation_id=_get(payload, "catalog_object_id"),
            quantity=quantity,
            base_price_cents=base_price,
            gross_sales_cents=gross_sales,
            total_discount_cents=total_discount,
            total_cents=total,
            applied_discount_uids=applied,
        )

    @property
    def is_free(self) -> bool:
        """Item carried a price but the customer paid nothing for it."""

        return self.base_price_cents > 0 and self.total_cents == 0


@dataclass(slots=True)
class OrderTender:
    tender_type: str | None
    customer_id: str | None
    receipt_url: str | None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "OrderTender":
        return cls(
            tender_type=_get(payload, "type"),
            customer_id=_get(payload, "customer_id"),
            receipt_url=_get(payload, "receipt_url"),
        )


@dataclass(slots=True)
class NormalizedOrder:
    order_id: str | None
    customer_id: str | None
    location_id: str | None
    created_at: datetime | None
    line_items: list[OrderLineItem] = field(default_factory=list)
    discounts: list[OrderDiscount] = field(default_factory=list)
    tenders: list[OrderTender] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "NormalizedOrder":
        return cls(
            order_id=_pick(payload, "id", "order_id", "orderId"),
            customer_id=_get(payload, "customer_id"),
            location_id=_get(payload, "location_id"),
            created_at=_timestamp(_get(payload, "created_at")),
            line_items=[OrderLineItem.from_payload(item) for item in _mappings(_get(payload, "line_items"))],
            discounts=[OrderDiscount.from_payload(item) for item in _mappings(_get(payload, "discounts"))],
            tenders=[OrderTender.from_payload(item) for item in _mappings(_get(payload, "tenders"))],
        )

    def resolve_customer_id(self, override: str | None = None) -> str | None:
        """Override first, then the order, then the first tender carrying a customer."""

        if override:
            return override
        if self.customer_id:
            return self.customer_id
        for tender in self.tenders:
            if tender.customer_id:
                return tender.customer_id
        return None

    @property
    def receipt_url(self) -> str | None:
        return next((tender.receipt_url for tender in self.tenders if tender.receipt_url), None)

    @property
    def payment_type(self) -> str | None:
        return self.tenders[0].tender_type if self.tenders else None


def normalize_order(order: NormalizedOrder | Mapping[str, Any]) -> NormalizedOrder:
    if isinstance(order, NormalizedOrder):
        return order
    return NormalizedOrder.from_payload(order)


__all__ = [
    "NormalizedOrder",
    "OrderDiscount",
    "OrderLineItem",
    "OrderTender",
    "normalize_order",
]
