import itertools
import json
import re
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable
from uuid import UUID, uuid4

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from punchcard_api.app import create_app  # noqa: E402
from punchcard_api.api.v1.endpoints.loyalty import get_pos_client_factory  # noqa: E402
from punchcard_api.db.base import Base, import_models  # noqa: E402
from punchcard_api.db.session import get_session  # noqa: E402
from punchcard_api.models.loyalty import LoyaltyOffer, LoyaltyQualifyingVariation  # noqa: E402
from punchcard_api.observability.loyalty import get_loyalty_store  # noqa: E402
from punchcard_api.observability.scheduler import get_scheduler_store  # noqa: E402
from punchcard_api.services.loyalty.pos_client import PosAutomationClient  # noqa: E402


POS_BASE_URL = "https://pos.test/v2"


class FakePosBackend:
    """In-memory stand-in for the POS customer-group and catalog endpoints."""

    def __init__(self) -> None:
        self.groups: dict[str, str] = {}
        self.memberships: dict[str, set[str]] = {}
        self.catalog: dict[str, dict] = {}
        self.requests: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], int] = {}
        self._ids = itertools.count(1)

    def fail(self, method: str, pattern: str, status_code: int = 500) -> None:
        self.failures[(method, pattern)] = status_code

    def calls(self, method: str, pattern: str) -> int:
        return sum(1 for m, path in self.requests if m == method and re.search(pattern, path))

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path.removeprefix("/v2")
        self.requests.append((method, path))

        for (fail_method, pattern), status_code in self.failures.items():
            if fail_method == method and re.search(pattern, path):
                return httpx.Response(status_code, json={"errors": [{"code": "INTERNAL_SERVER_ERROR"}]})

        if method == "POST" and path == "/customers/groups":
            group_id = self._next_id("grp")
            self.groups[group_id] = json.loads(request.content)["group"]["name"]
            return httpx.Response(200, json={"group": {"id": group_id}})

        match = re.fullmatch(r"/customers/groups/([^/]+)", path)
        if match and method == "DELETE":
            if self.groups.pop(match.group(1), None) is None:
                return httpx.Response(404, json={"errors": [{"code": "NOT_FOUND"}]})
            return httpx.Response(200, json={})

        match = re.fullmatch(r"/customers/([^/]+)/groups/([^/]+)", path)
        if match:
            customer_id, group_id = match.groups()
            members = self.memberships.setdefault(customer_id, set())
            if method == "PUT":
                members.add(group_id)
                return httpx.Response(200, json={})
            if group_id not in members:
                return httpx.Response(404, json={"errors": [{"code": "NOT_FOUND"}]})
            members.discard(group_id)
            return httpx.Response(200, json={})

        match = re.fullmatch(r"/customers/([^/]+)", path)
        if match and method == "GET":
            customer_id = match.group(1)
            groups = sorted(self.memberships.get(customer_id, set()))
            return httpx.Response(200, json={"customer": {"id": customer_id, "group_ids": groups}})

        if method == "POST" and path == "/catalog/batch-upsert":
            payload = json.loads(request.content)
            mappings = []
            for batch in payload.get("batches", []):
                for obj in batch.get("objects", []):
                    object_id = self._next_id(obj["type"].lower())
                    self.catalog[object_id] = {**obj, "id": object_id}
                    mappings.append({"client_object_id": obj["id"], "object_id": object_id})
            return httpx.Response(200, json={"id_mappings": mappings})

        match = re.fullmatch(r"/catalog/object/([^/]+)", path)
        if match:
            object_id = match.group(1)
            if object_id not in self.catalog:
                return httpx.Response(404, json={"errors": [{"code": "NOT_FOUND"}]})
            if method == "DELETE":
                self.catalog.pop(object_id)
                return httpx.Response(200, json={"deleted_object_ids": [object_id]})
            return httpx.Response(200, json={"object": self.catalog[object_id]})

        return httpx.Response(404, json={"errors": [{"code": "NOT_FOUND"}]})

    def client_factory(self, tenant_id: UUID) -> PosAutomationClient:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return PosAutomationClient(
            access_token="test-token",
            base_url=POS_BASE_URL,
            http_client=http_client,
            tenant_id=tenant_id,
        )


@pytest.fixture(autouse=True)
def reset_observability_stores():
    get_loyalty_store().reset()
    get_scheduler_store().reset()
    yield


@pytest.fixture
def pos_backend() -> FakePosBackend:
    return FakePosBackend()


@pytest.fixture
def tenant_id() -> UUID:
    return uuid4()


@pytest_asyncio.fixture
async def session_factory():
    import_models()
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory, pos_backend):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_pos_client_factory] = lambda: pos_backend.client_factory

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def seed_offer(session_factory):
    """Create an active offer with qualifying variations and return its id."""

    async def _seed(
        tenant_id: UUID,
        *,
        required_quantity: int = 12,
        window_months: int = 12,
        variation_ids: Iterable[str] = ("var-bag-small",),
        brand_name: str = "Acme Kibble",
        size_group: str = "small",
    ) -> UUID:
        async with session_factory() as session:
            offer = LoyaltyOffer(
                tenant_id=tenant_id,
                name=f"{brand_name} {size_group}",
                brand_name=brand_name,
                size_group=size_group,
                required_quantity=required_quantity,
                window_months=window_months,
                is_active=True,
            )
            session.add(offer)
            await session.flush()
            for variation_id in variation_ids:
                session.add(
                    LoyaltyQualifyingVariation(
                        tenant_id=tenant_id,
                        offer_id=offer.id,
                        variation_id=variation_id,
                        item_name=brand_name,
                        variation_name=f"{size_group} bag",
                        is_active=True,
                    )
                )
            await session.commit()
            return offer.id

    return _seed


def days_ago(days: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=days)


def order_payload(
    order_id: str,
    *,
    customer_id: str | None = "cust-1",
    lines: Iterable[dict] = (),
    discounts: Iterable[dict] = (),
    created_at: datetime | None = None,
) -> dict:
    payload: dict = {
        "id": order_id,
        "location_id": "loc-1",
        "created_at": (created_at or days_ago(1)).isoformat(),
        "line_items": list(lines),
        "discounts": list(discounts),
        "tenders": [{"type": "CARD", "receipt_url": f"https://receipts.test/{order_id}"}],
    }
    if customer_id:
        payload["customer_id"] = customer_id
    return payload


def line_item(
    variation_id: str,
    quantity: int,
    *,
    unit_cents: int = 1000,
    discount_cents: int = 0,
    uid: str | None = None,
    applied_discount_uids: Iterable[str] = (),
) -> dict:
    gross = unit_cents * quantity
    return {
        "uid": uid or f"line-{variation_id}-{quantity}",
        "catalog_object_id": variation_id,
        "quantity": str(quantity),
        "base_price_money": {"amount": unit_cents, "currency": "USD"},
        "gross_sales_money": {"amount": gross, "currency": "USD"},
        "total_discount_money": {"amount": discount_cents, "currency": "USD"},
        "total_money": {"amount": gross - discount_cents, "currency": "USD"},
        "applied_discounts": [{"discount_uid": uid} for uid in applied_discount_uids],
    }


@pytest.fixture
def build_order():
    return order_payload


@pytest.fixture
def build_line():
    return line_item
