"""
Catalog/inventory and customer directory collaborators.

The order engine only needs a narrow slice of these services: a snapshot of
price, tax and stock for the requested items, reserve/release of stock, and
an existence check for customers. Production talks to them over HTTP with
httpx; tests and single-process runs use the in-memory versions.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import httpx
import structlog

from order_engine.domain.exceptions import RetryableError, ValidationError

logger = structlog.get_logger(__name__)

ItemKey = Tuple[str, Optional[str]]


@dataclass(frozen=True)
class StoreInfo:
    id: str
    currency: str = "usd"
    active: bool = True


@dataclass(frozen=True)
class CatalogItem:
    """Price and stock snapshot for one product (or product variant)."""

    product_id: str
    unit_price_cents: int
    name: str = ""
    variant_id: Optional[str] = None
    sku: Optional[str] = None
    tax_rate_bps: int = 0
    active: bool = True
    published: bool = True
    track_inventory: bool = True
    available_quantity: int = 0

    @property
    def key(self) -> ItemKey:
        return (self.product_id, self.variant_id)

    @property
    def purchasable(self) -> bool:
        return self.active and self.published


@dataclass(frozen=True)
class StockLine:
    product_id: str
    variant_id: Optional[str]
    quantity: int


class CatalogService(ABC):
    @abstractmethod
    async def get_store(self, store_id: str) -> Optional[StoreInfo]:
        """Return the store, or None if it does not exist."""

    @abstractmethod
    async def lookup_items(
        self, store_id: str, keys: Sequence[ItemKey]
    ) -> Dict[ItemKey, CatalogItem]:
        """Snapshot of the requested items. Unknown items are absent from the result."""

    @abstractmethod
    async def reserve(self, store_id: str, order_id: str, lines: Sequence[StockLine]) -> None:
        """
        Reserve stock for an order, all lines or none.

        Raises:
            ValidationError: If any line is no longer available
        """

    @abstractmethod
    async def release(self, store_id: str, order_id: str) -> None:
        """Release whatever ``order_id`` holds. Releasing twice is a no-op."""


class CustomerDirectory(ABC):
    @abstractmethod
    async def customer_exists(self, store_id: str, customer_id: str) -> bool:
        pass


class InMemoryCatalog(CatalogService):
    """Catalog held in memory with real stock accounting."""

    def __init__(self) -> None:
        self._stores: Dict[str, StoreInfo] = {}
        self._items: Dict[Tuple[str, str, Optional[str]], CatalogItem] = {}
        self._reservations: Dict[Tuple[str, str], List[StockLine]] = {}

    def add_store(self, store: StoreInfo) -> None:
        self._stores[store.id] = store

    def add_item(self, store_id: str, item: CatalogItem) -> None:
        self._items[(store_id, item.product_id, item.variant_id)] = item

    def available(self, store_id: str, product_id: str, variant_id: Optional[str] = None) -> int:
        return self._items[(store_id, product_id, variant_id)].available_quantity

    async def get_store(self, store_id: str) -> Optional[StoreInfo]:
        return self._stores.get(store_id)

    async def lookup_items(
        self, store_id: str, keys: Sequence[ItemKey]
    ) -> Dict[ItemKey, CatalogItem]:
        found = {}
        for product_id, variant_id in keys:
            item = self._items.get((store_id, product_id, variant_id))
            if item is not None:
                found[(product_id, variant_id)] = item
        return found

    async def reserve(self, store_id: str, order_id: str, lines: Sequence[StockLine]) -> None:
        tracked = []
        for line in lines:
            item = self._items.get((store_id, line.product_id, line.variant_id))
            if item is None:
                raise ValidationError(f"Unknown product {line.product_id}", product_id=line.product_id)
            if not item.track_inventory:
                continue
            if item.available_quantity < line.quantity:
                raise ValidationError(
                    f"Insufficient stock for {item.name or item.product_id}",
                    product_id=line.product_id,
                    available=item.available_quantity,
                    requested=line.quantity,
                )
            tracked.append((item, line))
        for item, line in tracked:
            self.add_item(store_id, replace(item, available_quantity=item.available_quantity - line.quantity))
        self._reservations[(store_id, order_id)] = [line for _, line in tracked]

    async def release(self, store_id: str, order_id: str) -> None:
        lines = self._reservations.pop((store_id, order_id), [])
        for line in lines:
            item = self._items[(store_id, line.product_id, line.variant_id)]
            self.add_item(store_id, replace(item, available_quantity=item.available_quantity + line.quantity))


class InMemoryCustomerDirectory(CustomerDirectory):
    def __init__(self, customers: Iterable[Tuple[str, str]] = ()) -> None:
        self._customers = set(customers)

    def add(self, store_id: str, customer_id: str) -> None:
        self._customers.add((store_id, customer_id))

    async def customer_exists(self, store_id: str, customer_id: str) -> bool:
        return (store_id, customer_id) in self._customers


class _HttpCollaborator:
    """Shared httpx plumbing: one pooled client, errors mapped to engine errors."""

    service_name = "collaborator"

    def __init__(self, base_url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.error("collaborator_timeout", service=self.service_name, url=url)
            raise RetryableError(f"{self.service_name} timed out") from e
        except httpx.HTTPError as e:
            logger.error("collaborator_unreachable", service=self.service_name, url=url, error=str(e))
            raise RetryableError(f"{self.service_name} unavailable") from e

    def _raise_for_status(self, response: httpx.Response) -> None:
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "collaborator_error_response",
                service=self.service_name,
                status_code=e.response.status_code,
            )
            raise RetryableError(
                f"{self.service_name} returned {e.response.status_code}"
            ) from e

    async def aclose(self) -> None:
        await self._client.aclose()


class HttpCatalogClient(_HttpCollaborator, CatalogService):
    service_name = "catalog"

    async def get_store(self, store_id: str) -> Optional[StoreInfo]:
        response = await self._request("GET", f"/stores/{store_id}")
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        body = response.json()
        return StoreInfo(
            id=body["id"],
            currency=str(body.get("currency", "usd")).lower(),
            active=bool(body.get("active", True)),
        )

    async def lookup_items(
        self, store_id: str, keys: Sequence[ItemKey]
    ) -> Dict[ItemKey, CatalogItem]:
        response = await self._request(
            "POST",
            f"/stores/{store_id}/items/lookup",
            json={"items": [{"product_id": p, "variant_id": v} for p, v in keys]},
        )
        self._raise_for_status(response)
        found = {}
        for raw in response.json().get("items", []):
            item = CatalogItem(
                product_id=raw["product_id"],
                variant_id=raw.get("variant_id"),
                name=raw.get("name", ""),
                sku=raw.get("sku"),
                unit_price_cents=int(raw["unit_price_cents"]),
                tax_rate_bps=int(raw.get("tax_rate_bps", 0)),
                active=bool(raw.get("active", True)),
                published=bool(raw.get("published", True)),
                track_inventory=bool(raw.get("track_inventory", True)),
                available_quantity=int(raw.get("available_quantity", 0)),
            )
            found[item.key] = item
        return found

    async def reserve(self, store_id: str, order_id: str, lines: Sequence[StockLine]) -> None:
        response = await self._request(
            "POST",
            f"/stores/{store_id}/reservations",
            json={
                "order_id": order_id,
                "lines": [
                    {"product_id": l.product_id, "variant_id": l.variant_id, "quantity": l.quantity}
                    for l in lines
                ],
            },
        )
        if response.status_code == 409:
            raise ValidationError("Insufficient stock", **response.json())
        self._raise_for_status(response)

    async def release(self, store_id: str, order_id: str) -> None:
        response = await self._request("DELETE", f"/stores/{store_id}/reservations/{order_id}")
        if response.status_code == 404:
            return
        self._raise_for_status(response)


class HttpCustomerDirectory(_HttpCollaborator, CustomerDirectory):
    service_name = "customers"

    async def customer_exists(self, store_id: str, customer_id: str) -> bool:
        response = await self._request("GET", f"/stores/{store_id}/customers/{customer_id}")
        if response.status_code == 404:
            return False
        self._raise_for_status(response)
        return True
