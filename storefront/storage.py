"""
Storage abstraction.

Each entity type gets a repository with the same CRUD contract:
``get``/``update`` answer ``None`` and ``delete`` answers ``False`` for an
unknown id instead of raising, ``create`` assigns the next integer id for the
entity type. Ids are never reused, even after a delete.

`MemoryStorage` is the in-process implementation; `MongoStorage` (see
``storefront.mongo_storage``) satisfies the same contract on MongoDB.
"""
import asyncio
import weakref
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager, AsyncExitStack
from datetime import datetime
from typing import Any, Dict, Generic, Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel

from shared.utils import ConflictException
from storefront.models import CategoryDB, OrderDB, ProductDB, UserDB

logger = logging.getLogger("storefront.storage")

M = TypeVar("M", bound=BaseModel)

# The only order fields that may change after creation
MUTABLE_ORDER_FIELDS = {"status", "updated_at"}


def check_order_update(data: Dict[str, Any]) -> None:
    frozen = set(data) - MUTABLE_ORDER_FIELDS
    if frozen:
        raise ConflictException(
            "Orders are immutable except for their status",
            details={"fields": sorted(frozen)},
        )


class Repository(ABC, Generic[M]):
    model: Type[M]

    @abstractmethod
    async def get(self, id: int) -> Optional[M]:
        ...

    @abstractmethod
    async def list(self, **filters: Any) -> List[M]:
        """All entities ordered by id, optionally filtered by field equality."""

    @abstractmethod
    async def create(self, data: Dict[str, Any]) -> M:
        ...

    @abstractmethod
    async def update(self, id: int, data: Dict[str, Any]) -> Optional[M]:
        ...

    @abstractmethod
    async def delete(self, id: int) -> bool:
        ...


class ProductRepository(Repository[ProductDB]):
    model = ProductDB

    @abstractmethod
    async def get_by_slug(self, slug: str) -> Optional[ProductDB]:
        ...

    @abstractmethod
    async def decrement_stock(self, id: int, quantity: int) -> bool:
        """Atomically take ``quantity`` units if at least that many are in stock."""

    @abstractmethod
    async def increment_stock(self, id: int, quantity: int) -> bool:
        ...


class CategoryRepository(Repository[CategoryDB]):
    model = CategoryDB

    @abstractmethod
    async def get_by_slug(self, slug: str) -> Optional[CategoryDB]:
        ...


class UserRepository(Repository[UserDB]):
    model = UserDB

    @abstractmethod
    async def get_by_username(self, username: str) -> Optional[UserDB]:
        ...


class OrderRepository(Repository[OrderDB]):
    model = OrderDB

    @abstractmethod
    async def update_status(self, id: int, expected: str, new: str) -> Optional[OrderDB]:
        """Set ``new`` only if the stored status is still ``expected``; ``None`` otherwise."""


class Storage(ABC):
    """Bundle of repositories plus the per-product locks used at checkout."""

    products: ProductRepository
    categories: CategoryRepository
    orders: OrderRepository
    users: UserRepository

    def __init__(self):
        # Entries vanish once no checkout holds or waits on the lock
        self._product_locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def ping(self) -> bool:
        return True

    @asynccontextmanager
    async def lock_products(self, product_ids: Iterable[int]):
        # Sorted acquisition keeps two checkouts over the same products from deadlocking
        ids = sorted(set(product_ids))
        async with AsyncExitStack() as stack:
            for product_id in ids:
                lock = self._product_locks.setdefault(product_id, asyncio.Lock())
                await stack.enter_async_context(lock)
            yield


# --- In-memory implementation ---

class MemoryRepository(Repository[M]):
    def __init__(self):
        self._items: Dict[int, M] = {}
        self._next_id = 1

    def _matches(self, item: M, filters: Dict[str, Any]) -> bool:
        return all(getattr(item, key) == value for key, value in filters.items())

    async def get(self, id: int) -> Optional[M]:
        item = self._items.get(id)
        return item.model_copy(deep=True) if item else None

    async def list(self, **filters: Any) -> List[M]:
        return [
            item.model_copy(deep=True)
            for _, item in sorted(self._items.items())
            if self._matches(item, filters)
        ]

    async def create(self, data: Dict[str, Any]) -> M:
        payload = {k: v for k, v in data.items() if k not in ("id", "_id")}
        item = self.model(**payload, id=self._next_id)
        self._items[item.id] = item
        self._next_id += 1
        return item.model_copy(deep=True)

    async def update(self, id: int, data: Dict[str, Any]) -> Optional[M]:
        current = self._items.get(id)
        if current is None:
            return None
        changes = {k: v for k, v in data.items() if k not in ("id", "_id")}
        item = self.model.model_validate({**current.model_dump(), **changes})
        self._items[id] = item
        return item.model_copy(deep=True)

    async def delete(self, id: int) -> bool:
        return self._items.pop(id, None) is not None


class MemoryProductRepository(MemoryRepository[ProductDB], ProductRepository):
    async def get_by_slug(self, slug: str) -> Optional[ProductDB]:
        found = await self.list(slug=slug)
        return found[0] if found else None

    async def decrement_stock(self, id: int, quantity: int) -> bool:
        # No await between the check and the write, so this is atomic on the loop
        product = self._items.get(id)
        if product is None or product.stock < quantity:
            return False
        self._items[id] = product.model_copy(
            update={"stock": product.stock - quantity, "updated_at": datetime.utcnow()}
        )
        return True

    async def increment_stock(self, id: int, quantity: int) -> bool:
        product = self._items.get(id)
        if product is None:
            return False
        self._items[id] = product.model_copy(
            update={"stock": product.stock + quantity, "updated_at": datetime.utcnow()}
        )
        return True


class MemoryCategoryRepository(MemoryRepository[CategoryDB], CategoryRepository):
    async def get_by_slug(self, slug: str) -> Optional[CategoryDB]:
        found = await self.list(slug=slug)
        return found[0] if found else None


class MemoryUserRepository(MemoryRepository[UserDB], UserRepository):
    async def get_by_username(self, username: str) -> Optional[UserDB]:
        found = await self.list(username=username)
        return found[0] if found else None


class MemoryOrderRepository(MemoryRepository[OrderDB], OrderRepository):
    async def update(self, id: int, data: Dict[str, Any]) -> Optional[OrderDB]:
        check_order_update(data)
        return await super().update(id, data)

    async def update_status(self, id: int, expected: str, new: str) -> Optional[OrderDB]:
        # No await between the check and the write, so this is atomic on the loop
        order = self._items.get(id)
        if order is None or order.status != expected:
            return None
        self._items[id] = order.model_copy(update={"status": new, "updated_at": datetime.utcnow()})
        return self._items[id].model_copy(deep=True)

    async def delete(self, id: int) -> bool:
        raise ConflictException("Orders cannot be deleted")


class MemoryStorage(Storage):
    def __init__(self):
        super().__init__()
        self.products = MemoryProductRepository()
        self.categories = MemoryCategoryRepository()
        self.orders = MemoryOrderRepository()
        self.users = MemoryUserRepository()


def build_storage(backend: str) -> Storage:
    if backend == "memory":
        return MemoryStorage()
    if backend == "mongo":
        from storefront.mongo_storage import MongoStorage
        return MongoStorage()
    raise ValueError(f"Unknown storage backend: {backend!r}")
