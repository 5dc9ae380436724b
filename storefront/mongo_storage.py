from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

from shared.utils import ConflictException, get_db_client, settings
from storefront.models import CategoryDB, OrderDB, ProductDB, UserDB
from storefront.storage import (
    CategoryRepository, OrderRepository, ProductRepository, Storage,
    UserRepository, check_order_update,
)


def _to_query(filters: Dict[str, Any]) -> Dict[str, Any]:
    return {("_id" if key == "id" else key): value for key, value in filters.items()}


class MongoRepository:
    """CRUD over one collection; ids come from the shared ``counters`` collection."""

    model: Any

    def __init__(self, db, collection_name: str):
        self.db = db
        self.collection_name = collection_name
        self.collection = db[collection_name]

    async def _next_id(self) -> int:
        counter = await self.db.counters.find_one_and_update(
            {"_id": self.collection_name},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return counter["seq"]

    async def get(self, id: int):
        doc = await self.collection.find_one({"_id": id})
        return self.model.model_validate(doc) if doc else None

    async def list(self, **filters: Any) -> List[Any]:
        cursor = self.collection.find(_to_query(filters)).sort("_id", 1)
        return [self.model.model_validate(doc) async for doc in cursor]

    async def create(self, data: Dict[str, Any]):
        payload = {k: v for k, v in data.items() if k not in ("id", "_id")}
        item = self.model(**payload, id=await self._next_id())
        await self.collection.insert_one(item.model_dump(by_alias=True))
        return item

    async def update(self, id: int, data: Dict[str, Any]):
        current = await self.get(id)
        if current is None:
            return None
        changes = {k: v for k, v in data.items() if k not in ("id", "_id")}
        item = self.model.model_validate({**current.model_dump(), **changes})
        if changes:
            stored = item.model_dump(by_alias=True)
            doc = await self.collection.find_one_and_update(
                {"_id": id},
                {"$set": {k: stored[k] for k in changes}},
                return_document=ReturnDocument.AFTER,
            )
            if doc is None:
                return None
            item = self.model.model_validate(doc)
        return item

    async def delete(self, id: int) -> bool:
        result = await self.collection.delete_one({"_id": id})
        return result.deleted_count == 1


class MongoProductRepository(MongoRepository, ProductRepository):
    model = ProductDB

    async def get_by_slug(self, slug: str) -> Optional[ProductDB]:
        doc = await self.collection.find_one({"slug": slug})
        return ProductDB.model_validate(doc) if doc else None

    async def decrement_stock(self, id: int, quantity: int) -> bool:
        # Compare-and-decrement in one statement; safe across server processes
        result = await self.collection.update_one(
            {"_id": id, "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}, "$set": {"updated_at": datetime.utcnow()}},
        )
        return result.modified_count == 1

    async def increment_stock(self, id: int, quantity: int) -> bool:
        result = await self.collection.update_one(
            {"_id": id},
            {"$inc": {"stock": quantity}, "$set": {"updated_at": datetime.utcnow()}},
        )
        return result.modified_count == 1


class MongoCategoryRepository(MongoRepository, CategoryRepository):
    model = CategoryDB

    async def get_by_slug(self, slug: str) -> Optional[CategoryDB]:
        doc = await self.collection.find_one({"slug": slug})
        return CategoryDB.model_validate(doc) if doc else None


class MongoUserRepository(MongoRepository, UserRepository):
    model = UserDB

    async def get_by_username(self, username: str) -> Optional[UserDB]:
        doc = await self.collection.find_one({"username": username})
        return UserDB.model_validate(doc) if doc else None


class MongoOrderRepository(MongoRepository, OrderRepository):
    model = OrderDB

    async def update(self, id: int, data: Dict[str, Any]) -> Optional[OrderDB]:
        check_order_update(data)
        return await super().update(id, data)

    async def update_status(self, id: int, expected: str, new: str) -> Optional[OrderDB]:
        doc = await self.collection.find_one_and_update(
            {"_id": id, "status": expected},
            {"$set": {"status": new, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return OrderDB.model_validate(doc) if doc else None

    async def delete(self, id: int) -> bool:
        raise ConflictException("Orders cannot be deleted")


class MongoStorage(Storage):
    def __init__(self, url: str = settings.MONGO_URL, db_name: str = settings.MONGO_DB, client=None):
        super().__init__()
        self.client = client or get_db_client(url)
        self.db = self.client[db_name]
        self.products = MongoProductRepository(self.db, "products")
        self.categories = MongoCategoryRepository(self.db, "categories")
        self.orders = MongoOrderRepository(self.db, "orders")
        self.users = MongoUserRepository(self.db, "users")

    async def connect(self) -> None:
        # Indexes
        await self.db.products.create_index("slug", unique=True)
        await self.db.products.create_index("category_id")
        await self.db.categories.create_index("slug", unique=True)
        await self.db.users.create_index("username", unique=True)
        await self.db.orders.create_index("status")

    async def close(self) -> None:
        self.client.close()

    async def ping(self) -> bool:
        try:
            await self.client.admin.command("ping")
            return True
        except Exception:
            return False
