"""
Client-side cart.

The cart is an explicit object handed to whatever needs it. Every mutation
is written straight through to a `LocalStorage` under ``CART_STORAGE_KEY``;
on construction the stored lines are validated one by one and anything that
no longer matches `CartItem` is dropped. Prices kept here are display
echoes; the server recomputes every amount at checkout.
"""
import json
import logging
import os
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from storefront.pricing import PriceSummary, effective_price, line_total, subtotal_of, summarize

logger = logging.getLogger("storefront.cart")

CART_STORAGE_KEY = "cart"


# --- Durable client storage ---

class LocalStorage(ABC):
    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def remove_item(self, key: str) -> None:
        ...


class MemoryLocalStorage(LocalStorage):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self.data[key] = value

    def remove_item(self, key: str) -> None:
        self.data.pop(key, None)


class FileLocalStorage(LocalStorage):
    """String key/value pairs kept in one JSON file, rewritten on every set."""

    def __init__(self, path: str):
        self.path = path

    def _read(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable local storage file {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f)
        os.replace(tmp_path, self.path)

    def get_item(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set_item(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove_item(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)


# --- Cart ---

class CartItem(BaseModel):
    product_id: int = Field(..., gt=0, strict=True)
    name: str = Field(..., min_length=1)
    price: int = Field(..., gt=0, strict=True)
    sale_price: Optional[int] = Field(None, gt=0, strict=True)
    image: Optional[str] = None
    quantity: int = Field(..., ge=1, strict=True)

    @property
    def effective_price(self) -> int:
        return effective_price(self.price, self.sale_price)

    @property
    def line_total(self) -> int:
        return line_total(self.effective_price, self.quantity)


def _product_field(product: Any, name: str, default: Any = None) -> Any:
    if isinstance(product, dict):
        return product.get(name, default)
    return getattr(product, name, default)


class Cart:
    def __init__(self, storage: LocalStorage, key: str = CART_STORAGE_KEY,
                 on_open: Optional[Callable[[], None]] = None,
                 tax_rate: Optional[Decimal] = None,
                 free_shipping_threshold: Optional[int] = None,
                 shipping_fee: Optional[int] = None):
        self.storage = storage
        self.key = key
        self.on_open = on_open
        self.tax_rate = tax_rate
        self.free_shipping_threshold = free_shipping_threshold
        self.shipping_fee = shipping_fee
        self._items: List[CartItem] = self._load()

    # --- Persistence ---

    def _load(self) -> List[CartItem]:
        raw = self.storage.get_item(self.key)
        if not raw:
            return []
        try:
            stored = json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable stored cart", extra={"reason": "invalid json"})
            return []
        if not isinstance(stored, list):
            logger.warning("Discarding stored cart", extra={"reason": "not a list"})
            return []

        items: List[CartItem] = []
        seen = set()
        discarded = 0
        for line in stored:
            try:
                item = CartItem.model_validate(line)
            except ValidationError:
                discarded += 1
                continue
            if item.product_id in seen:
                discarded += 1
                continue
            seen.add(item.product_id)
            items.append(item)

        if discarded:
            logger.warning("Dropped invalid cart lines", extra={"discarded": discarded})
        return items

    def _save(self) -> None:
        self.storage.set_item(self.key, json.dumps([item.model_dump() for item in self._items]))

    # --- Mutations ---

    def _find(self, product_id: int) -> Optional[int]:
        for index, item in enumerate(self._items):
            if item.product_id == product_id:
                return index
        return None

    def add_item(self, product: Any, quantity: int = 1) -> CartItem:
        quantity = max(int(quantity), 1)
        product_id = _product_field(product, "id")
        index = self._find(product_id)
        if index is not None:
            current = self._items[index]
            item = current.model_copy(update={"quantity": current.quantity + quantity})
            self._items[index] = item
        else:
            item = CartItem(
                product_id=product_id,
                name=_product_field(product, "name"),
                price=_product_field(product, "price"),
                sale_price=_product_field(product, "sale_price"),
                image=_product_field(product, "image"),
                quantity=quantity,
            )
            self._items.append(item)

        self._save()
        if self.on_open:
            self.on_open()
        return item

    def update_quantity(self, product_id: int, quantity: int) -> None:
        if quantity < 1:
            self.remove_item(product_id)
            return
        index = self._find(product_id)
        if index is None:
            return
        self._items[index] = self._items[index].model_copy(update={"quantity": quantity})
        self._save()

    def remove_item(self, product_id: int) -> None:
        index = self._find(product_id)
        if index is None:
            return
        del self._items[index]
        self._save()

    def clear_cart(self) -> None:
        self._items = []
        self._save()

    # --- Reads ---

    @property
    def items(self) -> List[CartItem]:
        return list(self._items)

    def get_item(self, product_id: int) -> Optional[CartItem]:
        index = self._find(product_id)
        return self._items[index] if index is not None else None

    def __len__(self) -> int:
        return len(self._items)

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self._items)

    @property
    def subtotal(self) -> int:
        return subtotal_of((item.effective_price, item.quantity) for item in self._items)

    def summary(self) -> PriceSummary:
        return summarize(self.subtotal, self.tax_rate, self.free_shipping_threshold, self.shipping_fee)

    @property
    def tax(self) -> int:
        return self.summary().tax

    @property
    def shipping(self) -> int:
        return self.summary().shipping

    @property
    def total(self) -> int:
        return self.summary().total

    def to_order_items(self) -> List[dict]:
        """The cart snapshot submitted at checkout."""
        return [
            {"product_id": item.product_id, "quantity": item.quantity, "price": item.effective_price}
            for item in self._items
        ]
