"""
Order pipeline: turns a submitted cart snapshot into a price-correct order.

Every amount on an order is derived from the live product records at
creation time; prices echoed by the client are only compared and logged.
Stock is checked for every line before anything is written, and the stock
decrements plus the order insert run as one unit of work that is undone on
failure, so a rejected checkout leaves storage exactly as it found it.
"""
import logging
from collections import OrderedDict
from decimal import Decimal
from typing import Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from shared.utils import (
    ConflictException, InvalidTransitionException, NotFoundException,
    ValidationException, validation_details,
)
from storefront.models import OrderDB, OrderStatus, ProductDB
from storefront.pricing import effective_price, format_price, line_total, subtotal_of, summarize
from storefront.schemas import OrderCreate
from storefront.storage import ProductRepository, Storage

logger = logging.getLogger("storefront.orders")

# delivered and cancelled are terminal
ALLOWED_TRANSITIONS: Dict[OrderStatus, frozenset] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def can_transition(current: Union[OrderStatus, str], new: Union[OrderStatus, str]) -> bool:
    return OrderStatus(new) in ALLOWED_TRANSITIONS[OrderStatus(current)]


def parse_status(value: str) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        allowed = [s.value for s in OrderStatus]
        raise ValidationException(
            f"Invalid order status '{value}'",
            details=[{"field": "status", "message": f"Must be one of: {', '.join(allowed)}", "type": "enum"}],
        )


class StockUnitOfWork:
    """
    Collects stock decrements and undoes them unless `commit` is called.

    Each decrement is an atomic compare-and-decrement at the storage layer,
    so a concurrent writer that slipped past the stock check still cannot
    push stock below zero; the whole unit is then rolled back.
    """

    def __init__(self, products: ProductRepository):
        self.products = products
        self.taken: List[Tuple[int, int]] = []
        self.committed = False

    async def __aenter__(self) -> "StockUnitOfWork":
        return self

    async def take(self, product: ProductDB, quantity: int) -> None:
        if not await self.products.decrement_stock(product.id, quantity):
            raise ConflictException(
                f"Insufficient stock for {product.name}",
                details=[{"product_id": product.id, "name": product.name, "requested": quantity}],
            )
        self.taken.append((product.id, quantity))

    def commit(self) -> None:
        self.committed = True

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if not self.committed:
            for product_id, quantity in reversed(self.taken):
                await self.products.increment_stock(product_id, quantity)
            if self.taken:
                logger.warning("Rolled back stock reservation", extra={"items": self.taken})
        return False


class OrderPipeline:
    def __init__(self, storage: Storage, tax_rate: Optional[Decimal] = None,
                 free_shipping_threshold: Optional[int] = None, shipping_fee: Optional[int] = None):
        self.storage = storage
        self.tax_rate = tax_rate
        self.free_shipping_threshold = free_shipping_threshold
        self.shipping_fee = shipping_fee

    # --- Creation ---

    def _validate(self, request: Union[OrderCreate, dict]) -> OrderCreate:
        if isinstance(request, OrderCreate):
            return request
        try:
            return OrderCreate.model_validate(request)
        except ValidationError as e:
            raise ValidationException("Invalid order", details=validation_details(e.errors()))

    @staticmethod
    def _merge_items(order: OrderCreate) -> "OrderedDict[int, int]":
        quantities: "OrderedDict[int, int]" = OrderedDict()
        for item in order.items:
            quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity
        return quantities

    async def _load_products(self, product_ids) -> Dict[int, ProductDB]:
        products = {}
        missing = []
        for product_id in product_ids:
            product = await self.storage.products.get(product_id)
            if product is None:
                missing.append(product_id)
            else:
                products[product_id] = product
        if missing:
            raise NotFoundException(f"Product(s) not found: {', '.join(str(i) for i in missing)}")

        inactive = [p for p in products.values() if not p.is_active]
        if inactive:
            raise ConflictException(
                f"Product(s) no longer available: {', '.join(p.name for p in inactive)}",
                details=[{"product_id": p.id, "name": p.name} for p in inactive],
            )
        return products

    async def create_order(self, request: Union[OrderCreate, dict]) -> OrderDB:
        order_in = self._validate(request)
        quantities = self._merge_items(order_in)
        echoed = {item.product_id: item.price for item in order_in.items if item.price is not None}

        async with self.storage.lock_products(quantities):
            products = await self._load_products(quantities)

            items = []
            for product_id, quantity in quantities.items():
                product = products[product_id]
                unit_price = effective_price(product.price, product.sale_price)
                if product_id in echoed and echoed[product_id] != unit_price:
                    logger.warning(
                        "Client price differs from catalog price",
                        extra={"product_id": product_id, "reason": f"client={echoed[product_id]} catalog={unit_price}"},
                    )
                items.append({
                    "product_id": product.id,
                    "name": product.name,
                    "price": unit_price,
                    "quantity": quantity,
                    "image": product.image,
                    "line_total": line_total(unit_price, quantity),
                })

            shortages = [
                {
                    "product_id": product_id,
                    "name": products[product_id].name,
                    "requested": quantity,
                    "available": products[product_id].stock,
                }
                for product_id, quantity in quantities.items()
                if products[product_id].stock < quantity
            ]
            if shortages:
                raise ConflictException(
                    f"Insufficient stock for {', '.join(s['name'] for s in shortages)}",
                    details=shortages,
                )

            total_amount = subtotal_of((item["price"], item["quantity"]) for item in items)
            summary = summarize(total_amount, self.tax_rate, self.free_shipping_threshold, self.shipping_fee)

            order_data = order_in.model_dump(exclude={"items"}, mode="json")
            order_data.update({
                "items": items,
                "total_amount": total_amount,
                "tax_amount": summary.tax,
                "shipping_amount": summary.shipping,
                "grand_total": summary.total,
                "status": OrderStatus.PENDING,
            })

            async with StockUnitOfWork(self.storage.products) as uow:
                for product_id, quantity in quantities.items():
                    await uow.take(products[product_id], quantity)
                order = await self.storage.orders.create(order_data)
                uow.commit()

        logger.info(f"Order created ({format_price(order.grand_total)})", extra={"order_id": order.id, "total_amount": order.total_amount})
        return order

    # --- Queries ---

    async def get_order(self, order_id: int) -> OrderDB:
        order = await self.storage.orders.get(order_id)
        if order is None:
            raise NotFoundException("Order not found")
        return order

    async def list_orders(self, status: Optional[str] = None) -> List[OrderDB]:
        filters = {}
        if status:
            filters["status"] = parse_status(status).value
        orders = await self.storage.orders.list(**filters)
        return sorted(orders, key=lambda o: (o.created_at, o.id), reverse=True)

    # --- Status ---

    async def update_order_status(self, order_id: int, new_status: str) -> OrderDB:
        target = parse_status(new_status)
        order = await self.get_order(order_id)
        if not can_transition(order.status, target):
            raise InvalidTransitionException(order.status, target.value)

        # Compare-and-set against the status that passed the check
        updated = await self.storage.orders.update_status(order_id, order.status, target.value)
        if updated is None:
            current = await self.get_order(order_id)
            raise InvalidTransitionException(current.status, target.value)

        if target == OrderStatus.CANCELLED:
            await self._restock(updated)

        logger.info("Order status updated", extra={"order_id": order_id, "status": target.value})
        return updated

    async def _restock(self, order: OrderDB) -> None:
        async with self.storage.lock_products(item.product_id for item in order.items):
            for item in order.items:
                if not await self.storage.products.increment_stock(item.product_id, item.quantity):
                    logger.warning("Skipped restock of deleted product",
                                   extra={"order_id": order.id, "product_id": item.product_id})

    # --- Admin summary ---

    async def dashboard(self) -> dict:
        products = await self.storage.products.list()
        orders = await self.storage.orders.list()
        categories = {c.id: c.name for c in await self.storage.categories.list()}

        by_status = {s.value: 0 for s in OrderStatus}
        for order in orders:
            by_status[order.status] += 1

        by_category: Dict[str, int] = {}
        for product in products:
            name = categories.get(product.category_id, "Uncategorized")
            by_category[name] = by_category.get(name, 0) + 1

        in_stock = sum(1 for p in products if p.stock > 0)
        return {
            "total_products": len(products),
            "in_stock_products": in_stock,
            "out_of_stock_products": len(products) - in_stock,
            "total_orders": len(orders),
            "orders_by_status": by_status,
            "revenue": sum(o.grand_total for o in orders if o.status != OrderStatus.CANCELLED),
            "products_by_category": by_category,
        }
