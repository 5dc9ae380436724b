import asyncio
from decimal import Decimal

import pytest

from shared.utils import (
    ConflictException, InvalidTransitionException, NotFoundException, ValidationException,
)
from storefront.orders import ALLOWED_TRANSITIONS, OrderPipeline, can_transition
from storefront.models import OrderStatus
from storefront.storage import MemoryOrderRepository


def run(coro):
    return asyncio.run(coro)


def order_request(customer, *items):
    return {**customer, "items": [dict(item) for item in items]}


def stock_of(storage, product_id):
    return run(storage.products.get(product_id)).stock


class TestCreateOrder:
    def test_total_uses_current_catalog_prices(self, pipeline, storage, make_product, customer):
        lamp = make_product("Lamp", price=500, stock=3)
        bulb = make_product("Bulb", price=1200, stock=5)

        order = run(pipeline.create_order(order_request(
            customer,
            {"product_id": lamp.id, "quantity": 2, "price": 1},
            {"product_id": bulb.id, "quantity": 1, "price": 999},
        )))

        assert order.total_amount == 500 * 2 + 1200
        assert [(i.product_id, i.price, i.quantity, i.line_total) for i in order.items] == [
            (lamp.id, 500, 2, 1000), (bulb.id, 1200, 1, 1200),
        ]
        assert order.status == "pending"
        assert order.payment_method == "upi"
        assert stock_of(storage, lamp.id) == 1
        assert stock_of(storage, bulb.id) == 4

    def test_price_change_after_cart_was_built_is_honoured(self, pipeline, storage, make_product, customer):
        lamp = make_product("Lamp", price=500, stock=3)
        run(storage.products.update(lamp.id, {"price": 650}))

        order = run(pipeline.create_order(order_request(
            customer, {"product_id": lamp.id, "quantity": 1, "price": 500},
        )))
        assert order.total_amount == 650

    def test_sale_price_is_authoritative_when_lower(self, pipeline, make_product, customer):
        lamp = make_product("Lamp", price=1500, sale_price=1200, stock=3)
        order = run(pipeline.create_order(order_request(customer, {"product_id": lamp.id, "quantity": 2})))
        assert order.items[0].price == 1200
        assert order.total_amount == 2400

    def test_tax_shipping_and_grand_total(self, storage, make_product, customer):
        pipeline = OrderPipeline(storage, tax_rate=Decimal("0.18"), free_shipping_threshold=99900, shipping_fee=4900)
        lamp = make_product("Lamp", price=500, stock=3)
        order = run(pipeline.create_order(order_request(customer, {"product_id": lamp.id, "quantity": 1})))
        assert order.tax_amount == 90
        assert order.shipping_amount == 4900
        assert order.grand_total == 500 + 90 + 4900

    def test_item_snapshot_is_decoupled_from_product(self, pipeline, storage, make_product, customer):
        lamp = make_product("Lamp", price=500, stock=3, image="lamp.jpg")
        order = run(pipeline.create_order(order_request(customer, {"product_id": lamp.id, "quantity": 1})))

        run(storage.products.update(lamp.id, {"name": "Renamed", "price": 9999}))
        stored = run(storage.orders.get(order.id))
        assert stored.items[0].name == "Lamp"
        assert stored.items[0].price == 500
        assert stored.items[0].image == "lamp.jpg"

    def test_duplicate_lines_are_merged(self, pipeline, storage, make_product, customer):
        lamp = make_product("Lamp", price=500, stock=3)
        order = run(pipeline.create_order(order_request(
            customer,
            {"product_id": lamp.id, "quantity": 1},
            {"product_id": lamp.id, "quantity": 2},
        )))
        assert len(order.items) == 1
        assert order.items[0].quantity == 3
        assert stock_of(storage, lamp.id) == 0


class TestRejections:
    def test_validation_error_lists_every_failing_field(self, pipeline, customer):
        bad = {**customer, "customer_email": "not-an-email", "payment_method": "bitcoin",
               "items": [{"product_id": 1, "quantity": 0}, {"quantity": 2}]}
        with pytest.raises(ValidationException) as exc:
            run(pipeline.create_order(bad))

        fields = {d["field"] for d in exc.value.details}
        assert {"customer_email", "payment_method", "items.0.quantity", "items.1.product_id"} <= fields
        assert exc.value.status_code == 400

    def test_empty_items_rejected(self, pipeline, customer):
        with pytest.raises(ValidationException) as exc:
            run(pipeline.create_order({**customer, "items": []}))
        assert [d["field"] for d in exc.value.details] == ["items"]

    def test_non_integer_quantity_rejected(self, pipeline, make_product, customer):
        lamp = make_product("Lamp")
        with pytest.raises(ValidationException):
            run(pipeline.create_order(order_request(customer, {"product_id": lamp.id, "quantity": 1.5})))

    def test_missing_product_rejects_whole_order(self, pipeline, storage, make_product, customer):
        lamp = make_product("Lamp", stock=3)
        with pytest.raises(NotFoundException):
            run(pipeline.create_order(order_request(
                customer,
                {"product_id": lamp.id, "quantity": 1},
                {"product_id": 404, "quantity": 1},
            )))
        assert stock_of(storage, lamp.id) == 3
        assert run(storage.orders.list()) == []

    def test_inactive_product_rejected(self, pipeline, storage, make_product, customer):
        lamp = make_product("Lamp", stock=3, is_active=False)
        with pytest.raises(ConflictException):
            run(pipeline.create_order(order_request(customer, {"product_id": lamp.id, "quantity": 1})))
        assert stock_of(storage, lamp.id) == 3

    def test_quantity_over_stock_changes_nothing(self, pipeline, storage, make_product, customer):
        lamp = make_product("Lamp", stock=2)
        with pytest.raises(ConflictException) as exc:
            run(pipeline.create_order(order_request(customer, {"product_id": lamp.id, "quantity": 3})))
        assert exc.value.status_code == 409
        assert exc.value.details == [{"product_id": lamp.id, "name": "Lamp", "requested": 3, "available": 2}]
        assert stock_of(storage, lamp.id) == 2
        assert run(storage.orders.list()) == []

    def test_out_of_stock_item_rejects_whole_cart(self, pipeline, storage, make_product, customer):
        product_a = make_product("Product A", price=500, stock=3)
        product_b = make_product("Product B", price=1200, stock=0)

        with pytest.raises(ConflictException) as exc:
            run(pipeline.create_order(order_request(
                customer,
                {"product_id": product_a.id, "quantity": 1},
                {"product_id": product_b.id, "quantity": 1},
            )))

        assert "Product B" in exc.value.detail
        assert [d["product_id"] for d in exc.value.details] == [product_b.id]
        assert stock_of(storage, product_a.id) == 3
        assert run(storage.orders.list()) == []

    def test_sequential_orders_for_last_unit(self, pipeline, storage, make_product, customer):
        lamp = make_product("Lamp", stock=1)
        request = order_request(customer, {"product_id": lamp.id, "quantity": 1})

        first = run(pipeline.create_order(request))
        assert first.status == "pending"
        assert stock_of(storage, lamp.id) == 0

        with pytest.raises(ConflictException):
            run(pipeline.create_order(request))
        assert len(run(storage.orders.list())) == 1

    def test_concurrent_orders_for_last_unit(self, pipeline, storage, make_product, customer):
        lamp = make_product("Lamp", stock=1)
        request = order_request(customer, {"product_id": lamp.id, "quantity": 1})

        async def race():
            return await asyncio.gather(
                pipeline.create_order(request), pipeline.create_order(request), return_exceptions=True,
            )

        results = run(race())
        assert sum(1 for r in results if isinstance(r, ConflictException)) == 1
        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        assert stock_of(storage, lamp.id) == 0


class TestUnitOfWork:
    def test_failed_insert_restores_stock(self, pipeline, storage, make_product, customer, monkeypatch):
        lamp = make_product("Lamp", stock=3)
        bulb = make_product("Bulb", stock=3)

        async def broken_create(data):
            raise RuntimeError("disk full")

        monkeypatch.setattr(storage.orders, "create", broken_create)
        with pytest.raises(RuntimeError):
            run(pipeline.create_order(order_request(
                customer,
                {"product_id": lamp.id, "quantity": 2},
                {"product_id": bulb.id, "quantity": 1},
            )))
        assert stock_of(storage, lamp.id) == 3
        assert stock_of(storage, bulb.id) == 3

    def test_lost_decrement_race_rolls_back(self, pipeline, storage, make_product, customer, monkeypatch):
        lamp = make_product("Lamp", stock=3)
        bulb = make_product("Bulb", stock=3)
        original = storage.products.decrement_stock

        async def racing_decrement(product_id, quantity):
            # Another writer drained the bulb between the check and the write
            if product_id == bulb.id:
                return False
            return await original(product_id, quantity)

        monkeypatch.setattr(storage.products, "decrement_stock", racing_decrement)
        with pytest.raises(ConflictException):
            run(pipeline.create_order(order_request(
                customer,
                {"product_id": lamp.id, "quantity": 2},
                {"product_id": bulb.id, "quantity": 1},
            )))
        assert stock_of(storage, lamp.id) == 3
        assert run(storage.orders.list()) == []


class TestStatusTransitions:
    @pytest.fixture
    def order(self, pipeline, make_product, customer):
        lamp = make_product("Lamp", stock=5)
        return run(pipeline.create_order(order_request(customer, {"product_id": lamp.id, "quantity": 2})))

    def test_transition_table(self):
        assert can_transition("pending", "processing")
        assert can_transition("processing", "cancelled")
        assert not can_transition("shipped", "cancelled")
        assert not can_transition("pending", "pending")
        assert ALLOWED_TRANSITIONS[OrderStatus.DELIVERED] == frozenset()
        assert ALLOWED_TRANSITIONS[OrderStatus.CANCELLED] == frozenset()

    def test_happy_path_to_delivered(self, pipeline, order):
        for status in ("processing", "shipped", "delivered"):
            updated = run(pipeline.update_order_status(order.id, status))
            assert updated.status == status
            assert updated.updated_at is not None

    @pytest.mark.parametrize("target", ["pending", "processing", "shipped", "cancelled"])
    def test_delivered_is_terminal(self, pipeline, order, target):
        for status in ("processing", "shipped", "delivered"):
            run(pipeline.update_order_status(order.id, status))
        with pytest.raises(InvalidTransitionException) as exc:
            run(pipeline.update_order_status(order.id, target))
        assert exc.value.status_code == 400
        assert run(pipeline.get_order(order.id)).status == "delivered"

    def test_pending_to_cancelled_restocks(self, pipeline, storage, order):
        product_id = order.items[0].product_id
        assert stock_of(storage, product_id) == 3

        cancelled = run(pipeline.update_order_status(order.id, "cancelled"))
        assert cancelled.status == "cancelled"
        assert stock_of(storage, product_id) == 5

    def test_cancelled_is_terminal(self, pipeline, order):
        run(pipeline.update_order_status(order.id, "cancelled"))
        with pytest.raises(InvalidTransitionException):
            run(pipeline.update_order_status(order.id, "pending"))

    def test_cancel_skips_deleted_products(self, pipeline, storage, order):
        run(storage.products.delete(order.items[0].product_id))
        cancelled = run(pipeline.update_order_status(order.id, "cancelled"))
        assert cancelled.status == "cancelled"

    def test_unknown_status_is_a_validation_error(self, pipeline, order):
        with pytest.raises(ValidationException):
            run(pipeline.update_order_status(order.id, "lost"))

    def test_missing_order_is_not_found(self, pipeline):
        with pytest.raises(NotFoundException):
            run(pipeline.update_order_status(999, "processing"))

    def test_status_change_keeps_money_fields(self, pipeline, order):
        updated = run(pipeline.update_order_status(order.id, "processing"))
        assert updated.items == order.items
        assert updated.total_amount == order.total_amount
        assert updated.grand_total == order.grand_total


class TestQueries:
    def test_list_orders_by_status_newest_first(self, pipeline, make_product, customer):
        lamp = make_product("Lamp", stock=10)
        request = order_request(customer, {"product_id": lamp.id, "quantity": 1})
        first = run(pipeline.create_order(request))
        second = run(pipeline.create_order(request))
        run(pipeline.update_order_status(first.id, "processing"))

        assert [o.id for o in run(pipeline.list_orders())] == [second.id, first.id]
        assert [o.id for o in run(pipeline.list_orders("processing"))] == [first.id]
        with pytest.raises(ValidationException):
            run(pipeline.list_orders("misplaced"))

    def test_dashboard(self, pipeline, storage, make_product, customer):
        category = run(storage.categories.create({"name": "Spotlights", "slug": "spotlights"}))
        lamp = make_product("Lamp", price=500, stock=2, category_id=category.id)
        make_product("Bulb", price=800, stock=0)

        kept = run(pipeline.create_order(order_request(customer, {"product_id": lamp.id, "quantity": 1})))
        dropped = run(pipeline.create_order(order_request(customer, {"product_id": lamp.id, "quantity": 1})))
        run(pipeline.update_order_status(dropped.id, "cancelled"))

        summary = run(pipeline.dashboard())
        assert summary["total_products"] == 2
        assert summary["in_stock_products"] == 1
        assert summary["out_of_stock_products"] == 1
        assert summary["total_orders"] == 2
        assert summary["orders_by_status"]["pending"] == 1
        assert summary["orders_by_status"]["cancelled"] == 1
        assert summary["revenue"] == kept.grand_total
        assert summary["products_by_category"] == {"Spotlights": 1, "Uncategorized": 1}


class SlowOrderRepository(MemoryOrderRepository):
    """Yields to the loop after every read, like a backend doing real I/O."""

    async def get(self, id):
        order = await super().get(id)
        await asyncio.sleep(0)
        return order


class TestConcurrentStatusUpdates:
    @pytest.fixture
    def slow_storage(self, storage):
        storage.orders = SlowOrderRepository()
        return storage

    @pytest.fixture
    def order(self, slow_storage, pipeline, make_product, customer):
        lamp = make_product("Lamp", stock=5)
        return run(pipeline.create_order(order_request(customer, {"product_id": lamp.id, "quantity": 2})))

    def race(self, pipeline, order_id, *statuses):
        async def main():
            return await asyncio.gather(
                *(pipeline.update_order_status(order_id, s) for s in statuses), return_exceptions=True,
            )
        return run(main())

    def test_double_cancel_restocks_once(self, pipeline, storage, order):
        results = self.race(pipeline, order.id, "cancelled", "cancelled")

        assert sum(1 for r in results if isinstance(r, InvalidTransitionException)) == 1
        assert stock_of(storage, order.items[0].product_id) == 5

    def test_cancel_and_advance_cannot_both_win(self, pipeline, storage, order):
        results = self.race(pipeline, order.id, "cancelled", "processing")

        assert sum(1 for r in results if isinstance(r, InvalidTransitionException)) == 1
        final = run(pipeline.get_order(order.id))
        assert final.status == "cancelled"
        assert stock_of(storage, order.items[0].product_id) == 5
