"""Tests for the cart-to-order purchase workflow."""

from contextlib import contextmanager

import mongomock
import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

from carts import CartService, CartStore
from catalog import ProductCatalog
from errors import EmptyCartError, InactiveProductError, InsufficientStockError, StaleCartError, StorageError
from orders import OrderStore, OrderWorkflow
from schemas import OrderStatus, ProductUpdate

OWNER = "user-1"


@pytest.fixture
def workflow(db):
    return OrderWorkflow(db, use_transactions=False, max_workers=4)


def stock_of(db, product_id):
    return ProductCatalog(db).find_by_id(product_id)["stock"]


class TestEmptyPurchase:
    def test_no_cart(self, db, workflow):
        with pytest.raises(EmptyCartError) as exc_info:
            workflow.purchase(OWNER)

        assert exc_info.value.owner_id == OWNER
        assert db["order"].count_documents({}) == 0
        assert db["cart"].count_documents({}) == 0

    def test_empty_cart_performs_no_writes(self, db, workflow):
        cart = CartStore(db).create(OWNER)

        with pytest.raises(EmptyCartError):
            workflow.purchase(OWNER)

        assert db["order"].count_documents({}) == 0
        assert CartStore(db).find_by_owner(OWNER)["version"] == cart["version"]


class TestSuccessfulPurchase:
    def test_single_line_scenario(self, db, workflow, make_product, fill_cart):
        p1 = make_product(name="P1", price=10, stock=5)
        fill_cart(OWNER, [(p1, 2)])

        order = workflow.purchase(OWNER)

        assert order["total_amount"] == 20
        assert order["status"] == OrderStatus.PENDING.value
        assert order["owner_id"] == OWNER
        assert order["line_items"] == [
            {"product_id": p1, "name": "P1", "quantity": 2, "price_at_purchase": 10.0}
        ]
        assert stock_of(db, p1) == 3
        assert CartStore(db).find_by_owner(OWNER)["line_items"] == []

    def test_total_matches_line_items(self, db, workflow, make_product, fill_cart):
        a = make_product(name="A", price=19.99, stock=10)
        b = make_product(name="B", price=5.25, stock=10)
        c = make_product(name="C", price=0, stock=1)
        fill_cart(OWNER, [(a, 3), (b, 2), (c, 1)])

        order = workflow.purchase(OWNER)

        expected = sum(item["quantity"] * item["price_at_purchase"] for item in order["line_items"])
        assert order["total_amount"] == expected
        assert [item["product_id"] for item in order["line_items"]] == [a, b, c]
        assert stock_of(db, a) == 7
        assert stock_of(db, b) == 8
        assert stock_of(db, c) == 0

    def test_order_is_persisted(self, db, workflow, make_product, fill_cart):
        p1 = make_product(price=3, stock=4)
        fill_cart(OWNER, [(p1, 4)])

        order = workflow.purchase(OWNER)

        stored = OrderStore(db).find_by_id(order["id"])
        assert stored["total_amount"] == 12
        assert stored["purchase_date"] is not None

    def test_price_change_does_not_touch_existing_orders(self, db, workflow, make_product, fill_cart):
        p1 = make_product(price=10, stock=5)
        fill_cart(OWNER, [(p1, 2)])
        order = workflow.purchase(OWNER)

        ProductCatalog(db).update(p1, ProductUpdate(price=99))

        stored = OrderStore(db).find_by_id(order["id"])
        assert stored["line_items"][0]["price_at_purchase"] == 10
        assert stored["total_amount"] == 20

    def test_soft_deleting_a_product_keeps_the_order(self, db, workflow, make_product, fill_cart):
        p1 = make_product(price=10, stock=5)
        fill_cart(OWNER, [(p1, 1)])
        order = workflow.purchase(OWNER)

        ProductCatalog(db).deactivate(p1)

        assert OrderStore(db).find_by_id(order["id"])["line_items"][0]["product_id"] == p1


class TestRejectedPurchase:
    def test_insufficient_stock_scenario(self, db, workflow, make_product, fill_cart):
        p2 = make_product(name="P2", price=5, stock=3)
        fill_cart(OWNER, [(p2, 10)])

        with pytest.raises(InsufficientStockError) as exc_info:
            workflow.purchase(OWNER)

        err = exc_info.value
        assert (err.product_id, err.requested, err.available) == (p2, 10, 3)
        assert db["order"].count_documents({}) == 0
        assert stock_of(db, p2) == 3
        assert CartStore(db).find_by_owner(OWNER)["line_items"] == [{"product_id": p2, "quantity": 10}]

    def test_inactive_product(self, db, workflow, make_product, fill_cart):
        ok = make_product(price=1, stock=5)
        gone = make_product(price=1, stock=5, is_active=False)
        fill_cart(OWNER, [(ok, 1), (gone, 1)])

        with pytest.raises(InactiveProductError) as exc_info:
            workflow.purchase(OWNER)

        assert exc_info.value.product_id == gone
        assert db["order"].count_documents({}) == 0
        assert stock_of(db, ok) == 5

    def test_missing_product(self, db, workflow, fill_cart):
        missing = str(ObjectId())
        fill_cart(OWNER, [(missing, 1)])

        with pytest.raises(InactiveProductError):
            workflow.purchase(OWNER)

        assert db["order"].count_documents({}) == 0


class RacingWorkflow(OrderWorkflow):
    """Lets another buyer take stock between validation and the decrements."""

    def __init__(self, database, stolen):
        super().__init__(database, use_transactions=False, max_workers=2)
        self.database = database
        self.stolen = stolen

    def _build_order(self, owner_id, line_items):
        order = super()._build_order(owner_id, line_items)
        for product_id, units in self.stolen:
            self.database["product"].update_one({"_id": ObjectId(product_id)}, {"$inc": {"stock": -units}})
        return order


class TestConcurrentStock:
    def test_lost_race_restores_stock_and_cancels_order(self, db, make_product, fill_cart):
        a = make_product(name="A", price=2, stock=5)
        b = make_product(name="B", price=3, stock=2)
        fill_cart(OWNER, [(a, 2), (b, 2)])

        with pytest.raises(InsufficientStockError) as exc_info:
            RacingWorkflow(db, stolen=[(b, 1)]).purchase(OWNER)

        assert exc_info.value.product_id == b
        assert exc_info.value.available == 1
        assert stock_of(db, a) == 5
        assert stock_of(db, b) == 1
        orders = list(db["order"].find())
        assert len(orders) == 1
        assert orders[0]["status"] == OrderStatus.CANCELLED.value
        assert len(CartStore(db).find_by_owner(OWNER)["line_items"]) == 2

    def test_stock_never_goes_negative(self, db, workflow, make_product, fill_cart):
        p = make_product(price=1, stock=3)
        fill_cart("first", [(p, 2)])
        fill_cart("second", [(p, 2)])

        workflow.purchase("first")
        with pytest.raises(InsufficientStockError):
            workflow.purchase("second")

        assert stock_of(db, p) == 1


class InterleavedWorkflow(OrderWorkflow):
    """Runs ``interleave`` after validation and before anything is written."""

    def __init__(self, database, interleave, **kwargs):
        kwargs.setdefault("use_transactions", False)
        kwargs.setdefault("max_workers", 2)
        super().__init__(database, **kwargs)
        self.interleave = interleave

    def _build_order(self, owner_id, line_items):
        order = super()._build_order(owner_id, line_items)
        self.interleave()
        return order


class TestCartClaim:
    def test_item_added_during_checkout_is_not_lost(self, db, make_product, fill_cart):
        a = make_product(name="A", price=2, stock=5)
        b = make_product(name="B", price=3, stock=5)
        fill_cart(OWNER, [(a, 2)])
        racing = InterleavedWorkflow(db, lambda: CartService(db).add(OWNER, b, 1))

        with pytest.raises(StaleCartError):
            racing.purchase(OWNER)

        assert db["order"].count_documents({}) == 0
        assert stock_of(db, a) == 5
        assert CartStore(db).find_by_owner(OWNER)["line_items"] == [
            {"product_id": a, "quantity": 2},
            {"product_id": b, "quantity": 1},
        ]

    def test_double_checkout_creates_one_order(self, db, make_product, fill_cart):
        a = make_product(price=2, stock=5)
        fill_cart(OWNER, [(a, 2)])
        other = OrderWorkflow(db, use_transactions=False, max_workers=2)
        racing = InterleavedWorkflow(db, lambda: other.purchase(OWNER))

        with pytest.raises(StaleCartError):
            racing.purchase(OWNER)

        assert db["order"].count_documents({}) == 1
        assert stock_of(db, a) == 3
        assert CartStore(db).find_by_owner(OWNER)["line_items"] == []

    def test_returned_items_merge_with_new_ones(self, db, make_product, fill_cart):
        a = make_product(name="A", price=2, stock=5)
        b = make_product(name="B", price=3, stock=2)
        fill_cart(OWNER, [(a, 1), (b, 2)])

        def steal_and_refill():
            db["product"].update_one({"_id": ObjectId(b)}, {"$inc": {"stock": -1}})

        racing = InterleavedWorkflow(db, steal_and_refill)
        original_decrement = racing.catalog.decrement_stock

        def decrement_then_add(product_id, amount, session=None):
            if product_id == a:
                CartService(db).add(OWNER, a, 1)
            return original_decrement(product_id, amount, session=session)

        racing.catalog.decrement_stock = decrement_then_add

        with pytest.raises(InsufficientStockError):
            racing.purchase(OWNER)

        items = {item["product_id"]: item["quantity"] for item in CartStore(db).find_by_owner(OWNER)["line_items"]}
        assert items == {a: 2, b: 2}


class TestStorageFailures:
    def test_failed_decrement_rolls_back(self, db, workflow, make_product, fill_cart, monkeypatch):
        a = make_product(name="A", price=2, stock=5)
        b = make_product(name="B", price=3, stock=5)
        fill_cart(OWNER, [(a, 1), (b, 1)])
        original = mongomock.Collection.find_one_and_update

        def flaky(self, filter, *args, **kwargs):
            if self.name == "product" and filter.get("_id") == ObjectId(b):
                raise PyMongoError("connection reset")
            return original(self, filter, *args, **kwargs)

        monkeypatch.setattr(mongomock.Collection, "find_one_and_update", flaky)

        with pytest.raises(StorageError) as exc_info:
            workflow.purchase(OWNER)

        assert exc_info.value.status_code == 500
        assert exc_info.value.context["operation"] == "decrement stock"
        assert stock_of(db, a) == 5
        assert stock_of(db, b) == 5
        orders = list(db["order"].find())
        assert [o["status"] for o in orders] == [OrderStatus.CANCELLED.value]
        assert len(CartStore(db).find_by_owner(OWNER)["line_items"]) == 2

    def test_failed_order_write_returns_cart(self, db, workflow, make_product, fill_cart, monkeypatch):
        a = make_product(price=2, stock=5)
        fill_cart(OWNER, [(a, 2)])
        original = mongomock.Collection.insert_one

        def flaky(self, document, *args, **kwargs):
            if self.name == "order":
                raise PyMongoError("not primary")
            return original(self, document, *args, **kwargs)

        monkeypatch.setattr(mongomock.Collection, "insert_one", flaky)

        with pytest.raises(StorageError):
            workflow.purchase(OWNER)

        assert db["order"].count_documents({}) == 0
        assert stock_of(db, a) == 5
        assert CartStore(db).find_by_owner(OWNER)["line_items"] == [{"product_id": a, "quantity": 2}]

    def test_failed_restore_does_not_stop_the_others(self, db, make_product, fill_cart):
        a = make_product(name="A", price=1, stock=5)
        b = make_product(name="B", price=1, stock=5)
        c = make_product(name="C", price=1, stock=1)
        fill_cart(OWNER, [(a, 2), (b, 2), (c, 1)])

        def steal():
            db["product"].update_one({"_id": ObjectId(c)}, {"$inc": {"stock": -1}})

        racing = InterleavedWorkflow(db, steal)
        original_restore = racing.catalog.restore_stock

        def restore(product_id, amount, session=None):
            if product_id == a:
                raise StorageError("restore failed", operation="restore stock")
            return original_restore(product_id, amount, session=session)

        racing.catalog.restore_stock = restore

        with pytest.raises(InsufficientStockError):
            racing.purchase(OWNER)

        assert stock_of(db, a) == 3
        assert stock_of(db, b) == 5
        assert db["order"].find_one()["status"] == OrderStatus.CANCELLED.value
        assert len(CartStore(db).find_by_owner(OWNER)["line_items"]) == 3


class FakeSession:
    def __init__(self, log):
        self.log = log

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    @contextmanager
    def start_transaction(self):
        try:
            yield
        except Exception:
            self.log.append("aborted")
            raise
        self.log.append("committed")


class FakeClient:
    def __init__(self):
        self.log = []

    def start_session(self):
        return FakeSession(self.log)


@pytest.fixture
def fake_client(monkeypatch):
    # mongomock does not take session arguments
    for module in ("catalog", "carts", "orders", "database"):
        monkeypatch.setattr(f"{module}.session_kwargs", lambda session: {})
    return FakeClient()


class TestTransactionalPurchase:
    def test_commits(self, db, fake_client, make_product, fill_cart):
        a = make_product(price=4, stock=3)
        fill_cart(OWNER, [(a, 2)])

        order = OrderWorkflow(db, client=fake_client, use_transactions=True).purchase(OWNER)

        assert fake_client.log == ["committed"]
        assert order["total_amount"] == 8
        assert stock_of(db, a) == 1
        assert CartStore(db).find_by_owner(OWNER)["line_items"] == []

    def test_failed_decrement_aborts(self, db, fake_client, make_product, fill_cart):
        a = make_product(price=4, stock=3)
        fill_cart(OWNER, [(a, 2)])

        def steal():
            db["product"].update_one({"_id": ObjectId(a)}, {"$inc": {"stock": -2}})

        racing = InterleavedWorkflow(db, steal, client=fake_client, use_transactions=True)

        with pytest.raises(InsufficientStockError):
            racing.purchase(OWNER)

        assert fake_client.log == ["aborted"]

    def test_stale_cart_aborts_before_order_write(self, db, fake_client, make_product, fill_cart):
        a = make_product(price=4, stock=3)
        fill_cart(OWNER, [(a, 1)])
        racing = InterleavedWorkflow(
            db, lambda: CartService(db).add(OWNER, a, 1), client=fake_client, use_transactions=True
        )

        with pytest.raises(StaleCartError):
            racing.purchase(OWNER)

        assert fake_client.log == ["aborted"]
        assert db["order"].count_documents({}) == 0
        assert stock_of(db, a) == 3

    def test_storage_error_from_session_start(self, db, make_product, fill_cart):
        class DownClient:
            def start_session(self):
                raise PyMongoError("no replica set")

        a = make_product(price=4, stock=3)
        fill_cart(OWNER, [(a, 1)])

        with pytest.raises(StorageError) as exc_info:
            OrderWorkflow(db, client=DownClient(), use_transactions=True).purchase(OWNER)

        assert exc_info.value.context["operation"] == "purchase transaction"
        assert db["order"].count_documents({}) == 0


class TestConfiguration:
    def test_transactions_need_a_client(self, db):
        with pytest.raises(ValueError):
            OrderWorkflow(db, use_transactions=True)


class TestOrderStatus:
    def test_any_transition_is_allowed(self, db, workflow, make_product, fill_cart):
        p = make_product(stock=2)
        fill_cart(OWNER, [(p, 1)])
        order = workflow.purchase(OWNER)
        store = OrderStore(db)

        assert store.update_status(order["id"], OrderStatus.CANCELLED)["status"] == "cancelled"
        assert store.update_status(order["id"], OrderStatus.PENDING)["status"] == "pending"

    def test_unknown_order(self, db):
        store = OrderStore(db)
        assert store.update_status(str(ObjectId()), OrderStatus.SHIPPED) is None
        assert store.update_status("not-an-id", OrderStatus.SHIPPED) is None
