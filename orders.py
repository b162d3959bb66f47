"""
Orders and the cart-to-order purchase workflow.

A purchase reads the owner's cart, validates every line against the catalog,
writes an order that snapshots each price, takes the stock off the shelf and
empties the cart.
"""

from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from pymongo import MongoClient, ReturnDocument
from pymongo.database import Database

from carts import CartStore
from catalog import ProductCatalog
from config import settings
from database import create_document, now, paginate, serialize, session_kwargs, storage_errors, to_object_id
from errors import EmptyCartError, InactiveProductError, InsufficientStockError, NotFoundError, ShopError
from logging_config import get_logger
from schemas import Order, OrderItem, OrderStatus

logger = get_logger(__name__)

COLLECTION = "order"


class OrderStore:
    def __init__(self, database: Database):
        self.db = database
        self.collection = database[COLLECTION]

    def create(self, order: Order, session=None) -> dict:
        order_id = create_document(self.db, COLLECTION, order, session=session)
        return self.find_by_id(order_id, session=session)

    def find_by_id(self, order_id: str, session=None) -> Optional[dict]:
        try:
            oid = to_object_id(order_id, "order")
        except NotFoundError:
            return None
        with storage_errors("find order"):
            return serialize(self.collection.find_one({"_id": oid}, **session_kwargs(session)))

    def list(
        self,
        status: Optional[str] = None,
        owner_id: Optional[str] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if status:
            query["status"] = status
        if owner_id:
            query["owner_id"] = owner_id
        return paginate(self.db, COLLECTION, query, page=page, limit=limit, sort=[("purchase_date", -1)])

    def list_for_owner(self, owner_id: str, page: int = 1, limit: Optional[int] = None) -> Dict[str, Any]:
        return self.list(owner_id=owner_id, page=page, limit=limit)

    def update_status(self, order_id: str, status: OrderStatus, session=None) -> Optional[dict]:
        """Set an order's status. Any status may follow any other."""
        try:
            oid = to_object_id(order_id, "order")
        except NotFoundError:
            return None
        with storage_errors("update order status"):
            doc = self.collection.find_one_and_update(
                {"_id": oid},
                {"$set": {"status": OrderStatus(status).value, "updated_at": now()}},
                return_document=ReturnDocument.AFTER,
                **session_kwargs(session),
            )
        return serialize(doc)


class OrderWorkflow:
    """Turns an owner's cart into a persisted order.

    Validation runs against a snapshot read before any write. The cart is then
    claimed by emptying it at the version that was read, so an edit or a second
    checkout racing on the same cart gets a StaleCartError instead of an order.
    Stock is taken with conditional decrements; if one of them loses a race with
    another purchase, the decrements already applied are put back, the order is
    cancelled and the line items go back into the cart before the error is
    raised. With ``use_transactions`` the cart claim, the order write and the
    decrements commit or abort together instead.
    """

    def __init__(
        self,
        database: Database,
        client: Optional[MongoClient] = None,
        use_transactions: Optional[bool] = None,
        max_workers: Optional[int] = None,
    ):
        self.catalog = ProductCatalog(database)
        self.carts = CartStore(database)
        self.orders = OrderStore(database)
        self.client = client
        self.use_transactions = settings.use_transactions if use_transactions is None else use_transactions
        self.max_workers = max_workers or settings.stock_update_workers
        if self.use_transactions and self.client is None:
            raise ValueError("transactions need a MongoClient")

    def purchase(self, owner_id: str) -> dict:
        cart = self.carts.find_by_owner(owner_id)
        if not cart or not cart.get("line_items"):
            logger.warning("purchase attempted on empty cart", owner_id=owner_id)
            raise EmptyCartError(owner_id)

        order = self._build_order(owner_id, cart["line_items"])

        if self.use_transactions:
            created = self._commit_in_transaction(cart, order)
        else:
            created = self._commit(cart, order)

        logger.info(
            "order created",
            order_id=created["id"],
            owner_id=owner_id,
            total_amount=created["total_amount"],
        )
        return created

    def _build_order(self, owner_id: str, line_items: List[dict]) -> Order:
        order_items = []
        total_amount = 0.0
        for item in line_items:
            product_id = item["product_id"]
            quantity = item["quantity"]
            product = self.catalog.find_by_id(product_id)

            if not product or not product.get("is_active"):
                logger.warning("purchase rejected: inactive product", owner_id=owner_id, product_id=product_id)
                raise InactiveProductError(product_id)
            if product["stock"] < quantity:
                logger.warning(
                    "purchase rejected: insufficient stock",
                    owner_id=owner_id,
                    product_id=product_id,
                    requested=quantity,
                    available=product["stock"],
                )
                raise InsufficientStockError(product_id, quantity, product["stock"])

            price = product["price"]
            order_items.append(
                OrderItem(product_id=product_id, name=product.get("name"), quantity=quantity, price_at_purchase=price)
            )
            total_amount += price * quantity

        return Order(
            owner_id=owner_id,
            line_items=order_items,
            total_amount=total_amount,
            status=OrderStatus.PENDING,
            purchase_date=now(),
        )

    def _commit(self, cart: dict, order: Order) -> dict:
        # Emptying the cart at the version that was read claims it; a concurrent
        # edit or a second checkout of the same cart fails here with StaleCartError.
        self.carts.replace_line_items(cart["id"], [], expected_version=cart["version"])
        try:
            created = self.orders.create(order)
        except ShopError:
            self._compensate("return cart items", self.carts.merge_line_items, cart["id"], cart["line_items"])
            raise

        try:
            self._decrement_all(order.line_items)
        except ShopError:
            self._compensate("cancel order", self.orders.update_status, created["id"], OrderStatus.CANCELLED)
            self._compensate("return cart items", self.carts.merge_line_items, cart["id"], cart["line_items"])
            logger.error("order cancelled after failed stock update", order_id=created["id"])
            raise
        return created

    def _compensate(self, step: str, fn, *args) -> None:
        """Run one undo step. A failure is logged so the remaining steps still run."""
        try:
            fn(*args)
        except ShopError as e:
            logger.error("compensation failed", step=step, args=[str(a) for a in args], error=e.message)

    def _decrement_all(self, line_items: List[OrderItem]) -> None:
        """Issue every decrement concurrently and wait for all of them.

        On any failure the decrements that did apply are restored and the first
        error is raised.
        """
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [
                (item, pool.submit(self.catalog.decrement_stock, item.product_id, item.quantity))
                for item in line_items
            ]
            applied = []
            failures = []
            for item, future in futures:
                try:
                    future.result()
                    applied.append(item)
                except ShopError as e:
                    failures.append(e)

        if failures:
            for item in applied:
                self._compensate("restore stock", self.catalog.restore_stock, item.product_id, item.quantity)
            raise failures[0]

    def _commit_in_transaction(self, cart: dict, order: Order) -> dict:
        with self._transaction() as session:
            self.carts.replace_line_items(cart["id"], [], expected_version=cart["version"], session=session)
            created = self.orders.create(order, session=session)
            # A session is not thread-safe, so decrements run one after another here
            for item in order.line_items:
                self.catalog.decrement_stock(item.product_id, item.quantity, session=session)
        return created

    @contextmanager
    def _transaction(self):
        with storage_errors("purchase transaction"):
            with self.client.start_session() as session:
                with session.start_transaction():
                    yield session
