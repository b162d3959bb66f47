"""
Shopping carts.

One cart document per owner holding an ordered list of line items. Every write
goes through ``CartStore.replace_line_items`` conditioned on the version that was
read, so two edits racing on the same cart cannot silently drop one another.
"""

from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from catalog import ProductCatalog
from database import create_document, now, serialize, session_kwargs, storage_errors, to_object_id
from errors import (
    InactiveProductError,
    InsufficientStockError,
    NotFoundError,
    StaleCartError,
    ValidationError,
)
from logging_config import get_logger
from schemas import Cart

logger = get_logger(__name__)

COLLECTION = "cart"


class CartStore:
    def __init__(self, database: Database):
        self.db = database
        self.collection = database[COLLECTION]

    def find_by_owner(self, owner_id: str, session=None) -> Optional[dict]:
        with storage_errors("find cart"):
            return serialize(self.collection.find_one({"owner_id": owner_id}, **session_kwargs(session)))

    def create(self, owner_id: str) -> dict:
        try:
            create_document(self.db, COLLECTION, Cart(owner_id=owner_id))
            logger.info("cart created", owner_id=owner_id)
        except DuplicateKeyError:
            # Another request created it first
            pass
        return self.find_by_owner(owner_id)

    def find_by_id(self, cart_id: str, session=None) -> Optional[dict]:
        query = {"_id": to_object_id(cart_id, "cart")}
        with storage_errors("find cart"):
            return serialize(self.collection.find_one(query, **session_kwargs(session)))

    def get_or_create(self, owner_id: str) -> dict:
        return self.find_by_owner(owner_id) or self.create(owner_id)

    def merge_line_items(self, cart_id: str, items: List[Dict[str, Any]], attempts: int = 3) -> dict:
        """Add ``items`` back into a cart on top of whatever it holds now."""
        for _ in range(attempts):
            current = self.find_by_id(cart_id)
            if current is None:
                raise NotFoundError("cart", cart_id)
            merged = [dict(item) for item in current["line_items"]]
            for item in items:
                existing = next((line for line in merged if line["product_id"] == item["product_id"]), None)
                if existing:
                    existing["quantity"] += item["quantity"]
                else:
                    merged.append({"product_id": item["product_id"], "quantity": item["quantity"]})
            try:
                return self.replace_line_items(cart_id, merged, expected_version=current["version"])
            except StaleCartError:
                continue
        raise StaleCartError(cart_id, current["version"])

    def replace_line_items(
        self,
        cart_id: str,
        items: List[Dict[str, Any]],
        expected_version: Optional[int] = None,
        session=None,
    ) -> dict:
        query: Dict[str, Any] = {"_id": to_object_id(cart_id, "cart")}
        if expected_version is not None:
            query["version"] = expected_version
        with storage_errors("replace cart items"):
            doc = self.collection.find_one_and_update(
                query,
                {"$set": {"line_items": items, "updated_at": now()}, "$inc": {"version": 1}},
                return_document=ReturnDocument.AFTER,
                **session_kwargs(session),
            )
        if doc is None:
            if expected_version is None:
                raise NotFoundError("cart", cart_id)
            raise StaleCartError(cart_id, expected_version)
        return serialize(doc)


class CartService:
    """Line-item mutations for a single owner's cart."""

    def __init__(self, database: Database):
        self.carts = CartStore(database)
        self.catalog = ProductCatalog(database)

    def _existing_cart(self, owner_id: str, if_version: Optional[int]) -> dict:
        cart = self.carts.find_by_owner(owner_id)
        if not cart:
            raise NotFoundError("cart", owner_id)
        self._check_version(cart, if_version)
        return cart

    @staticmethod
    def _check_version(cart: dict, if_version: Optional[int]) -> None:
        if if_version is not None and cart["version"] != if_version:
            raise StaleCartError(cart["id"], if_version)

    def _available_product(self, product_id: str) -> dict:
        product = self.catalog.find_by_id(product_id)
        if not product or not product.get("is_active"):
            raise InactiveProductError(product_id)
        return product

    def get(self, owner_id: str) -> dict:
        return self.carts.get_or_create(owner_id)

    def add(self, owner_id: str, product_id: str, quantity: int, if_version: Optional[int] = None) -> dict:
        if quantity <= 0:
            raise ValidationError("Quantity must be a positive number.")
        product = self._available_product(product_id)
        cart = self.carts.get_or_create(owner_id)
        self._check_version(cart, if_version)

        items = [dict(item) for item in cart["line_items"]]
        existing = next((item for item in items if item["product_id"] == product_id), None)
        in_cart = existing["quantity"] if existing else 0
        if product["stock"] < in_cart + quantity:
            raise InsufficientStockError(product_id, in_cart + quantity, product["stock"])

        if existing:
            existing["quantity"] = in_cart + quantity
        else:
            items.append({"product_id": product_id, "quantity": quantity})

        updated = self.carts.replace_line_items(cart["id"], items, expected_version=cart["version"])
        logger.info("cart item added", owner_id=owner_id, product_id=product_id, quantity=quantity)
        return updated

    def set_quantity(self, owner_id: str, product_id: str, quantity: int, if_version: Optional[int] = None) -> dict:
        if quantity < 0:
            raise ValidationError("Quantity must be a non-negative number.")
        cart = self._existing_cart(owner_id, if_version)

        items = [dict(item) for item in cart["line_items"]]
        index = next((i for i, item in enumerate(items) if item["product_id"] == product_id), None)
        if index is None:
            raise NotFoundError("cart item", product_id)

        if quantity == 0:
            del items[index]
        else:
            if quantity > items[index]["quantity"]:
                product = self._available_product(product_id)
                if product["stock"] < quantity:
                    raise InsufficientStockError(product_id, quantity, product["stock"])
            items[index]["quantity"] = quantity

        updated = self.carts.replace_line_items(cart["id"], items, expected_version=cart["version"])
        logger.info("cart item quantity set", owner_id=owner_id, product_id=product_id, quantity=quantity)
        return updated

    def remove(self, owner_id: str, product_id: str, if_version: Optional[int] = None) -> dict:
        cart = self._existing_cart(owner_id, if_version)
        items = [dict(item) for item in cart["line_items"] if item["product_id"] != product_id]
        if len(items) == len(cart["line_items"]):
            raise NotFoundError("cart item", product_id)
        updated = self.carts.replace_line_items(cart["id"], items, expected_version=cart["version"])
        logger.info("cart item removed", owner_id=owner_id, product_id=product_id)
        return updated

    def empty(self, owner_id: str, if_version: Optional[int] = None) -> dict:
        cart = self._existing_cart(owner_id, if_version)
        updated = self.carts.replace_line_items(cart["id"], [], expected_version=cart["version"])
        logger.info("cart emptied", owner_id=owner_id)
        return updated
