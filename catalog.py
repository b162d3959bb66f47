"""Product catalog: lookups, admin edits, soft delete and stock movements."""

from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from database import (
    create_document,
    now,
    paginate,
    serialize,
    session_kwargs,
    storage_errors,
    to_object_id,
)
from errors import InactiveProductError, InsufficientStockError, NotFoundError
from logging_config import get_logger
from schemas import ProductCreate, ProductUpdate

logger = get_logger(__name__)

COLLECTION = "product"

SORTS = {
    "price_asc": [("price", 1)],
    "price_desc": [("price", -1)],
}


class ProductCatalog:
    def __init__(self, database: Database):
        self.db = database
        self.collection = database[COLLECTION]

    def find_by_id(self, product_id: str, include_inactive: bool = True, session=None) -> Optional[dict]:
        try:
            oid = to_object_id(product_id, "product")
        except NotFoundError:
            return None
        query: Dict[str, Any] = {"_id": oid}
        if not include_inactive:
            query["is_active"] = True
        with storage_errors("find product"):
            return serialize(self.collection.find_one(query, **session_kwargs(session)))

    def get(self, product_id: str, include_inactive: bool = False) -> dict:
        product = self.find_by_id(product_id, include_inactive=include_inactive)
        if not product:
            raise NotFoundError("product", product_id)
        return product

    def list(
        self,
        category: Optional[str] = None,
        name: Optional[str] = None,
        sort: Optional[str] = None,
        page: int = 1,
        limit: Optional[int] = None,
        include_inactive: bool = False,
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if not include_inactive:
            query["is_active"] = True
        if category:
            query["category"] = category
        if name:
            query["name"] = {"$regex": name, "$options": "i"}
        return paginate(self.db, COLLECTION, query, page=page, limit=limit, sort=SORTS.get(sort))

    def create(self, payload: ProductCreate) -> dict:
        product_id = create_document(self.db, COLLECTION, payload)
        logger.info("product created", product_id=product_id)
        return self.get(product_id)

    def update(self, product_id: str, payload: ProductUpdate) -> dict:
        changes = payload.model_dump(exclude_unset=True)
        oid = to_object_id(product_id, "product")
        if not changes:
            return self.get(product_id, include_inactive=True)
        changes["updated_at"] = now()
        with storage_errors("update product"):
            doc = self.collection.find_one_and_update(
                {"_id": oid},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            raise NotFoundError("product", product_id)
        logger.info("product updated", product_id=product_id, fields=sorted(changes))
        return serialize(doc)

    def deactivate(self, product_id: str) -> dict:
        """Move a product from active to inactive. This is the only way out of active."""
        oid = to_object_id(product_id, "product")
        with storage_errors("deactivate product"):
            doc = self.collection.find_one_and_update(
                {"_id": oid, "is_active": True},
                {"$set": {"is_active": False, "updated_at": now()}},
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            raise NotFoundError("product", product_id)
        logger.info("product deactivated", product_id=product_id)
        return serialize(doc)

    def decrement_stock(self, product_id: str, amount: int, session=None) -> dict:
        """Take ``amount`` units off the shelf, only if they are all still there.

        The guard and the decrement run as one conditional update, so two
        purchases racing for the last units cannot both succeed.
        """
        oid = to_object_id(product_id, "product")
        with storage_errors("decrement stock"):
            doc = self.collection.find_one_and_update(
                {"_id": oid, "is_active": True, "stock": {"$gte": amount}},
                {"$inc": {"stock": -amount}, "$set": {"updated_at": now()}},
                return_document=ReturnDocument.AFTER,
                **session_kwargs(session),
            )
        if doc is not None:
            return serialize(doc)

        current = self.find_by_id(product_id, session=session)
        if not current or not current.get("is_active"):
            raise InactiveProductError(product_id)
        logger.warning(
            "stock guard rejected decrement",
            product_id=product_id,
            requested=amount,
            available=current["stock"],
        )
        raise InsufficientStockError(product_id, amount, current["stock"])

    def restore_stock(self, product_id: str, amount: int, session=None) -> None:
        oid = to_object_id(product_id, "product")
        with storage_errors("restore stock"):
            self.collection.update_one(
                {"_id": oid},
                {"$inc": {"stock": amount}, "$set": {"updated_at": now()}},
                **session_kwargs(session),
            )
        logger.warning("stock restored", product_id=product_id, amount=amount)
