"""
Accounts and bearer-token sessions.

This is the identity side of the store: it hands the rest of the app an
authenticated user whose id is used as the cart and order owner.
"""

import secrets
from typing import Any, Dict, Optional

from fastapi import Depends, Header
from passlib.context import CryptContext
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import settings
from database import create_document, get_db, now, paginate, serialize, storage_errors, to_object_id
from errors import AuthError, DuplicateError, ForbiddenError, NotFoundError
from logging_config import get_logger
from schemas import AdminUserUpdate, ProfileUpdate, Role, User

logger = get_logger(__name__)

# Password hashing
pwd_context = CryptContext(schemes=settings.password_schemes, deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


def create_token() -> str:
    return f"tok_{secrets.token_urlsafe(32)}"


class Accounts:
    def __init__(self, database: Database):
        self.db = database

    def signup(self, name: str, email: str, password: str) -> dict:
        email = email.lower()
        role = Role.ADMIN if email in settings.admin_emails else Role.USER
        user_doc = User(name=name, email=email, password_hash=hash_password(password), role=role)
        try:
            user_id = create_document(self.db, "user", user_doc)
        except DuplicateKeyError:
            raise DuplicateError("user", "email", email)
        logger.info("user registered", user_id=user_id, role=role.value)
        return self.get_user(user_id)

    def get_user(self, user_id: str) -> dict:
        with storage_errors("find user"):
            user = self.db["user"].find_one({"_id": to_object_id(user_id, "user")})
        if not user:
            raise NotFoundError("user", user_id)
        return serialize(user)

    def authenticate(self, email: str, password: str) -> dict:
        with storage_errors("find user"):
            user = self.db["user"].find_one({"email": email.lower()})
        if not user or not user.get("is_active", True):
            raise AuthError("Invalid credentials")
        if not verify_password(password, user.get("password_hash", "")):
            logger.warning("failed login", email=email.lower())
            raise AuthError("Invalid credentials")
        return serialize(user)

    def open_session(self, user_id: str) -> str:
        token = create_token()
        create_document(self.db, "session", {"token": token, "user_id": user_id})
        return token

    def login(self, email: str, password: str) -> tuple:
        user = self.authenticate(email, password)
        token = self.open_session(user["id"])
        logger.info("user logged in", user_id=user["id"])
        return user, token

    def logout(self, token: str) -> None:
        with storage_errors("delete session"):
            self.db["session"].delete_one({"token": token})

    def resolve(self, token: str) -> Optional[dict]:
        with storage_errors("find session"):
            session = self.db["session"].find_one({"token": token})
        if not session:
            return None
        try:
            user = self.get_user(session["user_id"])
        except NotFoundError:
            return None
        if not user.get("is_active", True):
            return None
        with storage_errors("touch session"):
            self.db["session"].update_one({"_id": session["_id"]}, {"$set": {"updated_at": now()}})
        return user

    def list_users(
        self,
        role: Optional[str] = None,
        email: Optional[str] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if role:
            query["role"] = role
        if email:
            query["email"] = {"$regex": email, "$options": "i"}
        return paginate(self.db, "user", query, page=page, limit=limit, sort=[("email", 1)])

    def _apply(self, user_id: str, changes: Dict[str, Any]) -> dict:
        oid = to_object_id(user_id, "user")
        if not changes:
            return self.get_user(user_id)
        if "email" in changes:
            changes["email"] = changes["email"].lower()
        changes["updated_at"] = now()
        try:
            with storage_errors("update user"):
                doc = self.db["user"].find_one_and_update(
                    {"_id": oid},
                    {"$set": changes},
                    return_document=ReturnDocument.AFTER,
                )
        except DuplicateKeyError:
            raise DuplicateError("user", "email", changes["email"])
        if doc is None:
            raise NotFoundError("user", user_id)
        logger.info("user updated", user_id=user_id, fields=sorted(changes))
        return serialize(doc)

    def update_profile(self, user_id: str, payload: ProfileUpdate) -> dict:
        """Self-service edit. Only name and email; role stays as it is."""
        return self._apply(user_id, payload.model_dump(exclude_unset=True, exclude_none=True))

    def admin_update(self, user_id: str, payload: AdminUserUpdate) -> dict:
        return self._apply(user_id, payload.model_dump(exclude_unset=True, exclude_none=True))

    def deactivate(self, user_id: str) -> dict:
        """Disable an account and drop its open sessions."""
        oid = to_object_id(user_id, "user")
        with storage_errors("deactivate user"):
            doc = self.db["user"].find_one_and_update(
                {"_id": oid, "is_active": True},
                {"$set": {"is_active": False, "updated_at": now()}},
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            raise NotFoundError("user", user_id)
        with storage_errors("delete sessions"):
            self.db["session"].delete_many({"user_id": user_id})
        logger.info("user deactivated", user_id=user_id)
        return serialize(doc)


def bearer_token(authorization: Optional[str] = Header(None)) -> str:
    if not authorization:
        raise AuthError()
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthError("Unauthorized: expected a bearer token")
    return token.strip()


def current_user(token: str = Depends(bearer_token), database: Database = Depends(get_db)) -> dict:
    user = Accounts(database).resolve(token)
    if not user:
        raise AuthError("Unauthorized: session expired or unknown")
    return user


def require_admin(user: dict = Depends(current_user)) -> dict:
    if user.get("role") != Role.ADMIN.value:
        raise ForbiddenError()
    return user
