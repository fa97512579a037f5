from __future__ import annotations

import re
from dataclasses import asdict, fields
from typing import Any, List, Optional, Tuple, Type, TypeVar

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import DuplicateKeyError

from bookhub.logging import get_logger
from bookhub.storage.errors import ConstraintViolation, StaleWriteError
from bookhub.storage.models import (
    OTP,
    Book,
    Review,
    Session,
    User,
    UserAuthCredential,
    Verification,
    as_utc,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")

# Unique indexes on optional fields only apply to documents that carry a string value
_HAS_STRING = {"$type": "string"}


def _to_document(record: Any) -> dict:
    return asdict(record)


def _from_document(cls: Type[T], doc: Optional[dict]) -> Optional[T]:
    if not doc:
        return None
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in doc.items() if k in known})


def _duplicate_field(exc: DuplicateKeyError) -> str:
    details = exc.details or {}
    key_pattern = details.get("keyPattern") or {}
    if key_pattern:
        return next(iter(key_pattern))
    return "unknown"


class MongoStore:
    """MongoDB-backed document store.

    One collection per record type; the natural key of each record is also
    stored as ``_id`` so lookups by key hit the primary index.
    """

    def __init__(
        self,
        mongo_url: str,
        database: str = "bookhub",
        *,
        otp_ttl_seconds: int = 300,
        server_selection_timeout_ms: int = 3000,
    ) -> None:
        self.client = MongoClient(
            mongo_url,
            serverSelectionTimeoutMS=server_selection_timeout_ms,
            tz_aware=True,
        )
        self.client.admin.command("ping")
        db = self.client[database]
        self.users = db["users"]
        self.credentials = db["credentials"]
        self.sessions = db["sessions"]
        self.otps = db["otps"]
        self.verifications = db["verifications"]
        self.books = db["books"]
        self.reviews = db["reviews"]
        self.otp_ttl_seconds = otp_ttl_seconds
        self._ensure_indexes()
        logger.info("mongo_store_connected", database=database)

    def _ensure_indexes(self) -> None:
        self.users.create_index(
            "email", unique=True, partialFilterExpression={"email": _HAS_STRING}
        )
        self.users.create_index(
            "phone", unique=True, partialFilterExpression={"phone": _HAS_STRING}
        )
        self.sessions.create_index("user_id", unique=True)
        self.otps.create_index("code", unique=True)
        self.otps.create_index("created_at", expireAfterSeconds=self.otp_ttl_seconds)
        self.reviews.create_index(
            [("book_id", ASCENDING), ("user_id", ASCENDING)], unique=True
        )
        self.books.create_index([("created_at", ASCENDING)])

    def ping(self) -> bool:
        self.client.admin.command("ping")
        return True

    def close(self) -> None:
        self.client.close()

    # -- users -------------------------------------------------------------

    def create_user(self, user: User) -> User:
        doc = _to_document(user)
        doc["_id"] = user.id
        try:
            self.users.insert_one(doc)
        except DuplicateKeyError as exc:
            field = _duplicate_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return user

    def save_user(self, user: User) -> User:
        try:
            result = self.users.update_one({"_id": user.id}, {"$set": _to_document(user)})
        except DuplicateKeyError as exc:
            field = _duplicate_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        if result.matched_count == 0:
            raise ConstraintViolation("user not found", {"user_id": user.id})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return _from_document(User, self.users.find_one({"_id": user_id}))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return _from_document(User, self.users.find_one({"email": email}))

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        return _from_document(User, self.users.find_one({"phone": phone}))

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        if not self.users.count_documents({"_id": user_id}, limit=1):
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
        now = utcnow()
        self.credentials.update_one(
            {"_id": user_id},
            {
                "$set": {
                    "user_id": user_id,
                    "password_hash": password_hash,
                    "password_algo": password_algo,
                    "last_updated_at": now,
                },
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
        )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        cred = _from_document(UserAuthCredential, self.credentials.find_one({"_id": user_id}))
        if not cred or not cred.password_hash:
            return None
        return cred.password_hash, cred.password_algo or ""

    # -- sessions ----------------------------------------------------------

    def get_session(self, user_id: str) -> Optional[Session]:
        return _from_document(Session, self.sessions.find_one({"_id": user_id}))

    def save_session(self, session: Session, *, expected_version: Optional[int]) -> Session:
        """Conditionally write ``session``; ``expected_version=None`` means create."""
        doc = _to_document(session)
        doc["version"] = (expected_version or 0) + 1
        doc["updated_at"] = utcnow()
        if expected_version is None:
            doc["_id"] = session.user_id
            try:
                self.sessions.insert_one(doc)
            except DuplicateKeyError as exc:
                raise StaleWriteError(session.user_id, None, -1) from exc
        else:
            doc.pop("created_at", None)
            result = self.sessions.update_one(
                {"_id": session.user_id, "version": expected_version}, {"$set": doc}
            )
            if result.matched_count == 0:
                current = self.sessions.find_one({"_id": session.user_id}, {"version": 1})
                raise StaleWriteError(
                    session.user_id, expected_version, current.get("version") if current else None
                )
        return self.get_session(session.user_id) or session

    # -- one-time codes ----------------------------------------------------

    def _live(self, otp: Optional[OTP]) -> Optional[OTP]:
        # The TTL monitor runs about once a minute, so expiry is also enforced on read
        if otp and otp.is_expired(self.otp_ttl_seconds):
            self.otps.delete_one({"_id": otp.code})
            return None
        return otp

    def create_otp(self, otp: OTP) -> OTP:
        doc = _to_document(otp)
        doc["_id"] = otp.code
        doc["created_at"] = as_utc(otp.created_at)
        try:
            self.otps.insert_one(doc)
        except DuplicateKeyError as exc:
            raise ConstraintViolation("otp code already exists", {"field": "code"}) from exc
        return otp

    def get_otp(self, code: str) -> Optional[OTP]:
        return self._live(_from_document(OTP, self.otps.find_one({"_id": code})))

    def pop_otp(self, code: str) -> Optional[OTP]:
        return self._live(_from_document(OTP, self.otps.find_one_and_delete({"_id": code})))

    # -- identity verification ---------------------------------------------

    def save_verification(self, verification: Verification) -> Verification:
        doc = _to_document(verification)
        self.verifications.update_one(
            {"_id": verification.user_id}, {"$set": doc}, upsert=True
        )
        return verification

    def get_verification(self, user_id: str) -> Optional[Verification]:
        return _from_document(Verification, self.verifications.find_one({"_id": user_id}))

    # -- catalog -----------------------------------------------------------

    def create_book(self, book: Book) -> Book:
        doc = _to_document(book)
        doc["_id"] = book.id
        self.books.insert_one(doc)
        return book

    def get_book(self, book_id: str) -> Optional[Book]:
        return _from_document(Book, self.books.find_one({"_id": book_id}))

    def list_books(
        self,
        *,
        author: Optional[str] = None,
        genre: Optional[str] = None,
        skip: int = 0,
        limit: int = 10,
    ) -> Tuple[List[Book], int]:
        query: dict = {}
        if author:
            query["author"] = {"$regex": re.escape(author), "$options": "i"}
        if genre:
            query["genre"] = {"$regex": re.escape(genre), "$options": "i"}
        total = self.books.count_documents(query)
        cursor = self.books.find(query).sort("created_at", ASCENDING).skip(skip).limit(limit)
        return [_from_document(Book, doc) for doc in cursor], total

    def search_books(self, keyword: str, *, limit: int = 20) -> List[Book]:
        pattern = {"$regex": re.escape(keyword), "$options": "i"}
        cursor = (
            self.books.find({"$or": [{"title": pattern}, {"author": pattern}]})
            .sort("created_at", ASCENDING)
            .limit(limit)
        )
        return [_from_document(Book, doc) for doc in cursor]

    def add_book_review(self, book_id: str, review_id: str) -> None:
        self.books.update_one({"_id": book_id}, {"$addToSet": {"review_ids": review_id}})

    def remove_book_review(self, book_id: str, review_id: str) -> None:
        self.books.update_one({"_id": book_id}, {"$pull": {"review_ids": review_id}})

    def create_review(self, review: Review) -> Review:
        doc = _to_document(review)
        doc["_id"] = review.id
        try:
            self.reviews.insert_one(doc)
        except DuplicateKeyError as exc:
            raise ConstraintViolation(
                "review already exists", {"field": "user_id", "book_id": review.book_id}
            ) from exc
        return review

    def get_review(self, review_id: str) -> Optional[Review]:
        return _from_document(Review, self.reviews.find_one({"_id": review_id}))

    def find_review(self, book_id: str, user_id: str) -> Optional[Review]:
        return _from_document(
            Review, self.reviews.find_one({"book_id": book_id, "user_id": user_id})
        )

    def save_review(self, review: Review) -> Review:
        review.updated_at = utcnow()
        result = self.reviews.update_one({"_id": review.id}, {"$set": _to_document(review)})
        if result.matched_count == 0:
            raise ConstraintViolation("review not found", {"review_id": review.id})
        return review

    def delete_review(self, review_id: str) -> bool:
        return self.reviews.delete_one({"_id": review_id}).deleted_count > 0

    def list_reviews(
        self, book_id: str, *, skip: int = 0, limit: int = 5
    ) -> Tuple[List[Review], int]:
        query = {"book_id": book_id}
        total = self.reviews.count_documents(query)
        cursor = self.reviews.find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)
        return [_from_document(Review, doc) for doc in cursor], total

    def average_rating(self, book_id: str) -> Optional[float]:
        pipeline = [
            {"$match": {"book_id": book_id}},
            {"$group": {"_id": None, "avg": {"$avg": "$rating"}}},
        ]
        for row in self.reviews.aggregate(pipeline):
            return row.get("avg")
        return None
