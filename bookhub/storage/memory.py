from __future__ import annotations

import copy
import json
import re
import threading
from dataclasses import fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

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
    utcnow,
)

T = TypeVar("T")


class MemoryStore:
    """In-memory document store used for development and tests.

    Every mutation is snapshotted to ``<fs_root>/state/memory_store.json`` so a
    restarted dev server keeps its users. Reads hand out copies so callers
    cannot mutate stored records without going through a save method.
    """

    def __init__(self, fs_root: str = "/tmp/bookhub", *, otp_ttl_seconds: int = 300) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserAuthCredential] = {}
        self.sessions: Dict[str, Session] = {}
        self.otps: Dict[str, OTP] = {}
        self.verifications: Dict[str, Verification] = {}
        self.books: Dict[str, Book] = {}
        self.reviews: Dict[str, Review] = {}
        self.otp_ttl_seconds = otp_ttl_seconds
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def ping(self) -> bool:
        return True

    # -- users -------------------------------------------------------------

    def _check_user_unique(self, user: User) -> None:
        for existing in self.users.values():
            if existing.id == user.id:
                continue
            if user.email and existing.email == user.email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if user.phone and existing.phone == user.phone:
                raise ConstraintViolation("phone already exists", {"field": "phone"})

    def create_user(self, user: User) -> User:
        with self._data_lock:
            if user.id in self.users:
                raise ConstraintViolation("user already exists", {"field": "id"})
            self._check_user_unique(user)
            self.users[user.id] = copy.deepcopy(user)
            self._persist_state()
            return copy.deepcopy(user)

    def save_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user.id})
            self._check_user_unique(user)
            self.users[user.id] = copy.deepcopy(user)
            self._persist_state()
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.email and user.email == email:
                    return copy.deepcopy(user)
            return None

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.phone and user.phone == phone:
                    return copy.deepcopy(user)
            return None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            existing = self.credentials.get(user_id)
            self.credentials[user_id] = UserAuthCredential(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=password_algo,
                created_at=existing.created_at if existing else utcnow(),
                last_updated_at=utcnow(),
            )
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            if not cred or not cred.password_hash:
                return None
            return cred.password_hash, cred.password_algo or ""

    # -- sessions ----------------------------------------------------------

    def get_session(self, user_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(user_id)
            return copy.deepcopy(session) if session else None

    def save_session(self, session: Session, *, expected_version: Optional[int]) -> Session:
        """Conditionally write ``session``.

        ``expected_version=None`` means the record must not exist yet.
        """
        with self._data_lock:
            current = self.sessions.get(session.user_id)
            current_version = current.version if current else None
            if current_version != expected_version:
                raise StaleWriteError(session.user_id, expected_version, current_version)
            stored = copy.deepcopy(session)
            stored.version = (expected_version or 0) + 1
            stored.updated_at = utcnow()
            if current:
                stored.created_at = current.created_at
            self.sessions[session.user_id] = stored
            self._persist_state()
            return copy.deepcopy(stored)

    # -- one-time codes ----------------------------------------------------

    def _live_otp(self, code: str) -> Optional[OTP]:
        otp = self.otps.get(code)
        if otp and otp.is_expired(self.otp_ttl_seconds):
            del self.otps[code]
            self._persist_state()
            return None
        return otp

    def create_otp(self, otp: OTP) -> OTP:
        with self._data_lock:
            if self._live_otp(otp.code):
                raise ConstraintViolation("otp code already exists", {"field": "code"})
            self.otps[otp.code] = copy.deepcopy(otp)
            self._persist_state()
            return otp

    def get_otp(self, code: str) -> Optional[OTP]:
        with self._data_lock:
            otp = self._live_otp(code)
            return copy.deepcopy(otp) if otp else None

    def pop_otp(self, code: str) -> Optional[OTP]:
        with self._data_lock:
            otp = self._live_otp(code)
            if not otp:
                return None
            del self.otps[code]
            self._persist_state()
            return otp

    # -- identity verification ---------------------------------------------

    def save_verification(self, verification: Verification) -> Verification:
        with self._data_lock:
            self.verifications[verification.user_id] = copy.deepcopy(verification)
            self._persist_state()
            return verification

    def get_verification(self, user_id: str) -> Optional[Verification]:
        with self._data_lock:
            found = self.verifications.get(user_id)
            return copy.deepcopy(found) if found else None

    # -- catalog -----------------------------------------------------------

    def create_book(self, book: Book) -> Book:
        with self._data_lock:
            self.books[book.id] = copy.deepcopy(book)
            self._persist_state()
            return copy.deepcopy(book)

    def get_book(self, book_id: str) -> Optional[Book]:
        with self._data_lock:
            book = self.books.get(book_id)
            return copy.deepcopy(book) if book else None

    def list_books(
        self,
        *,
        author: Optional[str] = None,
        genre: Optional[str] = None,
        skip: int = 0,
        limit: int = 10,
    ) -> Tuple[List[Book], int]:
        with self._data_lock:
            matches = list(self.books.values())
            if author:
                needle = author.lower()
                matches = [b for b in matches if needle in b.author.lower()]
            if genre:
                needle = genre.lower()
                matches = [b for b in matches if b.genre and needle in b.genre.lower()]
            matches.sort(key=lambda b: b.created_at)
            page = matches[skip : skip + limit]
            return [copy.deepcopy(b) for b in page], len(matches)

    def search_books(self, keyword: str, *, limit: int = 20) -> List[Book]:
        pattern = re.compile(re.escape(keyword), re.IGNORECASE)
        with self._data_lock:
            matches = [
                b
                for b in self.books.values()
                if pattern.search(b.title) or pattern.search(b.author)
            ]
            matches.sort(key=lambda b: b.created_at)
            return [copy.deepcopy(b) for b in matches[:limit]]

    def add_book_review(self, book_id: str, review_id: str) -> None:
        with self._data_lock:
            book = self.books.get(book_id)
            if book and review_id not in book.review_ids:
                book.review_ids.append(review_id)
                self._persist_state()

    def remove_book_review(self, book_id: str, review_id: str) -> None:
        with self._data_lock:
            book = self.books.get(book_id)
            if book and review_id in book.review_ids:
                book.review_ids.remove(review_id)
                self._persist_state()

    def create_review(self, review: Review) -> Review:
        with self._data_lock:
            for existing in self.reviews.values():
                if existing.book_id == review.book_id and existing.user_id == review.user_id:
                    raise ConstraintViolation(
                        "review already exists", {"field": "user_id", "book_id": review.book_id}
                    )
            self.reviews[review.id] = copy.deepcopy(review)
            self._persist_state()
            return copy.deepcopy(review)

    def get_review(self, review_id: str) -> Optional[Review]:
        with self._data_lock:
            review = self.reviews.get(review_id)
            return copy.deepcopy(review) if review else None

    def find_review(self, book_id: str, user_id: str) -> Optional[Review]:
        with self._data_lock:
            for review in self.reviews.values():
                if review.book_id == book_id and review.user_id == user_id:
                    return copy.deepcopy(review)
            return None

    def save_review(self, review: Review) -> Review:
        with self._data_lock:
            if review.id not in self.reviews:
                raise ConstraintViolation("review not found", {"review_id": review.id})
            review.updated_at = utcnow()
            self.reviews[review.id] = copy.deepcopy(review)
            self._persist_state()
            return copy.deepcopy(review)

    def delete_review(self, review_id: str) -> bool:
        with self._data_lock:
            removed = self.reviews.pop(review_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def list_reviews(
        self, book_id: str, *, skip: int = 0, limit: int = 5
    ) -> Tuple[List[Review], int]:
        with self._data_lock:
            matches = [r for r in self.reviews.values() if r.book_id == book_id]
            matches.sort(key=lambda r: r.created_at, reverse=True)
            page = matches[skip : skip + limit]
            return [copy.deepcopy(r) for r in page], len(matches)

    def average_rating(self, book_id: str) -> Optional[float]:
        with self._data_lock:
            ratings = [r.rating for r in self.reviews.values() if r.book_id == book_id]
            if not ratings:
                return None
            return sum(ratings) / len(ratings)

    # -- snapshot persistence ----------------------------------------------

    # collection name -> (record type, key field)
    _COLLECTIONS: Dict[str, Tuple[Type[Any], str]] = {
        "users": (User, "id"),
        "credentials": (UserAuthCredential, "user_id"),
        "sessions": (Session, "user_id"),
        "otps": (OTP, "code"),
        "verifications": (Verification, "user_id"),
        "books": (Book, "id"),
        "reviews": (Review, "id"),
    }

    @staticmethod
    def _serialize_record(record: Any) -> dict:
        payload: dict = {}
        for f in fields(record):
            value = getattr(record, f.name)
            if isinstance(value, datetime):
                value = {"__dt__": value.isoformat()}
            payload[f.name] = value
        return payload

    @staticmethod
    def _deserialize_record(cls: Type[T], data: dict) -> T:
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in known:
                continue
            if isinstance(value, dict) and "__dt__" in value:
                value = datetime.fromisoformat(value["__dt__"])
            kwargs[key] = value
        return cls(**kwargs)

    def _persist_state(self) -> None:
        state = {
            name: [self._serialize_record(r) for r in getattr(self, name).values()]
            for name in self._COLLECTIONS
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except (OSError, TypeError) as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        for name, (cls, key_field) in self._COLLECTIONS.items():
            records = [self._deserialize_record(cls, raw) for raw in data.get(name, [])]
            setattr(self, name, {getattr(r, key_field): r for r in records})
        return True
