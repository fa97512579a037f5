from __future__ import annotations

import uuid
from typing import List, Optional

from bookhub.logging import get_logger
from bookhub.service.errors import ForbiddenError, NotFoundError, ValidationError
from bookhub.storage.errors import ConstraintViolation
from bookhub.storage.models import Book, Review

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 10
DEFAULT_REVIEW_PAGE_SIZE = 5
MAX_PAGE_SIZE = 100


def _parse_id(raw: str, message: str) -> str:
    try:
        return str(uuid.UUID(str(raw)))
    except ValueError as exc:
        raise ValidationError(message) from exc


def _page_window(page: int, limit: int) -> tuple[int, int]:
    page = max(1, int(page))
    limit = max(1, min(int(limit), MAX_PAGE_SIZE))
    return (page - 1) * limit, limit


def book_to_dict(book: Book) -> dict:
    return {
        "id": book.id,
        "title": book.title,
        "author": book.author,
        "genre": book.genre,
        "description": book.description,
        "published_year": book.published_year,
        "created_by": book.created_by,
        "review_count": len(book.review_ids),
        "created_at": book.created_at.isoformat(),
    }


def review_to_dict(review: Review) -> dict:
    return {
        "id": review.id,
        "book_id": review.book_id,
        "user_id": review.user_id,
        "rating": review.rating,
        "comment": review.comment,
        "created_at": review.created_at.isoformat(),
        "updated_at": review.updated_at.isoformat(),
    }


class CatalogService:
    """Books and their reviews; one review per user per book."""

    def __init__(self, store) -> None:
        self.store = store

    def create_book(
        self,
        *,
        title: str,
        author: str,
        genre: Optional[str] = None,
        description: Optional[str] = None,
        published_year: Optional[int] = None,
        created_by: Optional[str] = None,
    ) -> Book:
        book = Book(
            id=str(uuid.uuid4()),
            title=title,
            author=author,
            genre=genre,
            description=description,
            published_year=published_year,
            created_by=created_by,
        )
        book = self.store.create_book(book)
        logger.info("book_created", book_id=book.id)
        return book

    def list_books(
        self,
        *,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        author: Optional[str] = None,
        genre: Optional[str] = None,
    ) -> dict:
        skip, limit = _page_window(page, limit)
        books, total = self.store.list_books(author=author, genre=genre, skip=skip, limit=limit)
        return {
            "books": [book_to_dict(b) for b in books],
            "page": skip // limit + 1,
            "limit": limit,
            "total": total,
        }

    def get_book(
        self, book_id: str, *, page: int = 1, limit: int = DEFAULT_REVIEW_PAGE_SIZE
    ) -> dict:
        book_id = _parse_id(book_id, "Invalid book ID")
        book = self.store.get_book(book_id)
        if not book:
            raise NotFoundError("Book not found")
        skip, limit = _page_window(page, limit)
        reviews, total = self.store.list_reviews(book_id, skip=skip, limit=limit)
        average = self.store.average_rating(book_id)
        return {
            "book": book_to_dict(book),
            "average_rating": round(average, 2) if average is not None else 0,
            "reviews": [review_to_dict(r) for r in reviews],
            "page": skip // limit + 1,
            "limit": limit,
            "total_reviews": total,
        }

    def add_review(
        self, book_id: str, user_id: str, *, rating: int, comment: Optional[str] = None
    ) -> Review:
        book_id = _parse_id(book_id, "Invalid book ID")
        if not self.store.get_book(book_id):
            raise NotFoundError("Book not found")
        if self.store.find_review(book_id, user_id):
            raise ValidationError("User has already reviewed this book")
        review = Review(
            id=str(uuid.uuid4()), book_id=book_id, user_id=user_id, rating=rating, comment=comment
        )
        try:
            review = self.store.create_review(review)
        except ConstraintViolation as exc:
            raise ValidationError("User has already reviewed this book") from exc
        # Not transactional with the review insert; a crash here leaves the
        # review off the book's list until the next write
        self.store.add_book_review(book_id, review.id)
        logger.info("review_added", book_id=book_id, review_id=review.id, user_id=user_id)
        return review

    def _owned_review(self, review_id: str, user_id: str, action: str) -> Review:
        review_id = _parse_id(review_id, "Invalid review ID")
        review = self.store.get_review(review_id)
        if not review:
            raise NotFoundError("Review not found")
        if review.user_id != user_id:
            raise ForbiddenError(f"You can only {action} your own review")
        return review

    def update_review(
        self,
        review_id: str,
        user_id: str,
        *,
        rating: Optional[int] = None,
        comment: Optional[str] = None,
    ) -> Review:
        review = self._owned_review(review_id, user_id, "update")
        if rating is not None:
            review.rating = rating
        if comment is not None:
            review.comment = comment
        return self.store.save_review(review)

    def delete_review(self, review_id: str, user_id: str) -> None:
        review = self._owned_review(review_id, user_id, "delete")
        self.store.delete_review(review.id)
        self.store.remove_book_review(review.book_id, review.id)
        logger.info("review_deleted", review_id=review.id, user_id=user_id)

    def search_books(self, query: str) -> List[dict]:
        query = (query or "").strip()
        if not query:
            raise ValidationError("Search query is required")
        return [book_to_dict(b) for b in self.store.search_books(query)]
