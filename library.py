"""
Library operations on top of synchronized pages

Books, needs and donation requests each live in one page whose state is the
full list. Every operation edits a copy of that list and saves it whole.
"""
import asyncio
import logging
from typing import Dict, List, Literal, TypeVar

from pydantic import ValidationError

from page_state import PageState, PageStateRegistry
from schemas import (
    Book,
    BookCreate,
    BookUpdate,
    CollectionNeed,
    DonationRequest,
    DonationRequestCreate,
    DonationStatus,
    NeedCreate,
    new_id,
    utc_now,
)

logger = logging.getLogger("ketab.library")

Role = Literal["librarian", "guest"]
R = TypeVar("R", Book, CollectionNeed, DonationRequest)


class LibraryError(Exception):
    pass


class NotFoundError(LibraryError):
    pass


class InvalidTransitionError(LibraryError):
    pass


class PersistenceError(LibraryError):
    pass


class InvalidUpdateError(LibraryError):
    pass


def _matches(term: str, title: str, authors: List[str], publisher) -> bool:
    term = term.lower()
    return (
        term in title.lower()
        or any(term in a.lower() for a in authors)
        or bool(publisher and term in publisher.lower())
    )


class Library:
    def __init__(self, registry: PageStateRegistry):
        self.books: PageState[List[Book]] = registry.page("books", schema=List[Book])
        self.needs: PageState[List[CollectionNeed]] = registry.page(
            "needs", schema=List[CollectionNeed]
        )
        self.donations: PageState[List[DonationRequest]] = registry.page(
            "donationRequests", schema=List[DonationRequest]
        )

    async def load(self) -> None:
        pages = (self.books, self.needs, self.donations)
        await asyncio.gather(*(p.load() for p in pages))
        failed = [f"{p.identifier}: {p.error}" for p in pages if p.error]
        if failed:
            raise PersistenceError("; ".join(failed))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _items(page: PageState) -> list:
        if page.value is None:
            # saving on top of an unloaded page would wipe the stored list
            raise PersistenceError(f"Page {page.identifier} is not loaded")
        return list(page.value)

    @staticmethod
    async def _commit(page: PageState, items: list) -> None:
        if not await page.save(items):
            raise PersistenceError(page.error)

    @staticmethod
    def _index(items: List[R], item_id: str) -> int:
        for i, item in enumerate(items):
            if item.id == item_id:
                return i
        raise NotFoundError(item_id)

    # ------------------------------------------------------------------
    # Books
    # ------------------------------------------------------------------
    async def add_book(self, data: BookCreate) -> Book:
        book = Book(**data.model_dump(), id=new_id(), created_at=utc_now())
        items = self._items(self.books)
        items.append(book)
        await self._commit(self.books, items)
        return book

    async def update_book(self, book_id: str, changes: BookUpdate) -> Book:
        items = self._items(self.books)
        idx = self._index(items, book_id)
        merged = {
            **items[idx].model_dump(by_alias=True),
            **changes.model_dump(by_alias=True, exclude_unset=True),
        }
        try:
            items[idx] = Book.model_validate(merged)
        except ValidationError as e:
            raise InvalidUpdateError(str(e)) from e
        await self._commit(self.books, items)
        return items[idx]

    async def delete_book(self, book_id: str) -> None:
        items = [b for b in self._items(self.books) if b.id != book_id]
        await self._commit(self.books, items)

    def search_books(self, term: str) -> List[Book]:
        books = self.books.value or []
        return [b for b in books if _matches(term, b.title, b.authors, b.publisher)]

    # ------------------------------------------------------------------
    # Needs
    # ------------------------------------------------------------------
    async def add_need(self, data: NeedCreate) -> CollectionNeed:
        need = CollectionNeed(**data.model_dump(), id=new_id(), created_at=utc_now())
        items = self._items(self.needs)
        items.append(need)
        await self._commit(self.needs, items)
        return need

    async def delete_need(self, need_id: str) -> None:
        items = [n for n in self._items(self.needs) if n.id != need_id]
        await self._commit(self.needs, items)

    def search_needs(self, term: str) -> List[CollectionNeed]:
        needs = self.needs.value or []
        return [n for n in needs if _matches(term, n.title, n.authors, n.publisher)]

    # ------------------------------------------------------------------
    # Donation requests
    # ------------------------------------------------------------------
    async def submit_donation(self, data: DonationRequestCreate) -> DonationRequest:
        request = DonationRequest(
            **data.model_dump(), id=new_id(), status="pending", created_at=utc_now()
        )
        items = self._items(self.donations)
        items.append(request)
        await self._commit(self.donations, items)
        return request

    async def approve_donation(self, request_id: str) -> DonationRequest:
        return await self._decide(request_id, "approved")

    async def reject_donation(self, request_id: str) -> DonationRequest:
        return await self._decide(request_id, "rejected")

    async def _decide(self, request_id: str, status: DonationStatus) -> DonationRequest:
        items = self._items(self.donations)
        idx = self._index(items, request_id)
        if items[idx].status != "pending":
            raise InvalidTransitionError(
                f"Request {request_id} is already {items[idx].status}"
            )
        items[idx] = items[idx].model_copy(update={"status": status})
        await self._commit(self.donations, items)
        logger.info("Donation request %s %s", request_id, status)
        return items[idx]

    def visible_donations(self, role: Role) -> List[DonationRequest]:
        requests = self.donations.value or []
        if role == "librarian":
            return list(requests)
        return [r for r in requests if r.status == "approved"]

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------
    def stats(self) -> Dict[str, int]:
        books = self.books.value or []
        needs = self.needs.value or []
        return {
            "titles": len(books),
            "copies": sum(b.quantity for b in books),
            "needs": len(needs),
            "high_priority": sum(1 for n in needs if n.priority == "high"),
        }
