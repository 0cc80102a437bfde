import asyncio

import pytest

from database import InMemoryDocumentClient
from library import (
    InvalidTransitionError,
    InvalidUpdateError,
    Library,
    NotFoundError,
    PersistenceError,
)
from page_state import PAGES_COLLECTION, PageStateRegistry
from schemas import BookCreate, BookUpdate, DonationRequestCreate, NeedCreate, UserInfo

LIBRARIAN = UserInfo(name="ketab", email="unknown@example.com")


def _library(client=None) -> Library:
    library = Library(PageStateRegistry(client or InMemoryDocumentClient(), LIBRARIAN))
    asyncio.run(library.load())
    return library


def _book(title="Dune", authors=("Frank Herbert",), publisher="Chilton", quantity=2):
    return BookCreate(
        title=title,
        authors=list(authors),
        publisher=publisher,
        publish_year=1965,
        quantity=quantity,
    )


def test_book_flow_persists_whole_list():
    client = InMemoryDocumentClient()
    library = _library(client)

    dune = asyncio.run(library.add_book(_book()))
    emma = asyncio.run(library.add_book(_book("Emma", ["Jane Austen"], "Murray", 1)))
    assert dune.id and dune.id != emma.id
    assert dune.created_at

    updated = asyncio.run(library.update_book(dune.id, BookUpdate(quantity=5)))
    assert updated.quantity == 5
    assert updated.title == "Dune"
    assert updated.created_at == dune.created_at

    asyncio.run(library.delete_book(emma.id))

    stored = client.get(PAGES_COLLECTION, "books")["state"]
    assert [b["title"] for b in stored] == ["Dune"]
    assert stored[0]["quantity"] == 5

    # a second session sees the same list
    again = _library(client)
    assert [b.id for b in again.books.value] == [dune.id]


def test_update_unknown_book_raises_and_keeps_list():
    client = InMemoryDocumentClient()
    library = _library(client)
    asyncio.run(library.add_book(_book()))
    before = client.get(PAGES_COLLECTION, "books")

    with pytest.raises(NotFoundError):
        asyncio.run(library.update_book("missing", BookUpdate(quantity=1)))
    assert client.get(PAGES_COLLECTION, "books") == before


def test_search_matches_title_author_and_publisher():
    library = _library()
    asyncio.run(library.add_book(_book()))
    asyncio.run(library.add_book(_book("Emma", ["Jane Austen"], "Murray")))

    assert [b.title for b in library.search_books("dUnE")] == ["Dune"]
    assert [b.title for b in library.search_books("austen")] == ["Emma"]
    assert [b.title for b in library.search_books("murr")] == ["Emma"]
    assert len(library.search_books("")) == 2


def test_needs_and_stats():
    library = _library()
    asyncio.run(library.add_book(_book(quantity=2)))
    asyncio.run(library.add_book(_book("Emma", quantity=3)))
    urgent = asyncio.run(library.add_need(NeedCreate(title="Atlas", priority="high")))
    asyncio.run(library.add_need(NeedCreate(title="Poems", authors=["Hafez"])))

    assert library.stats() == {"titles": 2, "copies": 5, "needs": 2, "high_priority": 1}
    assert [n.title for n in library.search_needs("hafez")] == ["Poems"]

    asyncio.run(library.delete_need(urgent.id))
    assert library.stats()["high_priority"] == 0


def test_donation_lifecycle():
    library = _library()
    req = asyncio.run(
        library.submit_donation(
            DonationRequestCreate(title="Shahnameh", author="Ferdowsi", contact="0912")
        )
    )
    other = asyncio.run(
        library.submit_donation(
            DonationRequestCreate(title="Masnavi", author="Rumi", contact="0935")
        )
    )
    assert req.status == "pending"
    assert library.visible_donations("guest") == []
    assert len(library.visible_donations("librarian")) == 2

    approved = asyncio.run(library.approve_donation(req.id))
    assert approved.status == "approved"
    assert [r.id for r in library.visible_donations("guest")] == [req.id]

    rejected = asyncio.run(library.reject_donation(other.id))
    assert rejected.status == "rejected"

    with pytest.raises(InvalidTransitionError):
        asyncio.run(library.reject_donation(req.id))
    with pytest.raises(NotFoundError):
        asyncio.run(library.approve_donation("missing"))


def test_unloaded_page_refuses_to_save():
    library = Library(PageStateRegistry(InMemoryDocumentClient(), LIBRARIAN))
    with pytest.raises(PersistenceError, match="not loaded"):
        asyncio.run(library.add_book(_book()))


def test_failed_save_raises_persistence_error():
    class ReadOnly(InMemoryDocumentClient):
        def put(self, collection, name, data):
            raise RuntimeError("quota exceeded")

    library = _library(ReadOnly())
    with pytest.raises(PersistenceError, match="quota exceeded"):
        asyncio.run(library.add_book(_book()))
    assert library.books.value == []


def test_update_with_invalid_merge_raises_and_keeps_list():
    client = InMemoryDocumentClient()
    library = _library(client)
    dune = asyncio.run(library.add_book(_book()))
    before = client.get(PAGES_COLLECTION, "books")

    with pytest.raises(InvalidUpdateError):
        asyncio.run(library.update_book(dune.id, BookUpdate(quantity=None)))
    assert client.get(PAGES_COLLECTION, "books") == before
    assert library.books.value[0].quantity == 2

    # the stored list still validates in a fresh session
    assert _library(client).books.value[0].quantity == 2


def test_library_types_a_page_opened_untyped():
    registry = PageStateRegistry(InMemoryDocumentClient(), LIBRARIAN)
    raw = {
        "id": "b1",
        "title": "Dune",
        "authors": ["Frank Herbert"],
        "publisher": "Chilton",
        "publishYear": 1965,
        "quantity": 2,
        "createdAt": "2024-01-01T00:00:00.000Z",
    }
    asyncio.run(registry.page("books").save([raw]))

    library = Library(registry)
    assert [b.title for b in library.search_books("dune")] == ["Dune"]
    assert library.stats()["copies"] == 2
