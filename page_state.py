"""
Page state synchronizer

A ``PageState`` mirrors one remote document into local state. The document
for page ``books`` lives at ``("pages", "books")`` and has the shape
``{state, lastModifiedBy, lastModifiedAt}``. Every save overwrites the whole
document (last write wins); nothing is merged and nothing is re-read after a
write.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from fastapi.encoders import jsonable_encoder
from pydantic import TypeAdapter

from database import DocumentClient
from schemas import StateDocument, UserInfo, utc_now

logger = logging.getLogger("ketab.page_state")

T = TypeVar("T")

PAGES_COLLECTION = "pages"
# pages whose empty default is a list rather than a mapping
COLLECTION_PAGES = frozenset({"books", "needs", "donationRequests"})


class _Absent:
    __slots__ = ()

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


# Marks a field that has no value at all, as opposed to an explicit None.
ABSENT = _Absent()


def strip_absent(data: Any, drop_none: bool = False) -> Any:
    """Copy ``data`` without ``ABSENT`` keys (and ``None`` ones with ``drop_none``)."""
    if isinstance(data, list):
        return [strip_absent(item, drop_none) for item in data]
    if isinstance(data, dict):
        return {
            k: strip_absent(v, drop_none)
            for k, v in data.items()
            if v is not ABSENT and not (drop_none and v is None)
        }
    return data


class PageState(Generic[T]):
    # ``strip`` also drops None fields, for stores that reject nulls

    def __init__(
        self,
        identifier: str,
        user: UserInfo,
        client: DocumentClient,
        *,
        empty: Optional[Callable[[], T]] = None,
        schema: Any = None,
        strip: bool = False,
    ):
        self.identifier = identifier
        self.user = user
        self._client = client
        self._empty = empty or (list if identifier in COLLECTION_PAGES else dict)
        self.schema = None
        self._adapter: Optional[TypeAdapter] = None
        self._strip = strip
        self._value: Optional[T] = None
        self._error: Optional[str] = None
        self._fetching = False
        self._pending_saves = 0
        self._save_lock = asyncio.Lock()
        if schema is not None:
            self.use_schema(schema)

    @property
    def value(self) -> Optional[T]:
        return self._value

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def loading(self) -> bool:
        return self._fetching or self._pending_saves > 0

    async def load(self) -> Optional[T]:
        self._fetching = True
        self._error = None
        try:
            doc = await asyncio.to_thread(self._client.get, PAGES_COLLECTION, self.identifier)
            if doc is None:
                self._value = self._empty()
            else:
                self._value = self._parse(doc.get("state"))
        except Exception as e:
            logger.error("Failed to load page %s: %s", self.identifier, e)
            self._error = str(e) or e.__class__.__name__
            self._value = None
        finally:
            self._fetching = False
        return self._value

    async def save(self, new_value: T) -> bool:
        # saves on one handle run one at a time, in call order
        self._pending_saves += 1
        try:
            async with self._save_lock:
                self._error = None
                try:
                    payload = strip_absent(new_value, drop_none=self._strip)
                    document = StateDocument(
                        state=jsonable_encoder(payload, by_alias=True),
                        last_modified_by=self.user,
                        last_modified_at=utc_now(),
                    )
                    await asyncio.to_thread(
                        self._client.put,
                        PAGES_COLLECTION,
                        self.identifier,
                        document.model_dump(by_alias=True),
                    )
                except Exception as e:
                    logger.error("Failed to save page %s: %s", self.identifier, e)
                    self._error = str(e) or e.__class__.__name__
                    return False
                self._value = new_value
                logger.info("Saved page %s by %s", self.identifier, self.user.name)
                return True
        finally:
            self._pending_saves -= 1

    def use_schema(self, schema: Any) -> None:
        if self.schema is not None:
            if self.schema != schema:
                raise ValueError(
                    f"Page {self.identifier} already uses schema {self.schema!r}, not {schema!r}"
                )
            return
        adapter = TypeAdapter(schema)
        if self._value is not None:
            self._value = adapter.validate_python(
                jsonable_encoder(strip_absent(self._value), by_alias=True)
            )
        self.schema = schema
        self._adapter = adapter

    def _parse(self, state: Any) -> T:
        if self._adapter is None:
            return state
        return self._adapter.validate_python(state)


class PageStateRegistry:
    """Hands out one shared ``PageState`` per identifier."""

    def __init__(self, client: DocumentClient, user: UserInfo, *, strip: bool = False):
        self.client = client
        self.user = user
        self._strip = strip
        self._pages: Dict[str, PageState] = {}

    def page(
        self,
        identifier: str,
        *,
        schema: Any = None,
        empty: Optional[Callable[[], Any]] = None,
    ) -> PageState:
        handle = self._pages.get(identifier)
        if handle is None:
            handle = PageState(
                identifier,
                self.user,
                self.client,
                empty=empty,
                schema=schema,
                strip=self._strip,
            )
            self._pages[identifier] = handle
        elif schema is not None:
            handle.use_schema(schema)
        return handle
