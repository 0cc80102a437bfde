"""
Schemas for the library helper

Each Pydantic model describes one record kind. Python attributes are
snake_case; the wire and on-disk spelling is camelCase (``publishYear``,
``createdAt``), so always dump with ``by_alias=True`` before persisting.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Priority = Literal["high", "medium", "low"]
DonationStatus = Literal["pending", "approved", "rejected"]


def new_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserInfo(BaseModel):
    name: str = Field(..., description="Display name of the acting user")
    email: str = Field(..., description="Email stamped on writes; never verified")


class StateDocument(CamelModel):
    state: Any = Field(None, description="Whole page value; every save overwrites it")
    last_modified_by: UserInfo
    last_modified_at: str = Field(..., description="ISO-8601 UTC timestamp")


class BookCreate(CamelModel):
    title: str
    authors: List[str] = Field(default_factory=list)
    publisher: str = ""
    publish_year: int
    quantity: int = Field(1, ge=0, description="Copies held")
    cover_image: Optional[str] = Field(None, description="Cover as a data URI")


class Book(BookCreate):
    id: str
    created_at: str


class BookUpdate(CamelModel):
    title: Optional[str] = None
    authors: Optional[List[str]] = None
    publisher: Optional[str] = None
    publish_year: Optional[int] = None
    quantity: Optional[int] = Field(None, ge=0)
    cover_image: Optional[str] = None


class NeedCreate(CamelModel):
    title: str
    authors: List[str] = Field(default_factory=list)
    publisher: Optional[str] = None
    publish_year: Optional[int] = None
    priority: Priority = "medium"
    notes: Optional[str] = None


class CollectionNeed(NeedCreate):
    id: str
    created_at: str


class NeedUpdate(CamelModel):
    title: Optional[str] = None
    authors: Optional[List[str]] = None
    publisher: Optional[str] = None
    publish_year: Optional[int] = None
    priority: Optional[Priority] = None
    notes: Optional[str] = None


class DonationRequestCreate(CamelModel):
    title: str
    author: str
    description: str = ""
    contact: str


class DonationRequest(DonationRequestCreate):
    id: str
    status: DonationStatus = "pending"
    created_at: str


class StateUser(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None


class StatePayload(BaseModel):
    state: Any = None
    user: Optional[StateUser] = None
