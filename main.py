import hashlib
import hmac
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel, ValidationError

from config import Settings, load_settings
from file_store import GitError, InvalidPageName, ServerContext
from logging_config import setup_logging
from schemas import (
    Book,
    BookCreate,
    BookUpdate,
    CollectionNeed,
    DonationRequest,
    DonationRequestCreate,
    DonationStatus,
    NeedCreate,
    NeedUpdate,
    StatePayload,
    new_id,
    utc_now,
)

log = setup_logging()

router = APIRouter()

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    username: str
    role: str


def get_context(request: Request) -> ServerContext:
    return request.app.state.context


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


# Utility functions

def hash_password(pw: str, secret: str) -> str:
    return hashlib.sha256((pw + secret).encode()).hexdigest()


def verify_password(pw: str, hashed: str, secret: str) -> bool:
    return hmac.compare_digest(hash_password(pw, secret), hashed)


def make_token(username: str, role: str, secret: str) -> str:
    # naive token: username|role|expiry|signature
    expiry = int((datetime.now(timezone.utc) + timedelta(hours=24)).timestamp())
    payload = f"{username}|{role}|{expiry}"
    signature = hashlib.sha256((payload + secret).encode()).hexdigest()
    return f"{payload}|{signature}"


def parse_token(token: str, secret: str) -> Optional[dict]:
    try:
        username, role, expiry, signature = token.split("|")
    except ValueError:
        return None
    payload = f"{username}|{role}|{expiry}"
    expected = hashlib.sha256((payload + secret).encode()).hexdigest()
    if not hmac.compare_digest(expected, signature):
        return None
    if not expiry.isdigit() or int(expiry) < int(datetime.now(timezone.utc).timestamp()):
        return None
    return {"username": username, "role": role}


def configured_accounts(settings: Settings) -> dict:
    """Accounts with an empty password are disabled."""
    accounts = {}
    if settings.librarian_password:
        accounts[settings.librarian_user] = (
            "librarian",
            hash_password(settings.librarian_password, settings.secret_key),
        )
    if settings.guest_password:
        accounts[settings.guest_user] = (
            "guest",
            hash_password(settings.guest_password, settings.secret_key),
        )
    return accounts


def get_current_user(
    token: str = Depends(oauth2_scheme), settings: Settings = Depends(get_settings)
) -> dict:
    user = parse_token(token, settings.secret_key)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user


# Health
@router.get("/")
def root():
    return {"name": "Ketab Helper API", "status": "ok"}


# Auth
@router.post("/auth/login", response_model=Token)
def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    settings: Settings = Depends(get_settings),
):
    account = configured_accounts(settings).get(form_data.username)
    if not account or not verify_password(form_data.password, account[1], settings.secret_key):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    role = account[0]
    log.info("User %s logged in as %s", form_data.username, role)
    return Token(
        access_token=make_token(form_data.username, role, settings.secret_key),
        username=form_data.username,
        role=role,
    )


@router.get("/me")
def me(current=Depends(get_current_user)):
    return current


# Books CRUD
@router.get("/api/books", response_model=List[Book])
def list_books(ctx: ServerContext = Depends(get_context)):
    return ctx.books.all()


@router.post("/api/books", response_model=Book, status_code=201)
def create_book(payload: BookCreate, ctx: ServerContext = Depends(get_context)):
    book = Book(**payload.model_dump(), id=new_id(), created_at=utc_now())
    return ctx.books.add(book)


@router.put("/api/books/{book_id}", response_model=Book)
def update_book(book_id: str, payload: BookUpdate, ctx: ServerContext = Depends(get_context)):
    try:
        book = ctx.books.update(book_id, payload)
    except ValidationError as e:
        return error_response(422, str(e))
    if book is None:
        return error_response(404, "Not found")
    return book


@router.delete("/api/books/{book_id}", status_code=204)
def delete_book(book_id: str, ctx: ServerContext = Depends(get_context)):
    ctx.books.delete(book_id)
    return Response(status_code=204)


# Needs CRUD
@router.get("/api/needs", response_model=List[CollectionNeed])
def list_needs(ctx: ServerContext = Depends(get_context)):
    return ctx.needs.all()


@router.post("/api/needs", response_model=CollectionNeed, status_code=201)
def create_need(payload: NeedCreate, ctx: ServerContext = Depends(get_context)):
    need = CollectionNeed(**payload.model_dump(), id=new_id(), created_at=utc_now())
    return ctx.needs.add(need)


@router.put("/api/needs/{need_id}", response_model=CollectionNeed)
def update_need(need_id: str, payload: NeedUpdate, ctx: ServerContext = Depends(get_context)):
    try:
        need = ctx.needs.update(need_id, payload)
    except ValidationError as e:
        return error_response(422, str(e))
    if need is None:
        return error_response(404, "Not found")
    return need


@router.delete("/api/needs/{need_id}", status_code=204)
def delete_need(need_id: str, ctx: ServerContext = Depends(get_context)):
    ctx.needs.delete(need_id)
    return Response(status_code=204)


# Donation requests
@router.get("/api/donations", response_model=List[DonationRequest])
def list_donations(ctx: ServerContext = Depends(get_context)):
    return ctx.donations.all()


@router.post("/api/donations", response_model=DonationRequest, status_code=201)
def submit_donation(payload: DonationRequestCreate, ctx: ServerContext = Depends(get_context)):
    request = DonationRequest(
        **payload.model_dump(), id=new_id(), status="pending", created_at=utc_now()
    )
    return ctx.donations.add(request)


def _decide(ctx: ServerContext, request_id: str, status: DonationStatus):
    request = ctx.donations.get(request_id)
    if request is None:
        return error_response(404, "Not found")
    if request.status != "pending":
        return error_response(409, f"Request is already {request.status}")
    decided = request.model_copy(update={"status": status})
    ctx.donations.replace(decided)
    log.info("Donation request %s %s", request_id, status)
    return decided


@router.post("/api/donations/{request_id}/approve", response_model=DonationRequest)
def approve_donation(request_id: str, ctx: ServerContext = Depends(get_context)):
    return _decide(ctx, request_id, "approved")


@router.post("/api/donations/{request_id}/reject", response_model=DonationRequest)
def reject_donation(request_id: str, ctx: ServerContext = Depends(get_context)):
    return _decide(ctx, request_id, "rejected")


# Page state, committed to git on every save
@router.get("/api/state/{page}")
def get_page_state(page: str, ctx: ServerContext = Depends(get_context)):
    try:
        return ctx.pages.read(page)
    except InvalidPageName as e:
        return error_response(400, str(e))
    except (OSError, ValueError) as e:
        log.error("Reading state for page %s failed: %s", page, e)
        return error_response(500, str(e))


@router.post("/api/state/{page}")
def save_page_state(page: str, payload: StatePayload, ctx: ServerContext = Depends(get_context)):
    try:
        ctx.pages.write(page, payload.state, payload.user)
    except InvalidPageName as e:
        return error_response(400, str(e))
    except (GitError, OSError) as e:
        return error_response(500, str(e))
    return {"success": True}


def create_app(
    context: Optional[ServerContext] = None, settings: Optional[Settings] = None
) -> FastAPI:
    """Build the API; without ``context`` one is created from settings at start-up."""
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.context is None:
            app.state.context = ServerContext.from_settings(settings)
        yield

    app = FastAPI(title="Ketab Helper API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = load_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
