import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import AliasChoices, BaseModel, EmailStr, Field
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import accounts
import catalog
import database
from access import AuthUser
from agent import ChatAgent
from ai import TextOracle, generate_book_insights, get_oracle
from analytics import sales_analytics
from database import ensure_indexes, get_db, serialize_document
from errors import BookstoreError, Unauthenticated, ValidationError
from lendings import LendingService
from orders import OrderService
from reminders import REMINDER_INTERVAL_SECONDS, run_reminder_loop
from schemas import Preferences

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Environment
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
TOKEN_EXPIRE_MINUTES = 60 * 24 * 7
REMINDER_INTERVAL = float(os.getenv("REMINDER_INTERVAL_SECONDS", REMINDER_INTERVAL_SECONDS))
CLIENT_ORIGINS = [o.strip() for o in os.getenv("CLIENT_URL", "").split(",") if o.strip()]
MAX_CHAT_MESSAGE = 2000

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


@asynccontextmanager
async def lifespan(app: FastAPI):
    reminder_task = None
    if database.db is not None:
        try:
            ensure_indexes(database.db)
        except PyMongoError:
            logger.exception("Could not create indexes")
        if REMINDER_INTERVAL > 0:
            reminder_task = asyncio.create_task(run_reminder_loop(database.db, REMINDER_INTERVAL))
    yield
    if reminder_task is not None:
        reminder_task.cancel()


app = FastAPI(title="Online Bookstore API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CLIENT_ORIGINS or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --------------------- Errors ---------------------


@app.exception_handler(BookstoreError)
async def bookstore_error_handler(request, exc: BookstoreError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.error)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    where = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    detail = first.get("msg", "Invalid request")
    return JSONResponse(status_code=400, content={"message": f"{where}: {detail}" if where else detail})


@app.exception_handler(PyMongoError)
async def database_error_handler(request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Unexpected server error", "error": str(exc)[:200]})


# --------------------- Utility ---------------------

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def create_token(data: dict, expires_minutes: int = TOKEN_EXPIRE_MINUTES) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)


def token_for(user: dict) -> str:
    return create_token({
        "id": str(user["_id"]),
        "email": user["email"],
        "name": user["name"],
        "role": user.get("role", "user"),
    })


def user_summary(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "name": user["name"],
        "email": user["email"],
        "role": user.get("role", "user"),
        "preferences": user.get("preferences", {}),
    }


def _user_from_token(token: str, db) -> AuthUser:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    user_id = payload.get("id")
    if not user_id or not ObjectId.is_valid(user_id):
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    # roles are read from the database so demotions apply immediately
    user = db["user"].find_one({"_id": ObjectId(user_id)}, {"password_hash": 0})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return AuthUser(id=str(user["_id"]), email=user["email"], name=user["name"], role=user.get("role", "user"))


def get_current_user(authorization: Optional[str] = Header(None), db=Depends(get_db)) -> AuthUser:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Invalid auth scheme")
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid Authorization header")
    return _user_from_token(token, db)


def get_optional_user(authorization: Optional[str] = Header(None), db=Depends(get_db)) -> Optional[AuthUser]:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    return _user_from_token(authorization.split(" ", 1)[1].strip(), db)


def get_admin_user(user: AuthUser = Depends(get_current_user)) -> AuthUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


# --------------------- Models ---------------------

class RegisterRequest(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    password: str = Field(min_length=6)
    preferences: Optional[Preferences] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    preferences: Optional[Preferences] = None


class AdminUserUpdate(ProfileUpdate):
    role: Optional[str] = None


class BookIn(BaseModel):
    title: str = Field(min_length=1)
    author: str = Field(min_length=1)
    genre: str = Field(min_length=1)
    summary: str = ""
    price: float = Field(ge=0)
    stock: int = Field(0, ge=0)
    cover_image: Optional[str] = None


class BookReplace(BookIn):
    popularity: Optional[int] = Field(None, ge=0)
    times_borrowed: Optional[int] = Field(None, ge=0)
    times_purchased: Optional[int] = Field(None, ge=0)


class ReviewIn(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: str = ""


class BookRef(BaseModel):
    book_id: Optional[str] = Field(None, validation_alias=AliasChoices("book_id", "bookId"))


class CartItem(BaseModel):
    book_id: str = Field(validation_alias=AliasChoices("book_id", "bookId"))
    quantity: int


class CheckoutRequest(BaseModel):
    items: List[CartItem] = Field(default_factory=list)


class StatusUpdate(BaseModel):
    status: Optional[str] = None
    payment_status: Optional[str] = Field(None, validation_alias=AliasChoices("payment_status", "paymentStatus"))


class InsightRequest(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    genre: Optional[str] = None
    summary: Optional[str] = None


class ChatRequest(BaseModel):
    message: Optional[str] = None


# --------------------- Routes ---------------------

@app.get("/")
def root():
    return {"message": "Online Bookstore API is running"}


@app.get("/api/health")
def health():
    return {"status": "ok"}


@app.get("/schema")
def get_schema():
    # Minimal schema surface for viewer
    from schemas import Book, Lending, Order, User
    return {
        "user": User.model_json_schema(),
        "book": Book.model_json_schema(),
        "order": Order.model_json_schema(),
        "lending": Lending.model_json_schema(),
    }


# Auth
@app.post("/api/auth/register", status_code=201)
def register(req: RegisterRequest, db=Depends(get_db)):
    if not req.name.strip():
        raise ValidationError("Name cannot be empty")
    user = accounts.create_user(
        db,
        name=req.name.strip(),
        email=req.email,
        password_hash=hash_password(req.password),
        preferences=req.preferences.model_dump() if req.preferences else None,
    )
    return {"token": token_for(user), "user": user_summary(user)}


@app.post("/api/auth/login")
def login(req: LoginRequest, db=Depends(get_db)):
    user = accounts.find_by_email(db, req.email)
    if not user or not verify_password(req.password, user.get("password_hash", "")):
        raise Unauthenticated("Invalid credentials")
    return {"token": token_for(user), "user": user_summary(user)}


@app.get("/api/auth/me")
def me(user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return {"user": serialize_document(accounts.get_user(db, user.id))}


# Profile
@app.get("/api/users/profile")
def get_profile(user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return {"user": serialize_document(accounts.get_user(db, user.id))}


@app.patch("/api/users/profile")
def update_profile(body: ProfileUpdate, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    updated = accounts.update_profile(
        db, user,
        name=body.name,
        preferences=body.preferences.model_dump() if body.preferences else None,
    )
    return {"user": serialize_document(updated)}


# Books
@app.get("/api/books")
def list_books(search: Optional[str] = None, genre: Optional[str] = None, sort: Optional[str] = None,
               db=Depends(get_db)):
    books = catalog.list_books(db, search=search, genre=genre, sort=sort)
    return {"books": serialize_document(books), "genres": catalog.list_genres(db)}


@app.get("/api/books/{book_id}")
def get_book(book_id: str, db=Depends(get_db)):
    return {"book": serialize_document(catalog.get_book(db, book_id))}


@app.get("/api/books/{book_id}/recommendations")
def book_recommendations(book_id: str, db=Depends(get_db)):
    return {"recommendations": serialize_document(catalog.recommendations(db, book_id))}


@app.post("/api/books/{book_id}/reviews", status_code=201)
def add_review(book_id: str, body: ReviewIn, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    book = catalog.add_review(db, book_id, user, body.rating, body.comment)
    return {"book": serialize_document(book)}


@app.post("/api/books", status_code=201)
def create_book(body: BookIn, admin: AuthUser = Depends(get_admin_user), db=Depends(get_db)):
    return {"book": serialize_document(catalog.create_book(db, body.model_dump(exclude_none=True)))}


@app.put("/api/books/{book_id}")
def replace_book(book_id: str, body: BookReplace, admin: AuthUser = Depends(get_admin_user), db=Depends(get_db)):
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    return {"book": serialize_document(catalog.replace_book(db, book_id, changes))}


@app.delete("/api/books/{book_id}")
def delete_book(book_id: str, admin: AuthUser = Depends(get_admin_user), db=Depends(get_db)):
    catalog.delete_book(db, book_id)
    return {"message": "Book deleted"}


# Lendings
@app.post("/api/lendings", status_code=201)
def request_lending(body: BookRef, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return {"lending": serialize_document(LendingService(db).create(user, body.book_id))}


@app.get("/api/lendings")
def my_lendings(user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return {"lendings": serialize_document(LendingService(db).list_for_user(user))}


@app.get("/api/lendings/admin/all")
def all_lendings(admin: AuthUser = Depends(get_admin_user), db=Depends(get_db)):
    return {"lendings": serialize_document(LendingService(db).list_all(admin))}


@app.get("/api/lendings/{lending_id}")
def get_lending(lending_id: str, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return {"lending": serialize_document(LendingService(db).get(lending_id, user))}


@app.patch("/api/lendings/{lending_id}/approve")
def approve_lending(lending_id: str, admin: AuthUser = Depends(get_admin_user), db=Depends(get_db)):
    return {"lending": serialize_document(LendingService(db).approve(lending_id, admin))}


@app.patch("/api/lendings/{lending_id}/return")
def return_lending(lending_id: str, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return {"lending": serialize_document(LendingService(db).return_(lending_id, user))}


@app.patch("/api/lendings/{lending_id}/cancel")
def cancel_lending(lending_id: str, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return {"lending": serialize_document(LendingService(db).cancel(lending_id, user))}


@app.delete("/api/lendings/{lending_id}")
def delete_lending(lending_id: str, admin: AuthUser = Depends(get_admin_user), db=Depends(get_db)):
    LendingService(db).delete(lending_id, admin)
    return {"message": "Lending record removed"}


# Orders
@app.post("/api/orders", status_code=201)
def create_order(body: CheckoutRequest, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    items = [item.model_dump() for item in body.items]
    return {"order": serialize_document(OrderService(db).create(user, items))}


@app.get("/api/orders")
def my_orders(user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return {"orders": serialize_document(OrderService(db).list_for_user(user))}


@app.get("/api/orders/admin/all")
def all_orders(admin: AuthUser = Depends(get_admin_user), db=Depends(get_db)):
    return {"orders": serialize_document(OrderService(db).list_all(admin))}


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return {"order": serialize_document(OrderService(db).get(order_id, user))}


@app.patch("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return {"order": serialize_document(OrderService(db).cancel(order_id, user))}


@app.patch("/api/orders/{order_id}/status")
def update_order_status(order_id: str, body: StatusUpdate, admin: AuthUser = Depends(get_admin_user),
                        db=Depends(get_db)):
    order = OrderService(db).update_status(order_id, admin, status=body.status, payment_status=body.payment_status)
    return {"order": serialize_document(order)}


@app.delete("/api/orders/{order_id}")
def delete_order(order_id: str, admin: AuthUser = Depends(get_admin_user), db=Depends(get_db)):
    OrderService(db).delete(order_id, admin)
    return {"message": "Order deleted"}


# Wishlist
@app.get("/api/wishlist")
def get_wishlist(user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return {"wishlist": serialize_document(accounts.wishlist(db, user))}


@app.post("/api/wishlist", status_code=201)
def add_to_wishlist(body: BookRef, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    accounts.add_to_wishlist(db, user, body.book_id)
    return {"wishlist": serialize_document(accounts.wishlist(db, user))}


@app.delete("/api/wishlist/{book_id}")
def remove_from_wishlist(book_id: str, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    accounts.remove_from_wishlist(db, user, book_id)
    return {"wishlist": serialize_document(accounts.wishlist(db, user))}


# Admin
@app.get("/api/admin/analytics")
def admin_analytics(admin: AuthUser = Depends(get_admin_user), db=Depends(get_db)):
    return sales_analytics(db)


@app.get("/api/admin/users")
def admin_list_users(admin: AuthUser = Depends(get_admin_user), db=Depends(get_db)):
    return {"users": serialize_document(accounts.list_users(db, admin))}


@app.get("/api/admin/users/{user_id}")
def admin_get_user(user_id: str, admin: AuthUser = Depends(get_admin_user), db=Depends(get_db)):
    return {"user": serialize_document(accounts.get_user(db, user_id))}


@app.patch("/api/admin/users/{user_id}")
def admin_update_user(user_id: str, body: AdminUserUpdate, admin: AuthUser = Depends(get_admin_user),
                      db=Depends(get_db)):
    updated = accounts.admin_update_user(
        db, admin, user_id,
        name=body.name,
        role=body.role,
        preferences=body.preferences.model_dump() if body.preferences else None,
    )
    return {"user": serialize_document(updated)}


@app.delete("/api/admin/users/{user_id}")
def admin_delete_user(user_id: str, admin: AuthUser = Depends(get_admin_user), db=Depends(get_db)):
    accounts.delete_user(db, admin, user_id)
    return {"message": "User deleted"}


# AI
@app.post("/api/ai/book-insights")
def book_insights(body: InsightRequest, oracle: TextOracle = Depends(get_oracle)):
    if not (body.title and body.author and body.genre and body.summary):
        raise ValidationError("title, author, genre, and summary are required")
    insight = generate_book_insights(oracle, body.title, body.author, body.genre, body.summary)
    return {"insight": insight}


@app.post("/api/ai/chat")
def chat(body: ChatRequest, user: Optional[AuthUser] = Depends(get_optional_user),
         db=Depends(get_db), oracle: TextOracle = Depends(get_oracle)):
    message = (body.message or "").strip()
    if not message:
        raise ValidationError("message is required")
    if len(message) > MAX_CHAT_MESSAGE:
        raise ValidationError(f"message must be at most {MAX_CHAT_MESSAGE} characters")
    return serialize_document(ChatAgent(db, oracle).run(message, user))


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = database.db.name
            try:
                collections = database.db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
                response["connection_status"] = "Connected"
            except PyMongoError as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except PyMongoError as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
