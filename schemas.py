"""
Database Schemas

MongoDB collection schemas for the bookstore, defined as Pydantic models.
These schemas are used for data validation before documents are written.

Each Pydantic model represents a collection in your database.
Model name is converted to lowercase for the collection name:
- User -> "user" collection
- Book -> "book" collection
- Order -> "order" collection
- Lending -> "lending" collection
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field


class Preferences(BaseModel):
    favorite_genres: List[str] = Field(default_factory=list, description="Genres the reader follows")
    wants_newsletter: bool = Field(False, description="Opted in to the newsletter")


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address (unique, lowercase)")
    password_hash: str = Field(..., description="Password hash (server-side)")
    role: Literal["user", "admin"] = Field("user", description="Role: user | admin")
    preferences: Preferences = Field(default_factory=Preferences)
    wishlist: List[str] = Field(default_factory=list, description="Book ObjectIds as strings")


class Review(BaseModel):
    user_id: str = Field(..., description="Reviewer ObjectId as string")
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""
    created_at: Optional[datetime] = None


class Book(BaseModel):
    """
    Books collection schema
    Collection name: "book"
    """
    title: str = Field(..., min_length=1, description="Book title")
    author: str = Field(..., min_length=1, description="Author name")
    genre: str = Field(..., min_length=1, description="Genre")
    summary: str = Field("", description="Back-cover summary")
    price: float = Field(..., ge=0, description="Price in dollars")
    stock: int = Field(0, ge=0, description="Units in stock")
    cover_image: str = Field("", description="Base64 cover image")
    popularity: int = Field(0, ge=0, description="Demand signal, bumped by purchases and loans")
    times_borrowed: int = Field(0, ge=0)
    times_purchased: int = Field(0, ge=0)
    average_rating: float = Field(0, ge=0, le=5, description="Average rating 0-5")
    reviews: List[Review] = Field(default_factory=list)


class OrderItem(BaseModel):
    book_id: str = Field(..., description="Book ObjectId as string")
    title: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price at purchase time")


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    user_id: str = Field(..., description="User ObjectId as string")
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    payment_status: Literal["pending", "paid", "failed", "refunded"] = "pending"
    status: Literal["processing", "shipped", "completed", "cancelled"] = "processing"
    confirmation_code: str = Field(..., description="Short code shown to the purchaser")


class Lending(BaseModel):
    """
    Lendings collection schema
    Collection name: "lending"
    """
    user_id: str = Field(..., description="Borrower ObjectId as string")
    book_id: str = Field(..., description="Book ObjectId as string")
    status: Literal["requested", "approved", "borrowed", "returned", "cancelled"] = "requested"
    due_date: datetime
    reminder_sent: bool = False
    approved_by: Optional[str] = Field(None, description="Approving admin ObjectId as string")
    returned_at: Optional[datetime] = None
