"""
Database Schemas for the Product Discovery platform

Each model maps to a MongoDB collection. Field names are stored as-is, so the
documents keep the camelCase keys the web client reads.

Collections:
- users: Accounts created on first sign-in
- products: Community submitted products with moderation status and votes
- reports: Flags raised against products
- reviews: Ratings and comments on products
- coupons: Discount codes managed by admins
- payments: Append-only ledger of subscription payments
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

ProductStatus = Literal["Pending", "Approved", "Rejected"]
Role = Literal["user", "admin", "member"]

PENDING = "Pending"
APPROVED = "Approved"
REJECTED = "Rejected"


# Users
class User(BaseModel):
    email: EmailStr = Field(..., description="Email address, unique")
    name: Optional[str] = Field(None, description="Display name")
    image: Optional[str] = Field(None, description="Profile image URL")
    role: Role = Field("user", description="User role")
    isSubscribed: bool = Field(False, description="Has an active premium subscription")
    coupon: Optional[str] = Field(None, description="Coupon used for the subscription")
    createdAt: datetime


# Products
class Product(BaseModel):
    name: str = Field(..., min_length=1, description="Product name")
    image: Optional[str] = Field(None, description="Preview image")
    description: Optional[str] = Field(None, description="Detailed description")
    tags: List[str] = Field(default_factory=list, description="Tags used by search")
    externalLink: Optional[str] = Field(None, description="Product website")

    ownerName: Optional[str] = None
    ownerEmail: EmailStr
    ownerImage: Optional[str] = None

    status: ProductStatus = Field(PENDING, description="Moderation status")
    isFeatured: bool = Field(False, description="Derived from status == Approved")
    upvotes: int = Field(0, ge=0)
    voters: List[str] = Field(default_factory=list, description="Emails that upvoted")
    timestamp: datetime


# Reports
class Report(BaseModel):
    productId: str
    reporterEmail: EmailStr
    reportedAt: datetime


# Reviews
class Review(BaseModel):
    productId: str
    reviewerName: str
    reviewerImage: Optional[str] = None
    description: str
    rating: int = Field(..., ge=1, le=5)
    createdAt: datetime


# Coupons
class Coupon(BaseModel):
    code: str = Field(..., min_length=1, description="Gateway coupon id")
    discount: float = Field(..., gt=0, le=100, description="Percent off")
    description: Optional[str] = None
    expiryDate: Optional[datetime] = None
    createdAt: datetime


# Payments
class Payment(BaseModel):
    userEmail: EmailStr
    amount: float = Field(..., ge=0)
    transactionId: str = Field(..., min_length=1)
    coupon: Optional[str] = None
    discountPercent: Optional[float] = Field(None, ge=0, le=100)
    date: datetime
