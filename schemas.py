"""
Database Schemas for the campus marketplace

Each Pydantic model describes a document in a MongoDB collection.
Field names follow the stored camelCase keys.
- User -> "users"
- Product -> "products"
- Message -> "messages"
- ReactivationRequest -> "reactivationRequests"
- VerificationRequest -> "verificationRequests"
"""

from datetime import datetime
from typing import Any, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field

UserType = Literal["customer", "seller", "admin"]
SubscriptionType = Literal["monthly", "yearly"]
RequestStatus = Literal["pending", "approved", "rejected"]


class Document(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)


class User(Document):
    """
    Users collection schema
    Collection name: "users"
    """
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Campus email address (lower-cased)")
    password: str = Field(..., description="BCrypt password hash")
    type: UserType = Field("customer", description="customer | seller | admin")
    campus: str = Field(..., description="Campus id")
    whatsapp: Optional[str] = Field(None, description="WhatsApp number shown to buyers")
    subscribed: bool = Field(False, description="Whether the seller subscription currently holds")
    subscriptionType: Optional[SubscriptionType] = None
    subscriptionStatus: Optional[Literal["active", "expired"]] = None
    subscriptionStartDate: Optional[datetime] = None
    subscriptionEndDate: Optional[datetime] = None
    verified: bool = Field(False, description="Seller identity confirmed by an admin")
    verifiedAt: Optional[datetime] = None
    isActive: bool = Field(True, description="False once the account is deactivated")
    lastLoginAt: Optional[datetime] = None


class Product(Document):
    """
    Products collection schema
    Collection name: "products"
    """
    title: str = Field(..., max_length=140)
    description: str = Field(..., max_length=5000)
    price: float = Field(..., gt=0)
    category: str
    type: Literal["product", "service"] = "product"
    sellerId: ObjectId
    sellerName: str = Field(..., description="Seller name at listing time")
    sellerCampus: str = Field(..., description="Seller campus at listing time")
    status: Literal["active", "inactive", "sold"] = "active"
    views: int = 0
    whatsappRedirects: int = 0


class Message(Document):
    senderId: ObjectId
    receiverId: ObjectId
    conversationId: str
    text: str = Field(..., max_length=5000)
    read: bool = False


class ReactivationRequest(Document):
    userId: ObjectId
    note: str = ""
    status: RequestStatus = "pending"
    requestedAt: datetime
    processedAt: Optional[datetime] = None
    adminId: Optional[ObjectId] = None
    adminNote: Optional[str] = None
    subscriptionType: Optional[SubscriptionType] = None


class VerificationRequest(Document):
    userId: ObjectId
    imageId: Any = Field(..., description="GridFS file id in the verification_images bucket")
    status: RequestStatus = "pending"
    requestedAt: datetime
    processedAt: Optional[datetime] = None
    adminId: Optional[ObjectId] = None
    adminNote: Optional[str] = None
