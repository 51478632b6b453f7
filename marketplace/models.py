"""Marketplace entities."""
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from store import utcnow
from store.documents import DocumentModel, Timestamp

PRODUCTS = 'products'
PRODUCT_REVIEWS = 'product_reviews'
FAVORITE_PRODUCTS = 'favorite_products'

class ProductStatus(str, Enum):
    PENDING = 'PENDING'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'
    PAUSED = 'PAUSED'
    SOLD = 'SOLD'

# Status changes a seller may make on their own listing
SELLER_TRANSITIONS = {
    ProductStatus.APPROVED: {ProductStatus.PAUSED, ProductStatus.SOLD},
    ProductStatus.PAUSED: {ProductStatus.APPROVED},
    ProductStatus.SOLD: {ProductStatus.APPROVED}
}

REACTIVATABLE = {ProductStatus.PAUSED, ProductStatus.SOLD}

class Product(DocumentModel):
    seller_id: str = ''
    seller_name: str = ''
    seller_profile_image: str = ''
    title: str = ''
    description: str = ''
    price: Decimal = Decimal('0')
    category: str = ''
    tags: List[str] = Field(default_factory=list)
    image_urls: List[str] = Field(default_factory=list)
    status: ProductStatus = ProductStatus.PENDING
    stock_quantity: Optional[int] = None
    limited_stock: bool = False
    view_count: int = 0
    favorite_count: int = 0
    admin_comment: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_at: Timestamp = Field(default_factory=utcnow)
    approved_at: Optional[Timestamp] = None
    last_updated_at: Timestamp = Field(default_factory=utcnow)

class ProductReview(DocumentModel):
    product_id: str
    user_id: str = ''
    rating: int = Field(default=5, ge=1, le=5)
    comment: str = ''
    created_at: Timestamp = Field(default_factory=utcnow)

class FavoriteProduct(DocumentModel):
    """Join record: ``user_id`` saved ``product_id``."""
    user_id: str
    product_id: str
    created_at: Timestamp = Field(default_factory=utcnow)

class SellerStats(BaseModel):
    """Aggregate over one seller's products."""
    total_products: int = 0
    active_products: int = 0
    pending_products: int = 0
    rejected_products: int = 0
    paused_products: int = 0
    sold_products: int = 0
    total_views: int = 0
    total_favorites: int = 0

    @classmethod
    def from_products(cls, products: List[Product]) -> 'SellerStats':
        def count(status: ProductStatus) -> int:
            return sum(1 for p in products if p.status is status)

        return cls(
            total_products=len(products),
            active_products=count(ProductStatus.APPROVED),
            pending_products=count(ProductStatus.PENDING),
            rejected_products=count(ProductStatus.REJECTED),
            paused_products=count(ProductStatus.PAUSED),
            sold_products=count(ProductStatus.SOLD),
            total_views=sum(p.view_count for p in products),
            total_favorites=sum(p.favorite_count for p in products)
        )
