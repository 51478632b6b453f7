"""Marketplace module for product listings.

This module provides functionality for:
- Creating and managing listings with image uploads
- The approval workflow (pending, approved, rejected, paused, sold)
- Searching and filtering approved listings
- Favorites with an atomic per-product counter
- Reviews, view counts, seller statistics and categories
"""

import logging
import uuid
from contextlib import aclosing
from decimal import Decimal
from typing import AsyncIterator, Iterable, List, Optional, Sequence

from auth import AuthorizationPolicy, IdentityProvider
from auth.models import USERS, UserProfile
from storage import BlobStore
from store import (
    RemoteStore,
    Query,
    Direction,
    DocumentRef,
    StoreError,
    Transaction,
    composite_key,
    increment,
    utcnow
)
from store.documents import format_timestamp
from store.streams import combine_latest
from .models import (
    PRODUCTS,
    PRODUCT_REVIEWS,
    FAVORITE_PRODUCTS,
    SELLER_TRANSITIONS,
    REACTIVATABLE,
    Product,
    ProductStatus,
    ProductReview,
    FavoriteProduct,
    SellerStats
)

logger = logging.getLogger(__name__)

# Fields a seller or admin may change after creation
MUTABLE_FIELDS = {
    'title',
    'description',
    'price',
    'category',
    'tags',
    'stock_quantity',
    'limited_stock'
}

class MarketplaceError(Exception):
    """Base exception for marketplace operations."""
    pass

class ProductNotFoundError(MarketplaceError):
    """Raised when a product cannot be found."""
    pass

class ReviewNotFoundError(MarketplaceError):
    """Raised when a review cannot be found."""
    pass

class SellerNotFoundError(MarketplaceError):
    """Raised when the acting seller has no profile record."""
    pass

class PermissionDeniedError(MarketplaceError):
    """Raised when the acting user may not modify the target."""
    pass

class InvalidStatusTransitionError(MarketplaceError):
    """Raised when a product cannot move to the requested status."""
    pass

def filter_products(products: Iterable[Product], query: str = '', tags: Iterable[str] = (),
                    min_price: Optional[Decimal] = None,
                    max_price: Optional[Decimal] = None) -> List[Product]:
    """Apply search filters to a list of products.

    Only approved products ever pass. Text matches case-insensitively against
    title, description and tags; any shared tag matches; price bounds are
    inclusive.

    Args:
        products: Candidate products
        query: Free text, blank means no text filter
        tags: Wanted tags, empty means no tag filter
        min_price: Lowest accepted price
        max_price: Highest accepted price

    Returns:
        Matching products in their original order
    """
    needle = query.strip().lower()
    wanted = set(tags)
    result = []

    for product in products:
        if product.status is not ProductStatus.APPROVED:
            continue
        if needle and not (
            needle in product.title.lower()
            or needle in product.description.lower()
            or any(needle in tag.lower() for tag in product.tags)
        ):
            continue
        if wanted and not wanted.intersection(product.tags):
            continue
        if min_price is not None and product.price < min_price:
            continue
        if max_price is not None and product.price > max_price:
            continue
        result.append(product)

    return result

def categories_of(products: Iterable[Product]) -> List[str]:
    """Distinct non-empty categories of approved products, sorted."""
    return sorted({
        p.category for p in products
        if p.category and p.status is ProductStatus.APPROVED
    })

class MarketplaceRepository:
    """Translates marketplace operations into remote store calls."""

    def __init__(self, store: RemoteStore, blobs: BlobStore, identity: IdentityProvider,
                 policy: Optional[AuthorizationPolicy] = None):
        """Initialize the repository.

        Args:
            store: Remote document store
            blobs: Blob store for product images
            identity: Source of the acting user's id
            policy: Admin policy, defaults to configured admin ids
        """
        self.store = store
        self.blobs = blobs
        self.identity = identity
        self.policy = policy or AuthorizationPolicy()

    async def _require_user(self) -> str:
        user_id = await self.identity.get_current_user_id()
        if not user_id:
            raise PermissionDeniedError("You must be signed in")
        return user_id

    async def _watch(self, query: Query) -> AsyncIterator:
        try:
            async with self.store.subscribe_query(query) as subscription:
                async for snapshot in subscription:
                    yield snapshot
        except StoreError as e:
            logger.error(f"Listener on {query.collection} failed: {e}")
            raise MarketplaceError(f"Lost connection to {query.collection}: {e}")

    async def _watch_products(self, query: Query) -> AsyncIterator[List[Product]]:
        async with aclosing(self._watch(query)) as stream:
            async for snapshot in stream:
                yield [Product.from_snapshot(doc) for doc in snapshot]

    # Listings

    async def get_all_products(self, statuses: Sequence[ProductStatus] = (ProductStatus.APPROVED,)
                               ) -> AsyncIterator[List[Product]]:
        """Live products with any of the given statuses, newest first."""
        values = [ProductStatus(s).value for s in statuses]
        if len(values) == 1:
            query = Query(PRODUCTS).where('status', '==', values[0])
        else:
            query = Query(PRODUCTS).where('status', 'in', values)
        query = query.order_by('created_at', Direction.DESCENDING)

        async with aclosing(self._watch_products(query)) as stream:
            async for products in stream:
                yield products

    async def get_products_pending_approval(self) -> AsyncIterator[List[Product]]:
        """Live approval queue, oldest first."""
        query = (
            Query(PRODUCTS)
            .where('status', '==', ProductStatus.PENDING.value)
            .order_by('created_at', Direction.ASCENDING)
        )
        async with aclosing(self._watch_products(query)) as stream:
            async for products in stream:
                yield products

    async def get_product_by_id(self, product_id: str) -> AsyncIterator[Optional[Product]]:
        """Live single product; None while it does not exist."""
        ref = DocumentRef(PRODUCTS, product_id)
        try:
            async with self.store.subscribe_document(ref) as subscription:
                async for snapshot in subscription:
                    yield Product.from_snapshot(snapshot) if snapshot.exists else None
        except StoreError as e:
            logger.error(f"Listener on {ref.path} failed: {e}")
            raise MarketplaceError(f"Lost connection to {ref.path}: {e}")

    async def get_product(self, product_id: str) -> Product:
        """Read a product once.

        Raises:
            ProductNotFoundError: If the product does not exist
        """
        try:
            snapshot = await self.store.get(DocumentRef(PRODUCTS, product_id))
        except StoreError as e:
            logger.error(f"Error reading product {product_id}: {e}")
            raise MarketplaceError(f"Failed to get product: {e}")
        if not snapshot.exists:
            raise ProductNotFoundError(f"Product {product_id} not found")
        return Product.from_snapshot(snapshot)

    async def get_products_by_user_id(self, user_id: str) -> AsyncIterator[List[Product]]:
        """Live listings of one seller in every status, newest first."""
        query = (
            Query(PRODUCTS)
            .where('seller_id', '==', user_id)
            .order_by('created_at', Direction.DESCENDING)
        )
        async with aclosing(self._watch_products(query)) as stream:
            async for products in stream:
                yield products

    async def search_products(self, query: str = '', tags: Iterable[str] = (),
                              min_price: Optional[Decimal] = None,
                              max_price: Optional[Decimal] = None) -> AsyncIterator[List[Product]]:
        """Live search over approved products.

        The store only narrows to approved listings; text, tags and price are
        filtered here on every snapshot.
        """
        tags = list(tags)
        async with aclosing(self.get_all_products()) as stream:
            async for products in stream:
                yield filter_products(products, query, tags, min_price, max_price)

    async def create_product(self, product: Product, images: Sequence[bytes] = ()) -> Product:
        """Create a listing for the current user, awaiting approval.

        Raises:
            SellerNotFoundError: If the seller has no profile record
            MarketplaceError: If the upload or write fails
        """
        user_id = await self._require_user()

        try:
            seller_snapshot = await self.store.get(DocumentRef(USERS, user_id))
            if not seller_snapshot.exists:
                raise SellerNotFoundError(f"No profile for user {user_id}")
            seller = UserProfile.from_snapshot(seller_snapshot)

            image_urls = list(product.image_urls)
            image_urls.extend(await self._upload_images(images))

            product_id = self.store.new_id(PRODUCTS)
            now = utcnow()
            created = product.model_copy(update={
                'id': product_id,
                'seller_id': user_id,
                'seller_name': seller.username,
                'seller_profile_image': seller.profile_image_url,
                'image_urls': image_urls,
                'status': ProductStatus.PENDING,
                'view_count': 0,
                'favorite_count': 0,
                'admin_comment': None,
                'rejection_reason': None,
                'approved_at': None,
                'created_at': now,
                'last_updated_at': now
            })
            await self.store.set(DocumentRef(PRODUCTS, product_id), created.to_document())

            logger.info(f"Created product {product_id} for seller {user_id}")
            return created

        except MarketplaceError:
            raise
        except Exception as e:
            logger.error(f"Error creating product: {e}")
            raise MarketplaceError(f"Failed to create product: {e}")

    async def _upload_images(self, images: Sequence[bytes]) -> List[str]:
        urls = []
        for data in images:
            urls.append(await self.blobs.upload_and_get_url(f"product_images/{uuid.uuid4()}.jpg", data))
        return urls

    async def _modify(self, product_id: str, check, build_fields, action: str):
        """Run a permission-checked partial update of one product in a transaction."""
        user_id = await self._require_user()
        ref = DocumentRef(PRODUCTS, product_id)

        async def apply(tx: Transaction):
            snapshot = await tx.get(ref)
            if not snapshot.exists:
                raise ProductNotFoundError(f"Product {product_id} not found")
            current = Product.from_snapshot(snapshot)
            check(user_id, current)
            fields = build_fields(current)
            tx.update(ref, fields)
            return fields

        try:
            fields = await self.store.run_transaction(apply)
            logger.info(f"{action} product {product_id}")
            return fields
        except MarketplaceError:
            raise
        except Exception as e:
            logger.error(f"Error during {action.lower()} of product {product_id}: {e}")
            raise MarketplaceError(f"Failed to update product: {e}")

    def _check_owner(self, user_id: str, product: Product) -> None:
        if not self.policy.can_modify(user_id, product.seller_id):
            raise PermissionDeniedError("Only the seller or an admin can modify this product")

    async def update_product(self, product: Product) -> None:
        """Apply the editable fields of ``product`` to the stored listing.

        Raises:
            ProductNotFoundError: If the product was deleted
            PermissionDeniedError: If the user is neither seller nor admin
        """
        def build_fields(current: Product) -> dict:
            fields = product.model_dump(mode='json', include=MUTABLE_FIELDS)
            fields['last_updated_at'] = format_timestamp(utcnow())
            return fields

        await self._modify(product.id, self._check_owner, build_fields, "Updated")

    async def update_product_images(self, product_id: str, images: Sequence[bytes]) -> List[str]:
        """Upload images and append them to the listing.

        Returns:
            URLs of the newly uploaded images
        """
        current = await self.get_product(product_id)
        self._check_owner(await self._require_user(), current)

        try:
            urls = await self._upload_images(images)
        except Exception as e:
            logger.error(f"Error uploading images for {product_id}: {e}")
            raise MarketplaceError(f"Failed to upload images: {e}")

        def build_fields(latest: Product) -> dict:
            return {
                'image_urls': list(latest.image_urls) + urls,
                'last_updated_at': format_timestamp(utcnow())
            }

        await self._modify(product_id, self._check_owner, build_fields, "Added images to")
        return urls

    async def delete_product(self, product_id: str) -> None:
        """Delete a listing with its reviews and favorites in one batch.

        Uploaded images stay in blob storage.
        """
        user_id = await self._require_user()
        product = await self.get_product(product_id)
        self._check_owner(user_id, product)

        try:
            batch = self.store.batch()
            for collection in (PRODUCT_REVIEWS, FAVORITE_PRODUCTS):
                snapshot = await self.store.query(Query(collection).where('product_id', '==', product_id))
                for doc in snapshot:
                    batch.delete(doc.ref)
            batch.delete(DocumentRef(PRODUCTS, product_id))
            await batch.commit()

            logger.info(f"Deleted product {product_id} and {len(batch) - 1} dependent records")

        except Exception as e:
            logger.error(f"Error deleting product {product_id}: {e}")
            raise MarketplaceError(f"Failed to delete product: {e}")

    # Approval workflow

    async def update_product_status(self, product_id: str, status: ProductStatus,
                                    admin_comment: Optional[str] = None) -> None:
        """Move a product to a new status.

        Admins may set any status. The seller may only pause or sell an
        approved listing and bring a paused or sold one back.

        Args:
            product_id: Product to change
            status: Target status
            admin_comment: Optional comment, kept as rejection reason on REJECTED

        Raises:
            ProductNotFoundError: If the product does not exist
            PermissionDeniedError: If the user may not make this change
        """
        status = ProductStatus(status)
        comment = admin_comment.strip() if admin_comment else None

        def check(user_id: str, current: Product) -> None:
            if self.policy.is_admin(user_id):
                return
            if user_id != current.seller_id:
                raise PermissionDeniedError("Only the seller or an admin can change this product's status")
            if status not in SELLER_TRANSITIONS.get(current.status, set()):
                raise PermissionDeniedError(
                    f"Only an admin can move a product from {current.status.value} to {status.value}"
                )

        def build_fields(current: Product) -> dict:
            now = format_timestamp(utcnow())
            fields = {'status': status.value, 'last_updated_at': now}
            if status is ProductStatus.APPROVED:
                fields['approved_at'] = now
            if comment:
                fields['admin_comment'] = comment
                if status is ProductStatus.REJECTED:
                    fields['rejection_reason'] = comment
            return fields

        await self._modify(product_id, check, build_fields, f"Set status {status.value} on")

    async def reactivate_product(self, product_id: str) -> None:
        """Return a paused or sold listing to APPROVED, changing nothing else.

        Raises:
            InvalidStatusTransitionError: If the product is not paused or sold
        """
        def check(user_id: str, current: Product) -> None:
            self._check_owner(user_id, current)
            if current.status not in REACTIVATABLE:
                raise InvalidStatusTransitionError(
                    f"Only paused or sold products can be reactivated, not {current.status.value}"
                )

        await self._modify(
            product_id, check, lambda current: {'status': ProductStatus.APPROVED.value}, "Reactivated"
        )

    # Favorites

    async def get_favorite_products(self, user_id: str) -> AsyncIterator[List[Product]]:
        """Live approved products a user saved, in the order they were saved (newest first)."""
        favorites = self._watch(
            Query(FAVORITE_PRODUCTS)
            .where('user_id', '==', user_id)
            .order_by('created_at', Direction.DESCENDING)
        )
        async with aclosing(combine_latest(favorites, self.get_all_products())) as combined:
            async for favorite_snapshot, products in combined:
                by_id = {p.id: p for p in products}
                yield [
                    by_id[doc.get('product_id')] for doc in favorite_snapshot
                    if doc.get('product_id') in by_id
                ]

    async def is_product_favorited(self, product_id: str, user_id: Optional[str] = None) -> AsyncIterator[bool]:
        user_id = user_id or await self._require_user()
        ref = DocumentRef(FAVORITE_PRODUCTS, composite_key(user_id, product_id))
        try:
            async with self.store.subscribe_document(ref) as subscription:
                async for snapshot in subscription:
                    yield snapshot.exists
        except StoreError as e:
            logger.error(f"Listener on {ref.path} failed: {e}")
            raise MarketplaceError(f"Lost connection to {ref.path}: {e}")

    async def add_to_favorites(self, product_id: str) -> bool:
        """Save a product and increment its favorite counter.

        Returns:
            False when it was already saved (nothing changes)
        """
        user_id = await self._require_user()
        favorite_ref = DocumentRef(FAVORITE_PRODUCTS, composite_key(user_id, product_id))
        product_ref = DocumentRef(PRODUCTS, product_id)

        async def apply(tx: Transaction) -> bool:
            favorite = await tx.get(favorite_ref)
            product = await tx.get(product_ref)
            if not product.exists:
                raise ProductNotFoundError(f"Product {product_id} not found")
            if favorite.exists:
                return False
            tx.set(favorite_ref, FavoriteProduct(
                id=favorite_ref.id, user_id=user_id, product_id=product_id
            ).to_document())
            tx.update(product_ref, {'favorite_count': increment(1)})
            return True

        try:
            return await self.store.run_transaction(apply)
        except MarketplaceError:
            raise
        except Exception as e:
            logger.error(f"Error adding favorite {product_id}: {e}")
            raise MarketplaceError(f"Failed to add favorite: {e}")

    async def remove_from_favorites(self, product_id: str) -> bool:
        """Unsave a product and decrement its counter. Missing favorites are a no-op."""
        user_id = await self._require_user()
        favorite_ref = DocumentRef(FAVORITE_PRODUCTS, composite_key(user_id, product_id))
        product_ref = DocumentRef(PRODUCTS, product_id)

        async def apply(tx: Transaction) -> bool:
            favorite = await tx.get(favorite_ref)
            product = await tx.get(product_ref)
            if not favorite.exists:
                return False
            tx.delete(favorite_ref)
            if product.exists:
                tx.update(product_ref, {'favorite_count': increment(-1)})
            return True

        try:
            return await self.store.run_transaction(apply)
        except Exception as e:
            logger.error(f"Error removing favorite {product_id}: {e}")
            raise MarketplaceError(f"Failed to remove favorite: {e}")

    # Reviews

    async def get_reviews_by_product_id(self, product_id: str) -> AsyncIterator[List[ProductReview]]:
        query = (
            Query(PRODUCT_REVIEWS)
            .where('product_id', '==', product_id)
            .order_by('created_at', Direction.DESCENDING)
        )
        async with aclosing(self._watch(query)) as stream:
            async for snapshot in stream:
                yield [ProductReview.from_snapshot(doc) for doc in snapshot]

    async def get_reviews_by_user_id(self, user_id: str) -> AsyncIterator[List[ProductReview]]:
        query = (
            Query(PRODUCT_REVIEWS)
            .where('user_id', '==', user_id)
            .order_by('created_at', Direction.DESCENDING)
        )
        async with aclosing(self._watch(query)) as stream:
            async for snapshot in stream:
                yield [ProductReview.from_snapshot(doc) for doc in snapshot]

    async def create_review(self, review: ProductReview) -> ProductReview:
        """Store a review written by the current user.

        Raises:
            ProductNotFoundError: If the product does not exist
        """
        user_id = await self._require_user()
        await self.get_product(review.product_id)

        try:
            review_id = self.store.new_id(PRODUCT_REVIEWS)
            created = review.model_copy(update={
                'id': review_id,
                'user_id': user_id,
                'created_at': utcnow()
            })
            await self.store.set(DocumentRef(PRODUCT_REVIEWS, review_id), created.to_document())
            logger.info(f"Created review {review_id} on {review.product_id}")
            return created
        except Exception as e:
            logger.error(f"Error creating review: {e}")
            raise MarketplaceError(f"Failed to create review: {e}")

    async def _author_review(self, tx: Transaction, ref: DocumentRef, user_id: str) -> ProductReview:
        snapshot = await tx.get(ref)
        if not snapshot.exists:
            raise ReviewNotFoundError(f"Review {ref.id} not found")
        review = ProductReview.from_snapshot(snapshot)
        if review.user_id != user_id:
            raise PermissionDeniedError("Only the author can change this review")
        return review

    async def update_review(self, review: ProductReview) -> None:
        """Change rating and comment of the current user's review."""
        user_id = await self._require_user()
        ref = DocumentRef(PRODUCT_REVIEWS, review.id)

        async def apply(tx: Transaction) -> None:
            await self._author_review(tx, ref, user_id)
            tx.update(ref, {'rating': review.rating, 'comment': review.comment})

        try:
            await self.store.run_transaction(apply)
            logger.info(f"Updated review {review.id}")
        except MarketplaceError:
            raise
        except Exception as e:
            logger.error(f"Error updating review {review.id}: {e}")
            raise MarketplaceError(f"Failed to update review: {e}")

    async def delete_review(self, review_id: str) -> None:
        user_id = await self._require_user()
        ref = DocumentRef(PRODUCT_REVIEWS, review_id)

        async def apply(tx: Transaction) -> None:
            await self._author_review(tx, ref, user_id)
            tx.delete(ref)

        try:
            await self.store.run_transaction(apply)
            logger.info(f"Deleted review {review_id}")
        except MarketplaceError:
            raise
        except Exception as e:
            logger.error(f"Error deleting review {review_id}: {e}")
            raise MarketplaceError(f"Failed to delete review: {e}")

    # Stats and reconciliation

    async def increment_view_count(self, product_id: str) -> None:
        try:
            await self.store.update(DocumentRef(PRODUCTS, product_id), {'view_count': increment(1)})
        except StoreError as e:
            logger.error(f"Error counting view of {product_id}: {e}")
            raise MarketplaceError(f"Failed to increment view count: {e}")

    async def get_seller_stats(self, user_id: str) -> AsyncIterator[SellerStats]:
        """Live statistics derived from the seller's listings."""
        async with aclosing(self.get_products_by_user_id(user_id)) as stream:
            async for products in stream:
                yield SellerStats.from_products(products)

    async def get_all_categories(self) -> List[str]:
        """Distinct categories of approved products, sorted."""
        try:
            snapshot = await self.store.query(
                Query(PRODUCTS).where('status', '==', ProductStatus.APPROVED.value)
            )
        except StoreError as e:
            logger.error(f"Error loading categories: {e}")
            raise MarketplaceError(f"Failed to load categories: {e}")
        return categories_of(Product.from_snapshot(doc) for doc in snapshot)

    async def get_categories(self) -> AsyncIterator[List[str]]:
        """Live distinct categories of approved products; emits only when the set changes."""
        last = None
        async with aclosing(self.get_all_products()) as stream:
            async for products in stream:
                categories = categories_of(products)
                if categories != last:
                    last = categories
                    yield categories

    async def update_seller_profile(self, user_id: str, seller_name: Optional[str] = None,
                                    profile_image: Optional[str] = None) -> int:
        """Rewrite the denormalized seller fields on every listing of a seller.

        Returns:
            Number of products updated
        """
        acting = await self._require_user()
        if not self.policy.can_modify(acting, user_id):
            raise PermissionDeniedError("Only the seller or an admin can update this profile")

        fields = {}
        if seller_name is not None:
            fields['seller_name'] = seller_name
        if profile_image is not None:
            fields['seller_profile_image'] = profile_image
        if not fields:
            return 0

        try:
            snapshot = await self.store.query(Query(PRODUCTS).where('seller_id', '==', user_id))
            batch = self.store.batch()
            for doc in snapshot:
                batch.update(doc.ref, fields)
            await batch.commit()

            logger.info(f"Updated seller fields on {len(batch)} products of {user_id}")
            return len(batch)

        except Exception as e:
            logger.error(f"Error updating seller profile {user_id}: {e}")
            raise MarketplaceError(f"Failed to update seller profile: {e}")

    async def update_seller_profile_image(self, user_id: str, profile_image: str) -> int:
        return await self.update_seller_profile(user_id, profile_image=profile_image)

__all__ = [
    'MarketplaceRepository',
    'filter_products',
    'categories_of',
    'MUTABLE_FIELDS',
    'MarketplaceError',
    'ProductNotFoundError',
    'ReviewNotFoundError',
    'SellerNotFoundError',
    'PermissionDeniedError',
    'InvalidStatusTransitionError'
]
