"""Marketplace view state.

Composes marketplace repository streams (search results, approval queue,
favorites and own listings) into a single state and drives the admin
approve/reject dialogs and listing reactivation.
"""

import logging
from decimal import Decimal
from typing import Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field

from auth import AuthorizationPolicy
from marketplace import MarketplaceRepository, MarketplaceError
from marketplace.models import Product, ProductStatus, REACTIVATABLE
from store import StoreError
from store.streams import first
from . import StateHolder, JobScope, ValidationError

logger = logging.getLogger(__name__)

class SearchParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    query: str = ''
    tags: Tuple[str, ...] = ()
    min_price: Optional[Decimal] = None
    max_price: Optional[Decimal] = None

    @property
    def has_filters(self) -> bool:
        return bool(
            self.query.strip() or self.tags
            or self.min_price is not None or self.max_price is not None
        )

class MarketplaceState(BaseModel):
    products: List[Product] = Field(default_factory=list)
    pending_products: List[Product] = Field(default_factory=list)
    favorite_products: List[Product] = Field(default_factory=list)
    my_products: List[Product] = Field(default_factory=list)
    search: SearchParams = Field(default_factory=SearchParams)
    is_loading: bool = False
    current_user_id: Optional[str] = None
    is_admin: bool = False
    admin_comment: str = ''
    approve_dialog_product_id: Optional[str] = None
    reject_dialog_product_id: Optional[str] = None
    is_processing: bool = False
    error: Optional[str] = None
    success_message: Optional[str] = None

class MarketplaceViewState:
    """State and actions of the marketplace screens."""

    def __init__(self, repository: MarketplaceRepository, policy: Optional[AuthorizationPolicy] = None):
        self.repository = repository
        self.policy = policy or repository.policy
        self.state = StateHolder(MarketplaceState())
        self.jobs = JobScope('marketplace')
        # Pending products hidden while their approval or rejection is in flight
        self._moderating: Set[str] = set()

    async def start(self) -> None:
        """Resolve the current user and open every stream."""
        user_id = await self.repository.identity.get_current_user_id()
        is_admin = self.policy.is_admin(user_id)
        self.state.update(current_user_id=user_id, is_admin=is_admin)

        self._subscribe_products(self.state.value.search)

        if is_admin:
            self.jobs.launch('pending', self._collect_pending())
        else:
            self.jobs.cancel('pending')
            self.state.update(pending_products=[])

        if user_id:
            self.jobs.launch('favorites', self._collect_favorites(user_id))
            self.jobs.launch('my_products', self._collect_my_products(user_id))
        else:
            self.jobs.cancel('favorites')
            self.jobs.cancel('my_products')
            self.state.update(favorite_products=[], my_products=[])

    async def close(self) -> None:
        await self.jobs.close()

    # Streams

    def _subscribe_products(self, params: SearchParams):
        self.state.update(search=params, is_loading=True, error=None)
        return self.jobs.launch('products', self._collect_products(params))

    async def _collect_products(self, params: SearchParams) -> None:
        if params.has_filters:
            stream = self.repository.search_products(
                params.query, params.tags, params.min_price, params.max_price
            )
        else:
            stream = self.repository.get_all_products()

        try:
            async for products in stream:
                self.state.update(products=products, is_loading=False)
        except MarketplaceError as e:
            logger.error(f"Product listener stopped: {e}")
            self.state.update(is_loading=False, error=f"Failed to load products: {e}")

    async def _collect_pending(self) -> None:
        try:
            async for products in self.repository.get_products_pending_approval():
                self.state.update(pending_products=[
                    p for p in products if p.id not in self._moderating
                ])
        except MarketplaceError as e:
            logger.error(f"Approval queue listener stopped: {e}")
            self.state.update(error=f"Failed to load pending products: {e}")

    async def _collect_favorites(self, user_id: str) -> None:
        try:
            async for products in self.repository.get_favorite_products(user_id):
                self.state.update(favorite_products=products)
        except MarketplaceError as e:
            logger.error(f"Favorites listener stopped: {e}")
            self.state.update(error=f"Failed to load favorites: {e}")

    async def _collect_my_products(self, user_id: str) -> None:
        try:
            async for products in self.repository.get_products_by_user_id(user_id):
                self.state.update(my_products=products)
        except MarketplaceError as e:
            logger.error(f"Own listings listener stopped: {e}")
            self.state.update(error=f"Failed to load your products: {e}")

    # Search

    def set_search_params(self, params: SearchParams) -> None:
        """Switch the product stream to new parameters.

        Unchanged parameters keep the running subscription.
        """
        if params == self.state.value.search and self.jobs.is_active('products'):
            return
        self._subscribe_products(params)

    def set_search_query(self, query: str) -> None:
        self.set_search_params(self.state.value.search.model_copy(update={'query': query}))

    def set_selected_tags(self, tags: Iterable[str]) -> None:
        self.set_search_params(self.state.value.search.model_copy(update={'tags': tuple(tags)}))

    def set_price_range(self, min_price: Optional[Decimal], max_price: Optional[Decimal]) -> None:
        self.set_search_params(self.state.value.search.model_copy(update={
            'min_price': min_price,
            'max_price': max_price
        }))

    def clear_filters(self) -> None:
        self.set_search_params(SearchParams())

    def clear_error(self) -> None:
        self.state.update(error=None)

    def clear_success_message(self) -> None:
        self.state.update(success_message=None)

    # Moderation dialogs

    def update_admin_comment(self, comment: str) -> None:
        self.state.update(admin_comment=comment)

    def show_approve_dialog(self, product_id: str) -> None:
        self.state.update(approve_dialog_product_id=product_id, admin_comment='')

    def hide_approve_dialog(self) -> None:
        self.state.update(approve_dialog_product_id=None, admin_comment='')

    def show_reject_dialog(self, product_id: str) -> None:
        self.state.update(reject_dialog_product_id=product_id, admin_comment='')

    def hide_reject_dialog(self) -> None:
        self.state.update(reject_dialog_product_id=None, admin_comment='')

    async def approve_product(self, product_id: Optional[str] = None) -> bool:
        """Approve a pending product; the comment is optional."""
        product_id = product_id or self.state.value.approve_dialog_product_id
        if not product_id:
            return False
        comment = self.state.value.admin_comment.strip() or None
        return await self._moderate(product_id, ProductStatus.APPROVED, comment, "Product approved")

    async def reject_product(self, product_id: Optional[str] = None) -> bool:
        """Reject a pending product; a reason is required.

        A blank reason leaves the dialog open and never reaches the repository.
        """
        product_id = product_id or self.state.value.reject_dialog_product_id
        try:
            comment = self.state.value.admin_comment.strip()
            if not comment:
                raise ValidationError("Please give a reason for rejecting this product")
            if not product_id:
                raise ValidationError("No product selected")
        except ValidationError as e:
            self.state.update(error=str(e))
            return False

        return await self._moderate(product_id, ProductStatus.REJECTED, comment, "Product rejected")

    async def _moderate(self, product_id: str, status: ProductStatus, comment: Optional[str],
                        message: str) -> bool:
        pending = self.state.value.pending_products
        self._moderating.add(product_id)
        self.state.update(
            is_processing=True,
            error=None,
            pending_products=[p for p in pending if p.id != product_id]
        )

        try:
            await self.repository.update_product_status(product_id, status, comment)
        except MarketplaceError as e:
            logger.error(f"Error setting {status.value} on {product_id}: {e}")
            self._moderating.discard(product_id)
            restored = list(self.state.value.pending_products)
            ids = [p.id for p in pending]
            if product_id in ids and not any(p.id == product_id for p in restored):
                index = ids.index(product_id)
                restored.insert(min(index, len(restored)), pending[index])
            self.state.update(
                is_processing=False,
                pending_products=restored,
                approve_dialog_product_id=None,
                reject_dialog_product_id=None,
                admin_comment='',
                error=f"Failed to update product: {e}"
            )
            return False

        self._moderating.discard(product_id)
        self.state.update(
            is_processing=False,
            approve_dialog_product_id=None,
            reject_dialog_product_id=None,
            admin_comment='',
            success_message=message
        )
        return True

    # Reactivation

    async def reactivate_product(self, product_id: str) -> bool:
        """Return a paused or sold listing to sale."""
        try:
            product = await first(self.repository.get_product_by_id(product_id))
            if product is None:
                raise ValidationError("Product not found")
            if product.status not in REACTIVATABLE:
                raise ValidationError("Only paused or sold products can be reactivated")
            await self.repository.reactivate_product(product_id)
        except ValidationError as e:
            self.state.update(error=str(e))
            return False
        except (MarketplaceError, StoreError) as e:
            logger.error(f"Error reactivating {product_id}: {e}")
            self.state.update(error=f"Failed to reactivate product: {e}")
            return False

        self.state.update(success_message="Product reactivated")
        return True

__all__ = ['MarketplaceViewState', 'MarketplaceState', 'SearchParams']
