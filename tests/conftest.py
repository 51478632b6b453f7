"""Shared fixtures: an in-memory store seeded with user profiles."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from auth import AuthorizationPolicy, StaticIdentityProvider
from auth.models import USERS, UserProfile
from feed import FeedRepository
from feed.models import POSTS, FOLLOWS, Post, Follow
from marketplace import MarketplaceRepository
from marketplace.models import PRODUCTS, Product, ProductStatus
from storage import MemoryBlobStore
from store import DocumentRef
from store.memory import InMemoryStore

ADMIN_ID = "admin"
ALICE = "alice"
BOB = "bob"
CAROL = "carol"

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

async def next_value(stream, timeout: float = 1.0):
    """Await the next value of a live stream."""
    return await asyncio.wait_for(stream.__anext__(), timeout)

async def seed_post(store, post_id: str, user_id: str, minutes: int, **fields) -> Post:
    """Write a post created ``minutes`` after BASE_TIME."""
    post = Post(
        id=post_id,
        user_id=user_id,
        user_name=user_id.title(),
        content=fields.pop('content', f"post {post_id}"),
        created_at=BASE_TIME + timedelta(minutes=minutes),
        last_modified_at=BASE_TIME + timedelta(minutes=minutes),
        **fields
    )
    await store.set(DocumentRef(POSTS, post_id), post.to_document())
    return post

async def seed_follow(store, follower_id: str, followed_id: str) -> None:
    follow = Follow(id=f"{follower_id}-{followed_id}", follower_id=follower_id, followed_id=followed_id)
    await store.set(DocumentRef(FOLLOWS, follow.id), follow.to_document())

async def seed_product(store, product_id: str, seller_id: str = ALICE,
                       status: ProductStatus = ProductStatus.APPROVED, minutes: int = 0,
                       **fields) -> Product:
    product = Product(
        id=product_id,
        seller_id=seller_id,
        seller_name=seller_id.title(),
        title=fields.pop('title', f"Product {product_id}"),
        price=fields.pop('price', Decimal('10.00')),
        status=status,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        last_updated_at=BASE_TIME + timedelta(minutes=minutes),
        **fields
    )
    await store.set(DocumentRef(PRODUCTS, product_id), product.to_document())
    return product

@pytest_asyncio.fixture
async def store():
    """In-memory store with profiles for every test user."""
    store = InMemoryStore()
    for user_id in (ADMIN_ID, ALICE, BOB, CAROL):
        profile = UserProfile(
            id=user_id,
            username=user_id.title(),
            profile_image_url=f"https://img.example.com/{user_id}.png"
        )
        await store.set(DocumentRef(USERS, user_id), profile.to_document())
    return store

@pytest.fixture
def blobs():
    return MemoryBlobStore()

@pytest.fixture
def identity():
    return StaticIdentityProvider(ALICE)

@pytest.fixture
def policy():
    return AuthorizationPolicy({ADMIN_ID})

@pytest.fixture
def feed_repository(store, blobs, identity, policy):
    return FeedRepository(store, blobs, identity, policy, feed_window=30)

@pytest.fixture
def marketplace_repository(store, blobs, identity, policy):
    return MarketplaceRepository(store, blobs, identity, policy)
