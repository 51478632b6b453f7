"""Tests for the feed repository."""

import asyncio

import pytest

from feed import (
    FeedError,
    PostNotFoundError,
    CommentNotFoundError,
    AuthorNotFoundError,
    PermissionDeniedError,
    rank_posts
)
from feed.models import POSTS, COMMENTS, LIKES, FAVORITES, Post
from store import DocumentRef, Query, composite_key

from conftest import ADMIN_ID, ALICE, BOB, CAROL, next_value, seed_post, seed_follow

async def count(store, collection, **filters) -> int:
    query = Query(collection)
    for field, value in filters.items():
        query = query.where(field, "==", value)
    return len(await store.query(query))

def test_rank_posts_is_a_stable_partition():
    """Followed authors first, recency kept inside each group."""
    posts = [
        Post(id="P1", user_id="followed1"),
        Post(id="P2", user_id="stranger1"),
        Post(id="P3", user_id="followed2"),
        Post(id="P4", user_id="stranger2"),
        Post(id="P5", user_id="stranger1"),
    ]

    ranked = rank_posts(posts, {"followed1", "followed2"}, viewer_id="viewer")

    assert [p.id for p in ranked] == ["P1", "P3", "P2", "P4", "P5"]

def test_rank_posts_without_follows_keeps_order():
    posts = [Post(id="P1", user_id="viewer"), Post(id="P2", user_id="x"), Post(id="P3", user_id="viewer")]

    assert [p.id for p in rank_posts(posts, set(), viewer_id="viewer")] == ["P1", "P2", "P3"]

def test_rank_posts_counts_own_posts_as_followed():
    posts = [Post(id="P1", user_id="x"), Post(id="P2", user_id="viewer"), Post(id="P3", user_id="f")]

    assert [p.id for p in rank_posts(posts, {"f"}, viewer_id="viewer")] == ["P2", "P3", "P1"]

@pytest.mark.asyncio
async def test_get_posts_ranks_live_window(store, feed_repository):
    # P1 newest ... P5 oldest
    await seed_post(store, "P1", BOB, minutes=5)
    await seed_post(store, "P2", CAROL, minutes=4)
    await seed_post(store, "P3", BOB, minutes=3)
    await seed_post(store, "P4", CAROL, minutes=2)
    await seed_post(store, "P5", CAROL, minutes=1)
    await seed_follow(store, ALICE, BOB)

    stream = feed_repository.get_posts(ALICE)
    posts = await next_value(stream)
    assert [p.id for p in posts] == ["P1", "P3", "P2", "P4", "P5"]

    await seed_post(store, "P6", CAROL, minutes=6)
    posts = await next_value(stream)
    assert [p.id for p in posts] == ["P1", "P3", "P6", "P2", "P4", "P5"]

    await stream.aclose()
    assert store.listener_count == 0

@pytest.mark.asyncio
async def test_get_posts_is_bounded_by_window(store, blobs, identity, policy):
    from feed import FeedRepository

    repository = FeedRepository(store, blobs, identity, policy, feed_window=3)
    for i in range(5):
        await seed_post(store, f"P{i}", BOB, minutes=i)

    stream = repository.get_posts(ALICE)
    posts = await next_value(stream)
    await stream.aclose()

    assert [p.id for p in posts] == ["P4", "P3", "P2"]

@pytest.mark.asyncio
async def test_create_post_snapshots_author_and_uploads(store, blobs, feed_repository):
    draft = Post(content="Walk in the park", tags=["#dog"], location="Berlin")

    created = await feed_repository.create_post(draft, [b"img-1", b"img-2"])

    assert created.id
    assert created.user_id == ALICE
    assert created.user_name == "Alice"
    assert created.user_profile_image == "https://img.example.com/alice.png"
    assert len(created.image_urls) == 2
    assert all(f"post_images/{ALICE}/{created.id}/" in url for url in created.image_urls)
    assert len(blobs.objects) == 2

    stored = await feed_repository.get_post(created.id)
    assert stored.model_dump() == created.model_dump()

@pytest.mark.asyncio
async def test_create_post_without_profile_fails(identity, feed_repository):
    identity.sign_in("ghost")

    with pytest.raises(AuthorNotFoundError):
        await feed_repository.create_post(Post(content="hello"))

@pytest.mark.asyncio
async def test_signed_out_user_cannot_post(identity, feed_repository):
    identity.sign_out()

    with pytest.raises(PermissionDeniedError):
        await feed_repository.create_post(Post(content="hello"))

@pytest.mark.asyncio
async def test_like_counter_matches_like_records(store, identity, feed_repository):
    """Duplicate likes and unlikes never drift the counter."""
    await seed_post(store, "P1", BOB, minutes=1)

    assert await feed_repository.like_post("P1") is True
    assert await feed_repository.like_post("P1") is False
    await asyncio.gather(*(feed_repository.like_post("P1") for _ in range(5)))

    post = await feed_repository.get_post("P1")
    assert post.likes == 1 == await count(store, LIKES, post_id="P1")

    identity.sign_in(CAROL)
    await feed_repository.like_post("P1")
    identity.sign_in(ALICE)
    await asyncio.gather(*(feed_repository.unlike_post("P1") for _ in range(3)))
    assert await feed_repository.unlike_post("P1") is False

    post = await feed_repository.get_post("P1")
    assert post.likes == 1 == await count(store, LIKES, post_id="P1")
    assert (await store.get(DocumentRef(LIKES, composite_key(CAROL, "P1")))).exists

@pytest.mark.asyncio
async def test_like_missing_post(feed_repository):
    with pytest.raises(PostNotFoundError):
        await feed_repository.like_post("nope")

@pytest.mark.asyncio
async def test_is_post_liked_is_live(store, feed_repository):
    await seed_post(store, "P1", BOB, minutes=1)
    stream = feed_repository.is_post_liked("P1")

    assert await next_value(stream) is False
    await feed_repository.like_post("P1")
    assert await next_value(stream) is True
    await feed_repository.unlike_post("P1")
    assert await next_value(stream) is False

    await stream.aclose()

@pytest.mark.asyncio
async def test_favorites_are_idempotent(store, feed_repository):
    await seed_post(store, "P1", BOB, minutes=1)

    assert await feed_repository.add_to_favorites("P1") is True
    assert await feed_repository.add_to_favorites("P1") is False
    assert await count(store, FAVORITES, post_id="P1") == 1

    assert await feed_repository.remove_from_favorites("P1") is True
    assert await feed_repository.remove_from_favorites("P1") is False
    assert await count(store, FAVORITES, post_id="P1") == 0

    # No counter on posts for favorites
    assert (await feed_repository.get_post("P1")).likes == 0

@pytest.mark.asyncio
async def test_favorite_of_deleted_post_is_refused(store, feed_repository):
    await seed_post(store, "P1", ALICE, minutes=1)
    await feed_repository.delete_post("P1")

    with pytest.raises(PostNotFoundError):
        await feed_repository.add_to_favorites("P1")
    with pytest.raises(PostNotFoundError):
        await feed_repository.add_to_favorites("never-existed")
    assert await count(store, FAVORITES, post_id="P1") == 0

@pytest.mark.asyncio
async def test_update_post_writes_every_editable_field(store, feed_repository):
    original = await seed_post(store, "P1", ALICE, minutes=1, location="Berlin")

    await feed_repository.update_post(original.model_copy(update={'location': None, 'tags': ["#a", "#b"]}))

    stored = await feed_repository.get_post("P1")
    assert stored.location is None
    assert stored.tags == ["#a", "#b"]
    assert stored.content == original.content

@pytest.mark.asyncio
async def test_favorite_posts_newest_first(store, feed_repository):
    for i in range(12):
        await seed_post(store, f"P{i:02d}", BOB, minutes=i)
    stream = feed_repository.get_favorite_posts(ALICE)
    assert await next_value(stream) == []

    for i in range(12):
        await feed_repository.add_to_favorites(f"P{i:02d}")

    posts = await next_value(stream)
    while len(posts) < 12:
        posts = await next_value(stream)
    await stream.aclose()

    assert [p.id for p in posts] == [f"P{i:02d}" for i in reversed(range(12))]

@pytest.mark.asyncio
async def test_update_post_changes_only_editable_fields(store, identity, feed_repository):
    original = await seed_post(store, "P1", ALICE, minutes=1, tags=["#old"])
    identity.sign_in(BOB)
    await feed_repository.like_post("P1")
    identity.sign_in(ALICE)

    edited = original.model_copy(update={
        'content': "edited",
        'tags': ["#new"],
        'likes': 99,
        'user_name': "Mallory"
    })
    await feed_repository.update_post(edited)

    stored = await feed_repository.get_post("P1")
    assert stored.content == "edited"
    assert stored.tags == ["#new"]
    assert stored.likes == 1
    assert stored.user_name == "Alice"
    assert stored.created_at == original.created_at
    assert stored.last_modified_at > original.last_modified_at

@pytest.mark.asyncio
async def test_update_post_permissions(store, identity, feed_repository):
    post = await seed_post(store, "P1", ALICE, minutes=1)

    identity.sign_in(BOB)
    with pytest.raises(PermissionDeniedError):
        await feed_repository.update_post(post.model_copy(update={'content': "hijacked"}))

    identity.sign_in(ADMIN_ID)
    await feed_repository.update_post(post.model_copy(update={'content': "moderated"}))
    assert (await feed_repository.get_post("P1")).content == "moderated"

@pytest.mark.asyncio
async def test_update_deleted_post(feed_repository):
    with pytest.raises(PostNotFoundError):
        await feed_repository.update_post(Post(id="gone", content="x"))

@pytest.mark.asyncio
async def test_delete_post_cascades(store, blobs, identity, feed_repository):
    created = await feed_repository.create_post(Post(content="bye"), [b"img"])
    await seed_post(store, "other", ALICE, minutes=1)
    await feed_repository.add_comment(created.id, "first")
    await feed_repository.add_comment("other", "unrelated")
    await feed_repository.like_post(created.id)
    await feed_repository.add_to_favorites(created.id)
    identity.sign_in(BOB)
    await feed_repository.like_post(created.id)
    await feed_repository.add_comment(created.id, "second")

    with pytest.raises(PermissionDeniedError):
        await feed_repository.delete_post(created.id)

    identity.sign_in(ALICE)
    await feed_repository.delete_post(created.id)

    assert not (await store.get(DocumentRef(POSTS, created.id))).exists
    for collection in (COMMENTS, LIKES, FAVORITES):
        assert await count(store, collection, post_id=created.id) == 0
    assert await count(store, COMMENTS, post_id="other") == 1
    # Blobs are kept
    assert len(blobs.objects) == 1

    with pytest.raises(PostNotFoundError):
        await feed_repository.delete_post(created.id)

@pytest.mark.asyncio
async def test_comments_update_counter_and_order(store, identity, feed_repository):
    await seed_post(store, "P1", ALICE, minutes=1)
    stream = feed_repository.get_comments_by_post_id("P1")
    assert await next_value(stream) == []

    first = await feed_repository.add_comment("P1", "one")
    identity.sign_in(BOB)
    second = await feed_repository.add_comment("P1", "two")

    comments = await next_value(stream)
    while len(comments) < 2:
        comments = await next_value(stream)
    await stream.aclose()

    assert [c.content for c in comments] == ["one", "two"]
    assert second.user_name == "Bob"
    assert (await feed_repository.get_post("P1")).comments_count == 2

    # Carol is neither commenter nor post owner
    identity.sign_in(CAROL)
    with pytest.raises(PermissionDeniedError):
        await feed_repository.delete_comment(second.id)

    # The post owner may delete any comment on the post
    identity.sign_in(ALICE)
    await feed_repository.delete_comment(second.id)
    identity.sign_in(BOB)
    with pytest.raises(CommentNotFoundError):
        await feed_repository.delete_comment(second.id)

    identity.sign_in(ADMIN_ID)
    await feed_repository.delete_comment(first.id)
    assert (await feed_repository.get_post("P1")).comments_count == 0

@pytest.mark.asyncio
async def test_comment_on_missing_post(feed_repository):
    with pytest.raises(PostNotFoundError):
        await feed_repository.add_comment("nope", "hello")

@pytest.mark.asyncio
async def test_get_post_by_id_reports_deletion(store, feed_repository):
    await seed_post(store, "P1", ALICE, minutes=1)
    stream = feed_repository.get_post_by_id("P1")

    assert (await next_value(stream)).id == "P1"
    await feed_repository.delete_post("P1")
    assert await next_value(stream) is None

    await stream.aclose()

@pytest.mark.asyncio
async def test_user_posts(store, feed_repository):
    await seed_post(store, "P1", ALICE, minutes=1)
    await seed_post(store, "P2", BOB, minutes=2)
    await seed_post(store, "P3", ALICE, minutes=3)

    stream = feed_repository.get_user_posts(ALICE)
    posts = await next_value(stream)
    await stream.aclose()

    assert [p.id for p in posts] == ["P3", "P1"]

@pytest.mark.asyncio
async def test_update_author_profile_fans_out(store, identity, feed_repository):
    await seed_post(store, "P1", ALICE, minutes=1)
    await seed_post(store, "P2", BOB, minutes=2)
    await feed_repository.add_comment("P2", "nice")

    identity.sign_in(BOB)
    with pytest.raises(PermissionDeniedError):
        await feed_repository.update_author_profile(ALICE, "Eve", "https://img/eve.png")

    identity.sign_in(ALICE)
    updated = await feed_repository.update_author_profile(ALICE, "Alicia", "https://img/new.png")

    assert updated == 2
    post = await feed_repository.get_post("P1")
    assert (post.user_name, post.user_profile_image) == ("Alicia", "https://img/new.png")
    comment = (await store.query(Query(COMMENTS).where("user_id", "==", ALICE))).documents[0]
    assert comment.get("user_name") == "Alicia"
    assert (await feed_repository.get_post("P2")).user_name == "Bob"

@pytest.mark.asyncio
async def test_listener_failure_surfaces_as_feed_error(store, feed_repository):
    await seed_post(store, "P1", ALICE, minutes=1)
    stream = feed_repository.get_posts(ALICE)
    await next_value(stream)

    store.disconnect()

    with pytest.raises(FeedError):
        await next_value(stream)
    assert store.listener_count == 0
