"""Tests for the feed view state."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from feed import FeedError, FeedRepository
from feed.models import POSTS
from store import DocumentRef, increment
from viewstate import StateHolder, JobScope
from viewstate.feed import FeedViewState, FeedState, normalize_tags, tags_to_text

from conftest import ALICE, BOB, CAROL, seed_post

TIMEOUT = 1.0

@pytest_asyncio.fixture
async def view(store, feed_repository):
    await seed_post(store, "P1", BOB, minutes=1)
    await seed_post(store, "P2", ALICE, minutes=2)
    view = FeedViewState(feed_repository)
    await view.start()
    await view.feed.wait_for(lambda s: len(s.posts) == 2, TIMEOUT)
    yield view
    await view.close()

async def open_detail(view, post_id):
    view.load_post_detail(post_id)
    await view.detail.wait_for(lambda s: s.post is not None, TIMEOUT)
    await view.interactions.wait_for(lambda c: post_id in c.entries, TIMEOUT)
    # Let every like/favorite listener deliver its first snapshot
    await asyncio.sleep(0.05)

def test_normalize_tags():
    assert normalize_tags("dog, cat #fun") == ["#dog", "#cat", "#fun"]
    assert normalize_tags("  #a##b , ") == ["#a", "#b"]
    assert normalize_tags("") == []
    assert tags_to_text(["#dog", "#cat"]) == "dog, cat"

@pytest.mark.asyncio
async def test_state_holder_ignores_equal_values():
    holder = StateHolder(FeedState())
    watcher = holder.watch()

    assert await watcher.__anext__() == FeedState()
    holder.update(is_loading=False)
    holder.update(is_loading=True)
    assert (await asyncio.wait_for(watcher.__anext__(), TIMEOUT)).is_loading

    await watcher.aclose()

@pytest.mark.asyncio
async def test_job_scope_replaces_slot():
    jobs = JobScope('test')
    first = jobs.launch('slot', asyncio.sleep(10))
    second = jobs.launch('slot', asyncio.sleep(10))

    await asyncio.gather(first, return_exceptions=True)
    assert first.cancelled()
    assert jobs.slots() == ['slot']

    await jobs.close()
    assert second.cancelled()
    assert not jobs.is_active('slot')

@pytest.mark.asyncio
async def test_start_resolves_user(view):
    assert view.feed.value.current_user_id == ALICE
    assert not view.feed.value.is_admin
    assert [p.id for p in view.feed.value.posts] == ["P2", "P1"]

@pytest.mark.asyncio
async def test_like_is_shown_before_the_write_completes(view, feed_repository):
    await open_detail(view, "P1")
    gate = asyncio.Event()

    async def slow_like(post_id):
        await gate.wait()
        return True

    with patch.object(feed_repository, 'like_post', AsyncMock(side_effect=slow_like)):
        task = asyncio.create_task(view.like_post("P1"))
        await asyncio.sleep(0)

        assert view.interactions.value.get("P1").is_liked
        assert view.detail.value.is_liked
        assert view.detail.value.post.likes == 1
        assert next(p for p in view.feed.value.posts if p.id == "P1").likes == 1

        gate.set()
        assert await task is True

@pytest.mark.asyncio
async def test_like_toggle_reaches_the_store(view, feed_repository):
    await open_detail(view, "P1")

    assert await view.like_post("P1") is True
    await view.detail.wait_for(lambda s: s.is_liked and s.post.likes == 1, TIMEOUT)
    assert (await feed_repository.get_post("P1")).likes == 1

    assert await view.like_post("P1") is True
    await view.detail.wait_for(lambda s: not s.is_liked and s.post.likes == 0, TIMEOUT)
    await view.feed.wait_for(lambda s: s.posts[1].likes == 0, TIMEOUT)
    assert (await feed_repository.get_post("P1")).likes == 0

@pytest.mark.asyncio
async def test_failed_like_is_rolled_back(view, feed_repository):
    await open_detail(view, "P1")

    with patch.object(feed_repository, 'like_post', AsyncMock(side_effect=FeedError("offline"))):
        assert await view.like_post("P1") is False

    assert not view.interactions.value.get("P1").is_liked
    assert not view.detail.value.is_liked
    assert view.detail.value.post.likes == 0
    assert next(p for p in view.feed.value.posts if p.id == "P1").likes == 0
    assert "offline" in view.detail.value.error

@pytest.mark.asyncio
async def test_failed_like_keeps_count_confirmed_meanwhile(view, store, feed_repository):
    await open_detail(view, "P1")

    async def liked_elsewhere_then_fail(post_id):
        await store.update(DocumentRef(POSTS, post_id), {'likes': increment(1)})
        await asyncio.sleep(0.05)
        raise FeedError("offline")

    with patch.object(feed_repository, 'like_post', AsyncMock(side_effect=liked_elsewhere_then_fail)):
        assert await view.like_post("P1") is False

    assert not view.detail.value.is_liked
    assert view.detail.value.post.likes == 1
    assert next(p for p in view.feed.value.posts if p.id == "P1").likes == 1
    assert (await feed_repository.get_post("P1")).likes == 1

@pytest.mark.asyncio
async def test_failed_favorite_is_rolled_back(view, feed_repository):
    with patch.object(feed_repository, 'add_to_favorites', AsyncMock(side_effect=FeedError("offline"))):
        assert await view.toggle_favorite("P1") is False

    assert not view.interactions.value.get("P1").is_favorite
    assert "offline" in view.feed.value.error

    assert await view.toggle_favorite("P1") is True
    assert view.interactions.value.get("P1").is_favorite

@pytest.mark.asyncio
async def test_blank_comment_is_not_sent(view, feed_repository):
    await open_detail(view, "P1")
    view.on_comment_text_change("   ")

    with patch.object(feed_repository, 'add_comment', AsyncMock()) as add_comment:
        assert await view.add_comment("P1") is False
        add_comment.assert_not_awaited()

@pytest.mark.asyncio
async def test_comment_is_added(view):
    await open_detail(view, "P1")
    view.on_comment_text_change("  Cute dog  ")

    assert await view.add_comment("P1") is True
    assert view.detail.value.comment_text == ''

    detail = await view.detail.wait_for(lambda s: len(s.comments) == 1, TIMEOUT)
    assert detail.comments[0].content == "Cute dog"
    detail = await view.detail.wait_for(lambda s: s.post.comments_count == 1, TIMEOUT)

    assert await view.delete_comment(detail.comments[0].id) is True
    await view.detail.wait_for(lambda s: not s.comments, TIMEOUT)

@pytest.mark.asyncio
async def test_composer_requires_content_or_image(view, feed_repository):
    view.show_create_post()

    with patch.object(feed_repository, 'create_post', AsyncMock()) as create_post:
        assert await view.create_post() is False
        create_post.assert_not_awaited()
    assert view.composer.value.error == "Write something or add an image"
    assert view.composer.value.is_visible

@pytest.mark.asyncio
async def test_create_post_from_composer(view, blobs):
    view.show_create_post()
    view.on_post_content_change("Beach day")
    view.on_post_tags_change("dog beach")
    view.on_post_location_change("  Nice ")
    view.add_post_image(b"one")
    view.add_post_image(b"two")
    view.remove_post_image(0)

    assert await view.create_post() is True

    assert view.composer.value.success_message == "Post created"
    assert not view.composer.value.is_visible
    feed = await view.feed.wait_for(lambda s: len(s.posts) == 3, TIMEOUT)
    created = feed.posts[0]
    assert (created.content, created.tags, created.location) == ("Beach day", ["#dog", "#beach"], "Nice")
    assert list(blobs.objects.values()) == [b"two"]

@pytest.mark.asyncio
async def test_edit_post_from_composer(view, feed_repository):
    post = next(p for p in view.feed.value.posts if p.id == "P2")
    view.show_edit_post(post)
    assert view.composer.value.is_editing
    assert view.composer.value.content == post.content

    view.on_post_content_change("Edited")
    view.on_post_tags_change("#new")
    assert await view.update_post() is True

    assert view.composer.value.success_message == "Post updated"
    stored = await feed_repository.get_post("P2")
    assert (stored.content, stored.tags) == ("Edited", ["#new"])

@pytest.mark.asyncio
async def test_update_without_editing_post(view):
    view.show_create_post()
    view.on_post_content_change("text")

    assert await view.update_post() is False
    assert view.composer.value.error == "No post is being edited"

@pytest.mark.asyncio
async def test_delete_post_clears_detail(view):
    await open_detail(view, "P2")

    assert await view.delete_post("P2") is True

    assert view.detail.value.post is None
    assert view.detail.value.success_message == "Post deleted"
    assert not view.jobs.is_active('detail')
    await view.feed.wait_for(lambda s: [p.id for p in s.posts] == ["P1"], TIMEOUT)

@pytest.mark.asyncio
async def test_delete_foreign_post_reports_error(view):
    assert await view.delete_post("P1") is False
    assert "author or an admin" in view.feed.value.error

    view.clear_error()
    assert view.feed.value.error is None

@pytest.mark.asyncio
async def test_reloading_feed_cancels_previous_listener(view, store):
    first = view.load_feed()
    second = view.load_feed()

    await asyncio.gather(first, return_exceptions=True)
    assert first.cancelled()
    assert not second.done()
    await view.feed.wait_for(lambda s: not s.is_loading and len(s.posts) == 2, TIMEOUT)

@pytest.mark.asyncio
async def test_lost_connection_is_reported(view, store):
    store.disconnect()

    state = await view.feed.wait_for(lambda s: s.error is not None, TIMEOUT)
    assert state.error.startswith("Failed to load feed")

@pytest.mark.asyncio
async def test_reloads_do_not_leak_listeners(view, store):
    await open_detail(view, "P1")
    before = store.listener_count

    for _ in range(3):
        view.load_feed()
    await view.feed.wait_for(lambda s: not s.is_loading and len(s.posts) == 2, TIMEOUT)
    view.load_post_detail("P2")
    await view.detail.wait_for(lambda s: s.post is not None and s.post.id == "P2", TIMEOUT)
    await asyncio.sleep(0.05)

    assert store.listener_count == before

    await view.close()
    assert store.listener_count == 0

@pytest.mark.asyncio
async def test_posts_leaving_the_feed_release_their_listeners(store, identity, policy, blobs):
    await seed_post(store, "P1", BOB, minutes=1)
    await seed_post(store, "P2", ALICE, minutes=2)
    view = FeedViewState(FeedRepository(store, blobs, identity, policy, feed_window=2))
    await view.start()
    await view.interactions.wait_for(lambda c: set(c.entries) == {"P1", "P2"}, TIMEOUT)
    await asyncio.sleep(0.05)
    before = store.listener_count

    await seed_post(store, "P3", CAROL, minutes=3)

    await view.feed.wait_for(lambda s: [p.id for p in s.posts] == ["P3", "P2"], TIMEOUT)
    await view.interactions.wait_for(lambda c: set(c.entries) == {"P2", "P3"}, TIMEOUT)
    await asyncio.sleep(0.05)
    assert sorted(view.jobs.slots('like:')) == ["like:P2", "like:P3"]
    assert store.listener_count == before

    await view.close()
    assert store.listener_count == 0

@pytest.mark.asyncio
async def test_open_detail_keeps_its_interaction_entry(store, identity, policy, blobs):
    await seed_post(store, "P1", BOB, minutes=1)
    await seed_post(store, "P2", ALICE, minutes=2)
    view = FeedViewState(FeedRepository(store, blobs, identity, policy, feed_window=2))
    await view.start()
    await open_detail(view, "P1")

    await seed_post(store, "P3", CAROL, minutes=3)
    await view.interactions.wait_for(lambda c: "P3" in c.entries, TIMEOUT)

    assert set(view.interactions.value.entries) == {"P1", "P2", "P3"}
    assert not view.jobs.is_active('like:P1')
    assert view.jobs.is_active('detail_like')

    await view.close()
