"""Feed view state.

Composes feed repository streams into the state a feed screen renders:
- ``feed``: the ranked post list
- ``detail``: one post with its comments
- ``composer``: the create/edit post form
- ``interactions``: like/favorite flags per post id

The interactions cache is the only place like and favorite flags are kept.
The detail slice carries a projection of the cache entry for its post, so
a toggle updates both at once. Failed toggles are always rolled back.
"""

import logging
import re
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field

from auth import AuthorizationPolicy
from feed import FeedRepository, FeedError
from feed.models import Post, Comment
from . import StateHolder, JobScope, ValidationError

logger = logging.getLogger(__name__)

TAG_SEPARATORS = re.compile(r'[,\s#]+')

def normalize_tags(text: str) -> List[str]:
    """Turn free text into a tag list.

    Splits on commas, whitespace and ``#``, drops empty parts and prefixes
    each tag with ``#``: ``"dog, cat #fun"`` becomes ``["#dog", "#cat", "#fun"]``.
    """
    return [f"#{part}" for part in TAG_SEPARATORS.split(text) if part.strip()]

def tags_to_text(tags: List[str]) -> str:
    """Render tags back into editable text."""
    return ', '.join(tag.removeprefix('#') for tag in tags)

class FeedState(BaseModel):
    posts: List[Post] = Field(default_factory=list)
    is_loading: bool = False
    error: Optional[str] = None
    current_user_id: Optional[str] = None
    is_admin: bool = False

class PostDetailState(BaseModel):
    post: Optional[Post] = None
    comments: List[Comment] = Field(default_factory=list)
    is_loading: bool = False
    is_liked: bool = False
    is_favorite: bool = False
    comment_text: str = ''
    is_submitting_comment: bool = False
    error: Optional[str] = None
    success_message: Optional[str] = None

class PostComposerState(BaseModel):
    is_visible: bool = False
    editing_post: Optional[Post] = None
    content: str = ''
    tags_text: str = ''
    location: str = ''
    images: List[bytes] = Field(default_factory=list)
    is_submitting: bool = False
    error: Optional[str] = None
    success_message: Optional[str] = None

    @property
    def is_editing(self) -> bool:
        return self.editing_post is not None

class PostInteraction(BaseModel):
    is_liked: bool = False
    is_favorite: bool = False

class InteractionCache(BaseModel):
    entries: Dict[str, PostInteraction] = Field(default_factory=dict)

    def get(self, post_id: str) -> PostInteraction:
        return self.entries.get(post_id, PostInteraction())

class FeedViewState:
    """State and actions of the feed screens."""

    def __init__(self, repository: FeedRepository, policy: Optional[AuthorizationPolicy] = None):
        self.repository = repository
        self.policy = policy or repository.policy
        self.feed = StateHolder(FeedState())
        self.detail = StateHolder(PostDetailState())
        self.composer = StateHolder(PostComposerState())
        self.interactions = StateHolder(InteractionCache())
        self.jobs = JobScope('feed')
        # Live emissions received per slice, used to tell confirmed counts from optimistic ones
        self._emissions: Dict[str, int] = {'feed': 0, 'detail': 0}
        self._detail_post_id: Optional[str] = None

    @property
    def current_user_id(self) -> Optional[str]:
        return self.feed.value.current_user_id

    async def start(self) -> None:
        """Resolve the current user and load the feed."""
        user_id = await self.repository.identity.get_current_user_id()
        self.feed.update(current_user_id=user_id, is_admin=self.policy.is_admin(user_id))
        self.load_feed()

    async def close(self) -> None:
        """Stop every live listener."""
        await self.jobs.close()

    def clear_error(self) -> None:
        self.feed.update(error=None)
        self.detail.update(error=None)
        self.composer.update(error=None)

    def clear_success_message(self) -> None:
        self.detail.update(success_message=None)
        self.composer.update(success_message=None)

    # Interactions

    def _interaction(self, post_id: str) -> PostInteraction:
        return self.interactions.value.get(post_id)

    def _set_interaction(self, post_id: str, **changes) -> None:
        entries = dict(self.interactions.value.entries)
        entries[post_id] = self._interaction(post_id).model_copy(update=changes)
        self.interactions.set(InteractionCache(entries=entries))
        self._project_detail()

    def _project_detail(self) -> None:
        post = self.detail.value.post
        if post is None:
            return
        entry = self._interaction(post.id)
        self.detail.update(is_liked=entry.is_liked, is_favorite=entry.is_favorite)

    def _adjust_likes(self, post_id: str, delta: int, skip: Set[str] = frozenset()) -> None:
        posts = self.feed.value.posts
        if 'feed' not in skip and any(p.id == post_id for p in posts):
            self.feed.update(posts=[
                p.model_copy(update={'likes': max(0, p.likes + delta)}) if p.id == post_id else p
                for p in posts
            ])
        post = self.detail.value.post
        if 'detail' not in skip and post is not None and post.id == post_id:
            self.detail.update(post=post.model_copy(update={'likes': max(0, post.likes + delta)}))

    def _report(self, post_id: Optional[str], message: str) -> None:
        post = self.detail.value.post
        if post is not None and post.id == post_id:
            self.detail.update(error=message)
        else:
            self.feed.update(error=message)

    async def _collect_like(self, post_id: str) -> None:
        try:
            async for liked in self.repository.is_post_liked(post_id, self.current_user_id):
                self._set_interaction(post_id, is_liked=liked)
        except FeedError as e:
            logger.warning(f"Like listener for {post_id} stopped: {e}")

    async def _collect_favorite(self, post_id: str) -> None:
        try:
            async for favorite in self.repository.is_post_favorite(post_id, self.current_user_id):
                self._set_interaction(post_id, is_favorite=favorite)
        except FeedError as e:
            logger.warning(f"Favorite listener for {post_id} stopped: {e}")

    def _track_likes(self, posts: List[Post]) -> None:
        """Listen to like state of visible posts only."""
        if not self.current_user_id:
            return
        visible = {p.id for p in posts}
        entries = self.interactions.value.entries
        stale = [post_id for post_id in entries if post_id not in visible and post_id != self._detail_post_id]
        if stale:
            self.interactions.set(InteractionCache(entries={
                post_id: entry for post_id, entry in entries.items() if post_id not in stale
            }))
        for slot in self.jobs.slots('like:'):
            if slot[len('like:'):] not in visible:
                self.jobs.cancel(slot)
        for post_id in visible:
            slot = f"like:{post_id}"
            if not self.jobs.is_active(slot):
                self.jobs.launch(slot, self._collect_like(post_id))

    async def like_post(self, post_id: str) -> bool:
        """Toggle the like on a post, optimistically.

        Returns:
            True when the change was accepted
        """
        was_liked = self._interaction(post_id).is_liked
        delta = -1 if was_liked else 1
        self._set_interaction(post_id, is_liked=not was_liked)
        self._adjust_likes(post_id, delta)
        seen = dict(self._emissions)

        try:
            if was_liked:
                await self.repository.unlike_post(post_id)
            else:
                await self.repository.like_post(post_id)
            return True
        except FeedError as e:
            logger.error(f"Error toggling like on {post_id}: {e}")
            self._set_interaction(post_id, is_liked=was_liked)
            # A slice refreshed by a live snapshot meanwhile already holds the confirmed count
            refreshed = {name for name, count in self._emissions.items() if count != seen[name]}
            self._adjust_likes(post_id, -delta, skip=refreshed)
            self._report(post_id, f"Failed to update like: {e}")
            return False

    async def toggle_favorite(self, post_id: str) -> bool:
        """Toggle the saved flag of a post, optimistically."""
        was_favorite = self._interaction(post_id).is_favorite
        self._set_interaction(post_id, is_favorite=not was_favorite)

        try:
            if was_favorite:
                await self.repository.remove_from_favorites(post_id)
            else:
                await self.repository.add_to_favorites(post_id)
            return True
        except FeedError as e:
            logger.error(f"Error toggling favorite on {post_id}: {e}")
            self._set_interaction(post_id, is_favorite=was_favorite)
            self._report(post_id, f"Failed to update favorites: {e}")
            return False

    # Feed

    def load_feed(self):
        """(Re)subscribe to the feed; the previous subscription is cancelled."""
        self.feed.update(is_loading=True, error=None)
        return self.jobs.launch('feed', self._collect_feed())

    async def _collect_feed(self) -> None:
        try:
            async for posts in self.repository.get_posts(self.current_user_id):
                self._emissions['feed'] += 1
                self.feed.update(posts=posts, is_loading=False, error=None)
                self._track_likes(posts)
        except FeedError as e:
            logger.error(f"Feed listener stopped: {e}")
            self.feed.update(is_loading=False, error=f"Failed to load feed: {e}")

    # Detail

    def load_post_detail(self, post_id: str):
        """(Re)subscribe the detail slice to one post and its comments."""
        self.detail.set(PostDetailState(is_loading=True))
        self._detail_post_id = post_id
        task = self.jobs.launch('detail', self._collect_detail(post_id))
        self.jobs.launch('detail_comments', self._collect_comments(post_id))
        if self.current_user_id:
            self.jobs.launch('detail_like', self._collect_like(post_id))
            self.jobs.launch('detail_favorite', self._collect_favorite(post_id))
        else:
            for slot in ('detail_like', 'detail_favorite'):
                self.jobs.cancel(slot)
        return task

    def _cancel_detail(self) -> None:
        self._detail_post_id = None
        for slot in ('detail', 'detail_comments', 'detail_like', 'detail_favorite'):
            self.jobs.cancel(slot)

    async def _collect_detail(self, post_id: str) -> None:
        try:
            async for post in self.repository.get_post_by_id(post_id):
                if post is None:
                    self.detail.update(post=None, is_loading=False, error="Post not found")
                    continue
                self._emissions['detail'] += 1
                self.detail.update(post=post, is_loading=False, error=None)
                self._project_detail()
        except FeedError as e:
            logger.error(f"Detail listener for {post_id} stopped: {e}")
            self.detail.update(is_loading=False, error=f"Failed to load post: {e}")

    async def _collect_comments(self, post_id: str) -> None:
        try:
            async for comments in self.repository.get_comments_by_post_id(post_id):
                self.detail.update(comments=comments)
        except FeedError as e:
            logger.error(f"Comment listener for {post_id} stopped: {e}")
            self.detail.update(error=f"Failed to load comments: {e}")

    def on_comment_text_change(self, text: str) -> None:
        self.detail.update(comment_text=text)

    async def add_comment(self, post_id: str, content: Optional[str] = None) -> bool:
        """Submit a comment; blank text is ignored without a remote call."""
        content = (self.detail.value.comment_text if content is None else content).strip()
        if not content:
            return False

        self.detail.update(is_submitting_comment=True, error=None)
        try:
            await self.repository.add_comment(post_id, content)
        except FeedError as e:
            logger.error(f"Error adding comment to {post_id}: {e}")
            self.detail.update(is_submitting_comment=False, error=f"Failed to add comment: {e}")
            return False

        self.detail.update(is_submitting_comment=False, comment_text='')
        return True

    async def delete_comment(self, comment_id: str) -> bool:
        try:
            await self.repository.delete_comment(comment_id)
            return True
        except FeedError as e:
            logger.error(f"Error deleting comment {comment_id}: {e}")
            self.detail.update(error=f"Failed to delete comment: {e}")
            return False

    # Composer

    def show_create_post(self) -> None:
        self.composer.set(PostComposerState(is_visible=True))

    def hide_create_post(self) -> None:
        self.composer.set(PostComposerState())

    def show_edit_post(self, post: Post) -> None:
        self.composer.set(PostComposerState(
            is_visible=True,
            editing_post=post,
            content=post.content,
            tags_text=tags_to_text(post.tags),
            location=post.location or ''
        ))

    def on_post_content_change(self, text: str) -> None:
        self.composer.update(content=text)

    def on_post_tags_change(self, text: str) -> None:
        self.composer.update(tags_text=text)

    def on_post_location_change(self, text: str) -> None:
        self.composer.update(location=text)

    def add_post_image(self, data: bytes) -> None:
        self.composer.update(images=self.composer.value.images + [data])

    def remove_post_image(self, index: int) -> None:
        images = list(self.composer.value.images)
        if 0 <= index < len(images):
            del images[index]
            self.composer.update(images=images)

    def _validate_composer(self) -> PostComposerState:
        state = self.composer.value
        existing = len(state.editing_post.image_urls) if state.editing_post else 0
        if not state.content.strip() and not state.images and not existing:
            raise ValidationError("Write something or add an image")
        return state

    def _finish_composer(self, message: str) -> None:
        self.composer.set(PostComposerState(success_message=message))
        self.load_feed()

    async def create_post(self) -> bool:
        try:
            state = self._validate_composer()
        except ValidationError as e:
            self.composer.update(error=str(e))
            return False

        self.composer.update(is_submitting=True, error=None)
        draft = Post(
            content=state.content.strip(),
            tags=normalize_tags(state.tags_text),
            location=state.location.strip() or None
        )
        try:
            await self.repository.create_post(draft, state.images)
        except FeedError as e:
            logger.error(f"Error creating post: {e}")
            self.composer.update(is_submitting=False, error=f"Failed to create post: {e}")
            return False

        self._finish_composer("Post created")
        return True

    async def update_post(self) -> bool:
        try:
            state = self._validate_composer()
            if state.editing_post is None:
                raise ValidationError("No post is being edited")
        except ValidationError as e:
            self.composer.update(error=str(e))
            return False

        self.composer.update(is_submitting=True, error=None)
        edited = state.editing_post.model_copy(update={
            'content': state.content.strip(),
            'tags': normalize_tags(state.tags_text),
            'location': state.location.strip() or None
        })
        try:
            await self.repository.update_post(edited)
        except FeedError as e:
            logger.error(f"Error updating post {edited.id}: {e}")
            self.composer.update(is_submitting=False, error=f"Failed to update post: {e}")
            return False

        self._finish_composer("Post updated")
        shown = self.detail.value.post
        if shown is not None and shown.id == edited.id:
            self.load_post_detail(edited.id)
        return True

    async def delete_post(self, post_id: str) -> bool:
        try:
            await self.repository.delete_post(post_id)
        except FeedError as e:
            logger.error(f"Error deleting post {post_id}: {e}")
            self._report(post_id, f"Failed to delete post: {e}")
            return False

        shown = self.detail.value.post
        if shown is not None and shown.id == post_id:
            self._cancel_detail()
            self.detail.set(PostDetailState(success_message="Post deleted"))
        else:
            self.detail.update(success_message="Post deleted")
        self.load_feed()
        return True

__all__ = [
    'FeedViewState',
    'FeedState',
    'PostDetailState',
    'PostComposerState',
    'PostInteraction',
    'InteractionCache',
    'normalize_tags',
    'tags_to_text'
]
