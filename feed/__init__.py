"""Feed module for posts, comments, likes and favorites.

This module provides functionality for:
- Live, ranked feed lists (followed authors first)
- Creating, editing and deleting posts with cascading cleanup
- Likes with an atomic per-post counter
- Favorites and comments
- Reconciling denormalized author fields
"""

import logging
import uuid
from contextlib import aclosing
from typing import AsyncIterator, Iterable, List, Optional, Sequence, Set

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
from .models import (
    POSTS,
    COMMENTS,
    LIKES,
    FAVORITES,
    FOLLOWS,
    Post,
    Comment,
    Like,
    Favorite
)

logger = logging.getLogger(__name__)

DEFAULT_FEED_WINDOW = 30

# Maximum number of values the store accepts in an 'in' filter
IN_QUERY_CHUNK = 10

# Fields an author or admin may change after creation
MUTABLE_FIELDS = {
    'content',
    'tags',
    'location'
}

class FeedError(Exception):
    """Base exception for feed operations."""
    pass

class PostNotFoundError(FeedError):
    """Raised when a post cannot be found."""
    pass

class CommentNotFoundError(FeedError):
    """Raised when a comment cannot be found."""
    pass

class AuthorNotFoundError(FeedError):
    """Raised when the acting user has no profile record."""
    pass

class PermissionDeniedError(FeedError):
    """Raised when the acting user may not modify the target."""
    pass

def rank_posts(posts: Sequence[Post], followed_ids: Set[str], viewer_id: Optional[str] = None) -> List[Post]:
    """Order a feed window with posts of followed authors first.

    A stable partition: relative order inside each group is kept. The viewer's
    own posts count as followed. Without any follows the window is returned
    unchanged.

    Args:
        posts: Posts, newest first
        followed_ids: Ids the viewer follows
        viewer_id: The viewer

    Returns:
        Ranked list of the same posts
    """
    if not followed_ids:
        return list(posts)

    priority = set(followed_ids)
    if viewer_id:
        priority.add(viewer_id)

    first = [p for p in posts if p.user_id in priority]
    rest = [p for p in posts if p.user_id not in priority]
    return first + rest

def _chunks(items: Sequence[str], size: int) -> Iterable[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]

class FeedRepository:
    """Translates feed operations into remote store calls."""

    def __init__(self, store: RemoteStore, blobs: BlobStore, identity: IdentityProvider,
                 policy: Optional[AuthorizationPolicy] = None, feed_window: Optional[int] = None):
        """Initialize the repository.

        Args:
            store: Remote document store
            blobs: Blob store for post images
            identity: Source of the acting user's id
            policy: Admin policy, defaults to configured admin ids
            feed_window: Number of recent posts ranked per emission, defaults to settings
        """
        if feed_window is None:
            from config import settings_conf
            feed_window = settings_conf.get('feed_window', DEFAULT_FEED_WINDOW)

        self.store = store
        self.blobs = blobs
        self.identity = identity
        self.policy = policy or AuthorizationPolicy()
        self.feed_window = feed_window

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
            raise FeedError(f"Lost connection to {query.collection}: {e}")

    async def _watch_document(self, ref: DocumentRef) -> AsyncIterator:
        try:
            async with self.store.subscribe_document(ref) as subscription:
                async for snapshot in subscription:
                    yield snapshot
        except StoreError as e:
            logger.error(f"Listener on {ref.path} failed: {e}")
            raise FeedError(f"Lost connection to {ref.path}: {e}")

    async def _followed_ids(self, user_id: str) -> Set[str]:
        snapshot = await self.store.query(Query(FOLLOWS).where('follower_id', '==', user_id))
        return {doc.get('followed_id') for doc in snapshot if doc.get('followed_id')}

    # Posts

    async def get_posts(self, viewer_id: Optional[str] = None) -> AsyncIterator[List[Post]]:
        """Live feed, ranked for the viewer.

        Args:
            viewer_id: Viewer, defaults to the current user

        Yields:
            Ranked post lists, one per change of the feed window
        """
        viewer_id = viewer_id or await self.identity.get_current_user_id()
        try:
            followed = await self._followed_ids(viewer_id) if viewer_id else set()
        except StoreError as e:
            logger.error(f"Error loading follows for {viewer_id}: {e}")
            raise FeedError(f"Failed to load feed: {e}")

        query = Query(POSTS).order_by('created_at', Direction.DESCENDING).limit(self.feed_window)
        logger.info(f"Subscribing feed for {viewer_id or 'anonymous'} ({len(followed)} followed)")
        async with aclosing(self._watch(query)) as stream:
            async for snapshot in stream:
                yield rank_posts([Post.from_snapshot(doc) for doc in snapshot], followed, viewer_id)

    async def get_post_by_id(self, post_id: str) -> AsyncIterator[Optional[Post]]:
        """Live single post; None while it does not exist."""
        async with aclosing(self._watch_document(DocumentRef(POSTS, post_id))) as stream:
            async for snapshot in stream:
                yield Post.from_snapshot(snapshot) if snapshot.exists else None

    async def get_post(self, post_id: str) -> Post:
        """Read a post once.

        Raises:
            PostNotFoundError: If the post does not exist
        """
        try:
            snapshot = await self.store.get(DocumentRef(POSTS, post_id))
        except StoreError as e:
            logger.error(f"Error reading post {post_id}: {e}")
            raise FeedError(f"Failed to get post: {e}")
        if not snapshot.exists:
            raise PostNotFoundError(f"Post {post_id} not found")
        return Post.from_snapshot(snapshot)

    async def get_user_posts(self, user_id: str) -> AsyncIterator[List[Post]]:
        query = (
            Query(POSTS)
            .where('user_id', '==', user_id)
            .order_by('created_at', Direction.DESCENDING)
        )
        async with aclosing(self._watch(query)) as stream:
            async for snapshot in stream:
                yield [Post.from_snapshot(doc) for doc in snapshot]

    async def get_favorite_posts(self, user_id: str) -> AsyncIterator[List[Post]]:
        """Live list of the posts a user saved, newest first.

        Re-resolved whenever the user's favorites change.
        """
        query = Query(FAVORITES).where('user_id', '==', user_id)
        async with aclosing(self._watch(query)) as stream:
            async for snapshot in stream:
                post_ids = [doc.get('post_id') for doc in snapshot]
                try:
                    posts = await self._get_posts_by_ids(post_ids)
                except StoreError as e:
                    logger.error(f"Error resolving favorite posts of {user_id}: {e}")
                    raise FeedError(f"Failed to load favorite posts: {e}")
                yield posts

    async def _get_posts_by_ids(self, post_ids: List[str]) -> List[Post]:
        posts: List[Post] = []
        for chunk in _chunks(post_ids, IN_QUERY_CHUNK):
            snapshot = await self.store.query(Query(POSTS).where('id', 'in', chunk))
            posts.extend(Post.from_snapshot(doc) for doc in snapshot)
        posts.sort(key=lambda p: p.created_at, reverse=True)
        return posts

    async def create_post(self, post: Post, images: Sequence[bytes] = ()) -> Post:
        """Create a post authored by the current user.

        The id is assigned before anything is written so image paths can use it.
        Author name and avatar are copied from the user's profile.

        Args:
            post: Draft carrying content, tags, location and any existing image URLs
            images: Raw image bytes to upload

        Returns:
            The stored post

        Raises:
            AuthorNotFoundError: If the author has no profile record
            FeedError: If the upload or write fails
        """
        user_id = await self._require_user()

        try:
            post_id = self.store.new_id(POSTS)
            author_snapshot = await self.store.get(DocumentRef(USERS, user_id))
            if not author_snapshot.exists:
                raise AuthorNotFoundError(f"No profile for user {user_id}")
            author = UserProfile.from_snapshot(author_snapshot)

            image_urls = list(post.image_urls)
            for data in images:
                path = f"post_images/{user_id}/{post_id}/{uuid.uuid4()}"
                image_urls.append(await self.blobs.upload_and_get_url(path, data))

            now = utcnow()
            created = post.model_copy(update={
                'id': post_id,
                'user_id': user_id,
                'user_name': author.username,
                'user_profile_image': author.profile_image_url,
                'image_urls': image_urls,
                'likes': 0,
                'comments_count': 0,
                'created_at': now,
                'last_modified_at': now
            })
            await self.store.set(DocumentRef(POSTS, post_id), created.to_document())

            logger.info(f"Created post {post_id} by {user_id} with {len(images)} images")
            return created

        except FeedError:
            raise
        except Exception as e:
            logger.error(f"Error creating post: {e}")
            raise FeedError(f"Failed to create post: {e}")

    async def update_post(self, post: Post) -> None:
        """Apply the editable fields of ``post`` to the stored post.

        Counters, author fields and creation time are re-read inside a
        transaction and left untouched.

        Raises:
            PostNotFoundError: If the post was deleted
            PermissionDeniedError: If the user is neither author nor admin
        """
        user_id = await self._require_user()
        ref = DocumentRef(POSTS, post.id)

        async def apply(tx: Transaction) -> None:
            snapshot = await tx.get(ref)
            if not snapshot.exists:
                raise PostNotFoundError(f"Post {post.id} not found")
            if not self.policy.can_modify(user_id, snapshot.get('user_id')):
                raise PermissionDeniedError("Only the author or an admin can edit this post")
            fields = post.model_dump(mode='json', include=MUTABLE_FIELDS)
            fields['last_modified_at'] = format_timestamp(utcnow())
            tx.update(ref, fields)

        try:
            await self.store.run_transaction(apply)
            logger.info(f"Updated post {post.id}")
        except FeedError:
            raise
        except Exception as e:
            logger.error(f"Error updating post {post.id}: {e}")
            raise FeedError(f"Failed to update post: {e}")

    async def delete_post(self, post_id: str) -> None:
        """Delete a post with its comments, likes and favorites in one batch.

        Uploaded images stay in blob storage.

        Raises:
            PostNotFoundError: If the post does not exist
            PermissionDeniedError: If the user is neither author nor admin
        """
        user_id = await self._require_user()
        post = await self.get_post(post_id)
        if not self.policy.can_modify(user_id, post.user_id):
            raise PermissionDeniedError("Only the author or an admin can delete this post")

        try:
            batch = self.store.batch()
            for collection in (COMMENTS, LIKES, FAVORITES):
                snapshot = await self.store.query(Query(collection).where('post_id', '==', post_id))
                for doc in snapshot:
                    batch.delete(doc.ref)
            batch.delete(DocumentRef(POSTS, post_id))
            await batch.commit()

            logger.info(f"Deleted post {post_id} and {len(batch) - 1} dependent records")

        except Exception as e:
            logger.error(f"Error deleting post {post_id}: {e}")
            raise FeedError(f"Failed to delete post: {e}")

    async def update_author_profile(self, user_id: str, user_name: str, profile_image: str) -> int:
        """Rewrite the denormalized author fields on a user's posts and comments.

        Returns:
            Number of documents updated

        Raises:
            PermissionDeniedError: If the acting user is not that user or an admin
        """
        acting = await self._require_user()
        if not self.policy.can_modify(acting, user_id):
            raise PermissionDeniedError("Only the user or an admin can update this profile")

        fields = {'user_name': user_name, 'user_profile_image': profile_image}
        try:
            batch = self.store.batch()
            for collection in (POSTS, COMMENTS):
                snapshot = await self.store.query(Query(collection).where('user_id', '==', user_id))
                for doc in snapshot:
                    batch.update(doc.ref, fields)
            await batch.commit()

            logger.info(f"Updated author fields on {len(batch)} documents of {user_id}")
            return len(batch)

        except Exception as e:
            logger.error(f"Error updating author profile {user_id}: {e}")
            raise FeedError(f"Failed to update author profile: {e}")

    # Likes

    async def is_post_liked(self, post_id: str, user_id: Optional[str] = None) -> AsyncIterator[bool]:
        user_id = user_id or await self._require_user()
        ref = DocumentRef(LIKES, composite_key(user_id, post_id))
        async with aclosing(self._watch_document(ref)) as stream:
            async for snapshot in stream:
                yield snapshot.exists

    async def like_post(self, post_id: str) -> bool:
        """Like a post and increment its counter.

        Returns:
            False when the post was already liked (nothing changes)

        Raises:
            PostNotFoundError: If the post does not exist
        """
        user_id = await self._require_user()
        like_ref = DocumentRef(LIKES, composite_key(user_id, post_id))
        post_ref = DocumentRef(POSTS, post_id)

        async def apply(tx: Transaction) -> bool:
            like = await tx.get(like_ref)
            post = await tx.get(post_ref)
            if not post.exists:
                raise PostNotFoundError(f"Post {post_id} not found")
            if like.exists:
                return False
            tx.set(like_ref, Like(id=like_ref.id, user_id=user_id, post_id=post_id).to_document())
            tx.update(post_ref, {'likes': increment(1)})
            return True

        try:
            changed = await self.store.run_transaction(apply)
            logger.debug(f"Like {post_id} by {user_id}: {'added' if changed else 'already liked'}")
            return changed
        except FeedError:
            raise
        except Exception as e:
            logger.error(f"Error liking post {post_id}: {e}")
            raise FeedError(f"Failed to like post: {e}")

    async def unlike_post(self, post_id: str) -> bool:
        """Remove a like and decrement the counter.

        Returns:
            False when the post was not liked (nothing changes)
        """
        user_id = await self._require_user()
        like_ref = DocumentRef(LIKES, composite_key(user_id, post_id))
        post_ref = DocumentRef(POSTS, post_id)

        async def apply(tx: Transaction) -> bool:
            like = await tx.get(like_ref)
            post = await tx.get(post_ref)
            if not like.exists:
                return False
            tx.delete(like_ref)
            if post.exists:
                tx.update(post_ref, {'likes': increment(-1)})
            return True

        try:
            changed = await self.store.run_transaction(apply)
            logger.debug(f"Unlike {post_id} by {user_id}: {'removed' if changed else 'not liked'}")
            return changed
        except Exception as e:
            logger.error(f"Error unliking post {post_id}: {e}")
            raise FeedError(f"Failed to unlike post: {e}")

    # Favorites

    async def is_post_favorite(self, post_id: str, user_id: Optional[str] = None) -> AsyncIterator[bool]:
        user_id = user_id or await self._require_user()
        ref = DocumentRef(FAVORITES, composite_key(user_id, post_id))
        async with aclosing(self._watch_document(ref)) as stream:
            async for snapshot in stream:
                yield snapshot.exists

    async def add_to_favorites(self, post_id: str) -> bool:
        """Save a post. Saving twice keeps a single record.

        Raises:
            PostNotFoundError: If the post does not exist
        """
        user_id = await self._require_user()
        ref = DocumentRef(FAVORITES, composite_key(user_id, post_id))
        post_ref = DocumentRef(POSTS, post_id)

        async def apply(tx: Transaction) -> bool:
            favorite = await tx.get(ref)
            if not (await tx.get(post_ref)).exists:
                raise PostNotFoundError(f"Post {post_id} not found")
            if favorite.exists:
                return False
            tx.set(ref, Favorite(id=ref.id, user_id=user_id, post_id=post_id).to_document())
            return True

        try:
            return await self.store.run_transaction(apply)
        except FeedError:
            raise
        except Exception as e:
            logger.error(f"Error adding favorite {post_id}: {e}")
            raise FeedError(f"Failed to add favorite: {e}")

    async def remove_from_favorites(self, post_id: str) -> bool:
        """Unsave a post. Removing a missing favorite is a no-op."""
        user_id = await self._require_user()
        ref = DocumentRef(FAVORITES, composite_key(user_id, post_id))

        async def apply(tx: Transaction) -> bool:
            if not (await tx.get(ref)).exists:
                return False
            tx.delete(ref)
            return True

        try:
            return await self.store.run_transaction(apply)
        except Exception as e:
            logger.error(f"Error removing favorite {post_id}: {e}")
            raise FeedError(f"Failed to remove favorite: {e}")

    # Comments

    async def get_comments_by_post_id(self, post_id: str) -> AsyncIterator[List[Comment]]:
        """Live comments of a post, oldest first."""
        query = (
            Query(COMMENTS)
            .where('post_id', '==', post_id)
            .order_by('created_at', Direction.ASCENDING)
        )
        async with aclosing(self._watch(query)) as stream:
            async for snapshot in stream:
                yield [Comment.from_snapshot(doc) for doc in snapshot]

    async def add_comment(self, post_id: str, content: str) -> Comment:
        """Add a comment and increment the post's comment counter.

        Raises:
            PostNotFoundError: If the post does not exist
            AuthorNotFoundError: If the commenter has no profile record
        """
        user_id = await self._require_user()
        post_ref = DocumentRef(POSTS, post_id)
        comment_ref = DocumentRef(COMMENTS, self.store.new_id(COMMENTS))

        async def apply(tx: Transaction) -> Comment:
            author_snapshot = await tx.get(DocumentRef(USERS, user_id))
            post = await tx.get(post_ref)
            if not post.exists:
                raise PostNotFoundError(f"Post {post_id} not found")
            if not author_snapshot.exists:
                raise AuthorNotFoundError(f"No profile for user {user_id}")
            author = UserProfile.from_snapshot(author_snapshot)
            comment = Comment(
                id=comment_ref.id,
                post_id=post_id,
                user_id=user_id,
                user_name=author.username,
                user_profile_image=author.profile_image_url,
                content=content
            )
            tx.set(comment_ref, comment.to_document())
            tx.update(post_ref, {'comments_count': increment(1)})
            return comment

        try:
            comment = await self.store.run_transaction(apply)
            logger.info(f"Added comment {comment.id} on {post_id}")
            return comment
        except FeedError:
            raise
        except Exception as e:
            logger.error(f"Error adding comment to {post_id}: {e}")
            raise FeedError(f"Failed to add comment: {e}")

    async def delete_comment(self, comment_id: str) -> None:
        """Delete a comment and decrement the post's comment counter.

        Allowed for the comment author, the post owner and admins.

        Raises:
            CommentNotFoundError: If the comment does not exist
            PermissionDeniedError: If the user may not delete it
        """
        user_id = await self._require_user()
        comment_ref = DocumentRef(COMMENTS, comment_id)

        async def apply(tx: Transaction) -> None:
            comment = await tx.get(comment_ref)
            if not comment.exists:
                raise CommentNotFoundError(f"Comment {comment_id} not found")
            post_ref = DocumentRef(POSTS, comment.get('post_id'))
            post = await tx.get(post_ref)

            allowed = (
                user_id == comment.get('user_id')
                or user_id == post.get('user_id')
                or self.policy.is_admin(user_id)
            )
            if not allowed:
                raise PermissionDeniedError("Only the commenter, the post owner or an admin can delete this comment")

            tx.delete(comment_ref)
            if post.exists:
                tx.update(post_ref, {'comments_count': increment(-1)})

        try:
            await self.store.run_transaction(apply)
            logger.info(f"Deleted comment {comment_id}")
        except FeedError:
            raise
        except Exception as e:
            logger.error(f"Error deleting comment {comment_id}: {e}")
            raise FeedError(f"Failed to delete comment: {e}")

__all__ = [
    'FeedRepository',
    'rank_posts',
    'MUTABLE_FIELDS',
    'FeedError',
    'PostNotFoundError',
    'CommentNotFoundError',
    'AuthorNotFoundError',
    'PermissionDeniedError'
]
