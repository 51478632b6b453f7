"""Feed entities."""
from typing import List, Optional

from pydantic import Field

from store import utcnow
from store.documents import DocumentModel, Timestamp

POSTS = 'posts'
COMMENTS = 'comments'
LIKES = 'likes'
FAVORITES = 'favorites'
FOLLOWS = 'follows'

class Post(DocumentModel):
    user_id: str = ''
    user_name: str = ''
    user_profile_image: str = ''
    content: str = ''
    tags: List[str] = Field(default_factory=list)
    location: Optional[str] = None
    image_urls: List[str] = Field(default_factory=list)
    likes: int = 0
    comments_count: int = 0
    created_at: Timestamp = Field(default_factory=utcnow)
    last_modified_at: Timestamp = Field(default_factory=utcnow)

class Comment(DocumentModel):
    post_id: str
    user_id: str = ''
    user_name: str = ''
    user_profile_image: str = ''
    content: str = ''
    created_at: Timestamp = Field(default_factory=utcnow)

class Like(DocumentModel):
    """Join record: ``user_id`` likes ``post_id``."""
    user_id: str
    post_id: str
    created_at: Timestamp = Field(default_factory=utcnow)

class Favorite(DocumentModel):
    """Join record: ``user_id`` saved ``post_id``."""
    user_id: str
    post_id: str
    created_at: Timestamp = Field(default_factory=utcnow)

class Follow(DocumentModel):
    follower_id: str
    followed_id: str
