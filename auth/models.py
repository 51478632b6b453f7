"""User profile documents."""
from store.documents import DocumentModel

USERS = 'users'

class UserProfile(DocumentModel):
    username: str = ''
    profile_image_url: str = ''
