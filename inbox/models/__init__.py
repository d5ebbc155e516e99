"""SQLAlchemy models.

Pages and users are managed by admins. Customers, conversations and
messages are written by the webhook ingestion pipeline and the
outbound send path.
"""

from inbox.models.page import Page
from inbox.models.user import User, UserPage, UserRole
from inbox.models.customer import Customer, CustomerNote
from inbox.models.conversation import Conversation, Message, MessageArchive

__all__ = [
    "Page",
    "User",
    "UserPage",
    "UserRole",
    "Customer",
    "CustomerNote",
    "Conversation",
    "Message",
    "MessageArchive",
]
