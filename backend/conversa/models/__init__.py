from conversa.models.audit_log import AuditLog
from conversa.models.auto_response_rule import AutoResponseRule
from conversa.models.bot_session import BotSession
from conversa.models.category import Category, CategoryKeyword
from conversa.models.channel import Channel
from conversa.models.contact import Contact
from conversa.models.conversation import Conversation
from conversa.models.conversation_transfer import ConversationTransfer
from conversa.models.job import Job
from conversa.models.message import Message
from conversa.models.notification import Notification
from conversa.models.protocol import Protocol
from conversa.models.user import User

__all__ = [
    "AuditLog",
    "AutoResponseRule",
    "BotSession",
    "Category",
    "CategoryKeyword",
    "Channel",
    "Contact",
    "Conversation",
    "ConversationTransfer",
    "Job",
    "Message",
    "Notification",
    "Protocol",
    "User",
]
