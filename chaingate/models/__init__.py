from chaingate.models.chat_history import ChatHistory
from chaingate.models.user import User

__all__ = ["ChatHistory", "User"]
