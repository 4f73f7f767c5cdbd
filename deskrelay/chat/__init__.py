from .listener import CHAT_TOPIC, ChatCallbacks, ChatListener
from .manager import ChatManager
from .models import ChatMessage

__all__ = ["CHAT_TOPIC", "ChatCallbacks", "ChatListener", "ChatManager", "ChatMessage"]
