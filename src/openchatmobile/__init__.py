"""OpenChatMobile — llama-server chat relay, client SDK."""

__version__ = "2.0.0"

from openchatmobile.client.client import ChatClient
from openchatmobile.client.stream import ChatStream

__all__ = ["ChatClient", "ChatStream", "__version__"]
