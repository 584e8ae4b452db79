"""Shared constants for browser/client ↔ relay ↔ llama-server communication."""

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000
DEFAULT_LLAMA_PORT = 8080

# REST endpoints
EP_HEALTH = "/api/health"
EP_CHAT = "/api/chat"
EP_UPLOAD = "/api/upload"
EP_MODELS = "/api/models"

# WebSocket
WS_RELAY = "/ws"
WS_ROOT = "/"

# llama-server
EP_COMPLETION = "/completion"
SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"
LLAMA_READY_MARKER = "HTTP server listening"

# Client → server message types
MSG_CHAT = "chat"
MSG_STOP = "stop"
MSG_PONG = "pong"

# Server → client message types
MSG_TOKEN = "token"
MSG_DONE = "done"
MSG_ERROR = "error"
MSG_INFO = "info"
MSG_PING = "ping"

MODEL_EXTENSION = ".gguf"
UPLOAD_PREVIEW_CHARS = 1000
UPLOAD_MAX_BYTES = 10 * 1024 * 1024
