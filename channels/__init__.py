"""Message senders for outbound transports."""
from channels.base import (
    ChannelError,
    SendError,
    SendTimeoutError,
    SendMetrics,
    MessageSender,
)
from channels.imessage_adapter import AppleScriptSender, build_apple_script

__all__ = [
    "ChannelError", "SendError", "SendTimeoutError",
    "SendMetrics", "MessageSender",
    "AppleScriptSender", "build_apple_script",
]
