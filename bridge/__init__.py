"""
WebSocket bridge for the tsquery engine.

Relays reactive query output to UI clients over WebSocket connections.
"""

from .manager import (
    BridgeManager,
    BridgeMessage,
    MessageType,
    parse_command,
)

__all__ = [
    "BridgeManager",
    "BridgeMessage",
    "MessageType",
    "parse_command",
]
