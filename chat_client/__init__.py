"""
CHAT CLIENT PACKAGE
===================

Client for the chat relay API, used by chat_cli.py (and by anything else that
wants to drive the relay from Python).

  stream_client - StreamClient: sends a message, rebuilds the streamed reply,
                  handles errors, cancellation and timeouts.
  history       - ConversationHistory: the client's own list of recent
                  conversations, saved as JSON.
"""

from chat_client.history import ConversationHistory
from chat_client.stream_client import StreamClient

__all__ = ["ConversationHistory", "StreamClient"]
