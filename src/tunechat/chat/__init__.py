"""Realtime chat: room channels, message reconciliation and persistence actions."""

from tunechat.chat.actions import ActionResult, ChatActions
from tunechat.chat.channel import ChannelHandle, ChannelState, ChatChannelClient, PresentUser
from tunechat.chat.reconciler import Author, ChatMessage, MessageReconciler
from tunechat.chat.room import RealtimeChatRoom

__all__ = [
    "ActionResult",
    "Author",
    "ChannelHandle",
    "ChannelState",
    "ChatActions",
    "ChatChannelClient",
    "ChatMessage",
    "MessageReconciler",
    "PresentUser",
    "RealtimeChatRoom",
]
