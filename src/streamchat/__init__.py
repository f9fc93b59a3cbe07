"""Top-level package for streamchat."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .cache import ConversationCache
    from .cancellation import CancellationToken
    from .config import StreamConfig, ensure_config_dir, load_config
    from .exceptions import (
        AuthError,
        ConfigError,
        ConfigValidationError,
        NotFoundError,
        RateLimitError,
        StorageError,
        StreamCancelledError,
        StreamChatError,
        TransportError,
        UnsupportedAttachmentError,
    )
    from .managers import (
        AttachmentPreviewLifecycle,
        ConversationStateManager,
        StreamController,
        StreamResult,
    )
    from .models import Attachment, Conversation, Message, ProviderKind
    from .persistence import SQLiteConversationStore
    from .session import open_session
    from .state import ConversationState, StateManager
    from .stream_parser import parse_streamed_text

_EXCEPTION_NAMES = frozenset(
    {
        "AuthError",
        "ConfigError",
        "ConfigValidationError",
        "NotFoundError",
        "RateLimitError",
        "StorageError",
        "StreamCancelledError",
        "StreamChatError",
        "TransportError",
        "UnsupportedAttachmentError",
    }
)
_MANAGER_NAMES = frozenset(
    {
        "AttachmentPreviewLifecycle",
        "ConversationStateManager",
        "StreamController",
        "StreamResult",
    }
)
_MODEL_NAMES = frozenset({"Attachment", "Conversation", "Message", "ProviderKind"})

__all__ = sorted(
    _EXCEPTION_NAMES
    | _MANAGER_NAMES
    | _MODEL_NAMES
    | {
        "CancellationToken",
        "ConversationCache",
        "ConversationState",
        "SQLiteConversationStore",
        "StateManager",
        "StreamConfig",
        "ensure_config_dir",
        "load_config",
        "open_session",
        "parse_streamed_text",
    }
)


def __getattr__(name: str) -> Any:
    """Lazily import symbols so ``import streamchat`` stays cheap."""
    if name in _EXCEPTION_NAMES:
        from . import exceptions

        return getattr(exceptions, name)
    if name in _MANAGER_NAMES:
        from . import managers

        return getattr(managers, name)
    if name in _MODEL_NAMES:
        from . import models

        return getattr(models, name)
    if name in {"StreamConfig", "ensure_config_dir", "load_config"}:
        from . import config

        return getattr(config, name)
    if name in {"ConversationState", "StateManager"}:
        from .state import ConversationState, StateManager

        return {"ConversationState": ConversationState, "StateManager": StateManager}[name]
    if name == "CancellationToken":
        from .cancellation import CancellationToken

        return CancellationToken
    if name == "ConversationCache":
        from .cache import ConversationCache

        return ConversationCache
    if name == "SQLiteConversationStore":
        from .persistence import SQLiteConversationStore

        return SQLiteConversationStore
    if name == "open_session":
        from .session import open_session

        return open_session
    if name == "parse_streamed_text":
        from .stream_parser import parse_streamed_text

        return parse_streamed_text
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
