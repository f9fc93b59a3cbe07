"""Manager classes coordinating streams, previews and conversation state.

Available managers:
- StreamController: Cancellation, retry and provider dispatch for one stream
- AttachmentPreviewLifecycle: Preview handle creation and revocation
- ConversationStateManager: Send, resend, regenerate, edit and delete
"""

from __future__ import annotations

from .attachment import AttachmentPreviewLifecycle
from .conversation import ConversationStateManager, derive_title
from .stream import StreamController, StreamOutcome, StreamResult

__all__ = [
    "AttachmentPreviewLifecycle",
    "ConversationStateManager",
    "StreamController",
    "StreamOutcome",
    "StreamResult",
    "derive_title",
]
