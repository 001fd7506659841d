import time
import uuid
from typing import List, Optional

from .models import Message

TITLE_MAX_CHARS = 30
TITLE_ELLIPSIS = "..."


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    """Return an opaque unique identifier for sessions and messages."""
    return str(uuid.uuid4())


def derive_title(text: str) -> str:
    """Purpose: Build a sidebar title from the first user message.
    Inputs/Outputs: Input is raw message text; output is at most 30 characters plus
        an ellipsis marker when the text was longer.
    Side Effects / State: None; pure function.
    Dependencies: Used by SessionStore.update_messages.
    Failure Modes: Empty text yields an empty title.
    If Removed: Sessions keep the default title forever.
    Testing Notes: Check 30 vs 31 character boundaries.
    """
    # Truncate and mark truncation explicitly.
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + TITLE_ELLIPSIS
    return text


def first_user_message(messages: List[Message]) -> Optional[Message]:
    for message in messages:
        if message.role == "user":
            return message
    return None
