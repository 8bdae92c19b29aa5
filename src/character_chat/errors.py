from __future__ import annotations


class ChatError(Exception):
    """Base error for the turn pipeline.

    ``kind`` is stable and machine-readable; ``reason`` is safe to show to the
    end user and never contains provider or stack details.
    """

    kind = "chat_error"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    def to_dict(self) -> dict:
        return {"kind": self.kind, "reason": self.reason}


class ContentRejected(ChatError):
    kind = "content_rejected"

    def __init__(self, reason: str, *, category: str | None = None, stage: str = "input"):
        super().__init__(reason)
        self.category = category
        self.stage = stage

    def to_dict(self) -> dict:
        out = super().to_dict()
        if self.category:
            out["category"] = self.category
        return out


class InsufficientBalance(ChatError):
    kind = "insufficient_balance"

    def __init__(self, reason: str = "Not enough tokens. Please top up your balance."):
        super().__init__(reason)


class SessionNotFound(ChatError):
    kind = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__(f"Chat session {session_id} was not found.")
        self.session_id = session_id


class NoteNotFound(ChatError):
    kind = "note_not_found"

    def __init__(self, note_id: str):
        super().__init__(f"Note {note_id} was not found.")
        self.note_id = note_id


class PermissionDenied(ChatError):
    kind = "permission_denied"

    def __init__(self, reason: str = "You do not have permission to access this chat."):
        super().__init__(reason)


class ProviderError(ChatError):
    kind = "provider_error"

    def __init__(self, reason: str = "The AI model failed to respond. Please try again.", *, provider_id: str | None = None):
        super().__init__(reason)
        self.provider_id = provider_id


class ModerationUnavailable(ChatError):
    kind = "moderation_unavailable"

    def __init__(self, reason: str = "Content moderation is temporarily unavailable."):
        super().__init__(reason)


class CompactionFailure(ChatError):
    kind = "compaction_failure"

    def __init__(self, session_id: str, batch_index: int, detail: str):
        super().__init__(f"Compaction of batch {batch_index} failed for session {session_id}: {detail}")
        self.session_id = session_id
        self.batch_index = batch_index


class CharacterNotFound(ChatError):
    kind = "character_not_found"

    def __init__(self, character_id: str):
        super().__init__(f"Character {character_id} was not found.")
        self.character_id = character_id


class InvalidRequest(ChatError):
    kind = "invalid_request"


class InternalError(ChatError):
    kind = "internal_error"

    def __init__(self, reason: str = "Something went wrong. Please try again."):
        super().__init__(reason)
