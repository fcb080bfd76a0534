"""Error kinds raised across the chat pipeline.

Classification and augmentation failures are absorbed by the components
that raise them; transport, quota and persistence failures reach the
session reconciler, which rolls back drafts and surfaces a notice.
"""
from __future__ import annotations

from typing import Optional


class ChatError(Exception):
    code = "chat_error"
    default_user_message = "Något gick fel. Försök igen."

    def __init__(self, message: str = "", *, user_message: Optional[str] = None):
        super().__init__(message or self.code)
        self.user_message = user_message or self.default_user_message


class ClassificationFailure(ChatError):
    code = "classification_failure"


class AugmentationFailure(ChatError):
    code = "augmentation_failure"


class StreamTransportError(ChatError):
    code = "stream_error"
    default_user_message = "Kunde inte skicka meddelandet. Försök igen."


class QuotaExceeded(ChatError):
    code = "quota_exceeded"
    default_user_message = (
        "Du har nått din dagliga gräns för AI-meddelanden. Uppgradera din plan eller försök igen senare."
    )

    def __init__(
        self,
        message: str = "",
        *,
        user_message: Optional[str] = None,
        used: Optional[int] = None,
        limit: Optional[int] = None,
    ):
        super().__init__(message, user_message=user_message)
        self.used = used
        self.limit = limit


class PersistenceConflict(ChatError):
    code = "persistence_conflict"
    default_user_message = "Konversationen kunde inte hittas eller tillhör inte dig."
