class ChatError(Exception):

    default_message = "Chat operation failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ChatError):

    default_message = "Invalid request"


class NotFoundError(ChatError):

    default_message = "Resource not found"


class ConflictError(ChatError):
    """A conditional create lost a race against another writer."""

    default_message = "Conflicting concurrent update"


class TransientStoreError(ChatError):

    default_message = "Storage temporarily unavailable"
