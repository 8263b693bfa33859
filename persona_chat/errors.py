from __future__ import annotations


class ChatError(RuntimeError):
    """Base for failures raised by the orchestration pipeline."""


class ConfigurationError(ChatError):
    """Missing persona / provider / credentials. Aborts a send without a chat message."""


class TokenLimitExceeded(ChatError):
    def __init__(self, token_count: int, max_context_tokens: int):
        super().__init__(
            f"Prompt does not fit the context window even with a single message "
            f"({token_count} > {max_context_tokens} tokens)"
        )
        self.token_count = token_count
        self.max_context_tokens = max_context_tokens


class ProviderHttpError(ChatError):
    def __init__(self, status: int, message: str, provider: str | None = None):
        super().__init__(message)
        self.status = status
        self.provider = provider


class ProviderParseError(ChatError):
    """2xx body without the expected text field, or structured output that is not valid JSON."""


class UnsupportedAttachment(ChatError):
    pass


class ImageGenerationError(ChatError):
    pass


class GenerationCancelled(ChatError):
    pass
