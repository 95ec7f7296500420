"""
Inbox error taxonomy.

ValidationError  - payload shape we will never process (answered with 200)
StorageError     - database / attachment store failure (answered with 500, provider retries)
MediaFetchError  - media handle resolution or download failed (500, provider retries)
SendError        - outbound WhatsApp call failed
ConfigError      - required secret or setting missing
"""


class InboxError(Exception):
    """Base class for all inbox errors."""


class ValidationError(InboxError):
    pass


class StorageError(InboxError):
    pass


class MediaFetchError(InboxError):
    pass


class SendError(InboxError):
    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class ConfigError(InboxError):
    pass


class NoActiveConversation(InboxError):
    """The customer has no conversation outside the resolved state."""


class ConversationConflict(InboxError):
    """Another request already opened a conversation for this customer."""
