"""Unified exception hierarchy for mailtriage."""


class MailTriageError(Exception):
    """Base exception for all mailtriage errors."""


class ConfigError(MailTriageError):
    """Missing or invalid process settings."""


# Store
class StoreError(MailTriageError):
    """Base exception for persistence failures."""


class AccountNotFoundError(StoreError):
    """No account matches the requested id or address."""


# Mail gateway
class GatewayError(MailTriageError):
    """Base exception for mailbox access failures."""


class CredentialError(GatewayError):
    """Failed to refresh or use an account credential."""


class HistoryExpiredError(GatewayError):
    """The change-cursor is too old for the provider to replay."""


# Completion service
class CompletionError(MailTriageError):
    """Base exception for completion-service failures."""


class CompletionFormatError(CompletionError):
    """Structured completion output did not match the expected shape."""


# Push notifications
class PushError(MailTriageError):
    """Malformed push notification envelope."""


class PushAuthError(PushError):
    """Push notification carried a missing or wrong verification token."""
