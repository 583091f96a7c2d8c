from __future__ import annotations


class HooklineError(Exception):
    """Base error for hookline."""


class WebhookValidationError(HooklineError):
    """Rejected webhook input: URL, event types, name, or custom headers."""


class WebhookQuotaExceededError(HooklineError):
    """Tenant already holds the maximum number of webhook destinations."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"Tenant already has the maximum of {limit} webhooks")
        self.limit = limit


class WebhookNotFoundError(HooklineError):
    """Unknown webhook id, or an id owned by another tenant."""


class DeliveryNotFoundError(HooklineError):
    """Unknown delivery id for the given webhook."""


class DeliveryStateError(HooklineError):
    """Delivery is not in a state that allows the requested transition."""


class KeyringConfigurationError(HooklineError):
    """Raised when required keyring encryption config is missing or invalid."""


class SecretDecryptionError(HooklineError):
    """Stored ciphertext could not be decrypted with the configured keyring."""
