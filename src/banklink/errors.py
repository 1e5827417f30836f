"""Exception hierarchy for the banking integration core.

Adapters classify upstream failures into these types exactly once, at their
boundary. Callers above the adapters branch on the type, never on upstream
error strings. Every error carries a ``user_message`` that is safe to show in
a UI: it never includes upstream error text or secret material.
"""

from __future__ import annotations


class BankLinkError(Exception):
    """Base class for all BankLink errors."""

    user_message = "Something went wrong. Please try again."
    retryable = False

    def __init__(self, message: str, *, user_message: str | None = None):
        super().__init__(message)
        if user_message is not None:
            self.user_message = user_message


class ValidationError(BankLinkError):
    """Bad input shape. Fails fast and is never retried."""

    user_message = "The request was invalid. Please check the details and try again."


class AuthError(BankLinkError):
    """Missing or invalid user session (401-equivalent)."""

    user_message = "Please sign in again."


class NotFoundError(BankLinkError):
    """A referenced record does not exist for this user."""

    user_message = "The requested connection could not be found."


class TerminalCredentialError(BankLinkError):
    """The bank rejected the credentials; the user must re-enter them.

    Never retried: repeating a bad login wastes a slow scrape and can lock the
    account on the bank side.
    """

    user_message = "Your bank rejected the login details. Please re-enter your credentials."

    def __init__(
        self,
        message: str,
        *,
        error_type: str | None = None,
        user_message: str | None = None,
    ):
        super().__init__(message, user_message=user_message)
        self.error_type = error_type


class UpstreamUnavailable(BankLinkError):
    """The aggregator or scraper service could not be reached or is failing."""

    user_message = "Your bank connection service is unavailable. Please try again later."
    retryable = True

    def __init__(self, message: str, *, error_type: str | None = None):
        super().__init__(message)
        self.error_type = error_type


class RetryExhausted(BankLinkError):
    """A retryable scraper failure persisted through every allowed attempt."""

    user_message = "We couldn't reach your bank right now. Please try again later."

    def __init__(self, message: str, *, last_error: BaseException, attempts: int):
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts


class UnknownUpstreamError(BankLinkError):
    """An upstream failure that matched no known classification.

    Treated as non-retryable so an unexplained failure can't loop forever.
    """

    user_message = "Your bank returned an unexpected error. Please try again later."

    def __init__(self, message: str, *, error_type: str | None = None):
        super().__init__(message)
        self.error_type = error_type


class EncryptionError(BankLinkError):
    """Ciphertext is corrupt, tampered with, or the key is wrong.

    Distinct from a legacy plaintext value, which is not an error.
    """

    user_message = "Stored credentials could not be read. Please reconnect this account."


class PersistenceError(BankLinkError):
    """A store write failed after the upstream handshake already succeeded.

    Carries enough context for an operator to recover, never the secret.
    """

    user_message = "Your account was linked but we couldn't finish saving it. Please try syncing again."

    def __init__(
        self,
        message: str,
        *,
        user_id: str,
        step: str,
        connection_id: str | None = None,
    ):
        super().__init__(message)
        self.user_id = user_id
        self.step = step
        self.connection_id = connection_id


class ConnectInProgressError(BankLinkError):
    """A connect for the same pending connection is already running."""

    user_message = "This account is already being connected. Please wait for it to finish."


class OperationCancelled(BankLinkError):
    """The caller cancelled the request or its deadline passed."""

    user_message = "The request was cancelled."


class StoreError(BankLinkError):
    """Low-level document store failure."""
