"""Exception hierarchy for the loan back office."""


class CrediLifeError(Exception):
    """Base exception for all back-office errors."""


class InvalidLoanTermsError(CrediLifeError, ValueError):
    """Raised when loan terms cannot produce a repayment schedule."""


class PersistenceError(CrediLifeError):
    """Raised when a repository call against the record store fails."""


class ChannelSendError(CrediLifeError):
    """Raised when a single notification channel fails to deliver."""

    def __init__(self, channel: str, message: str):
        super().__init__(f"{channel}: {message}")
        self.channel = channel
        self.detail = message


class CycleFetchError(CrediLifeError):
    """Raised when a scheduler cycle cannot load payments or reminder rules."""


class MalformedRecordWarning(CrediLifeError):
    """Raised for a single unusable record inside a batch; the record is skipped."""


class ConfigurationError(CrediLifeError):
    """Raised when an integration is used without its required settings."""
