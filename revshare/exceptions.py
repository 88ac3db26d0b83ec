class RevShareError(Exception):
    pass


class TransientStoreError(RevShareError):
    """Store unavailable or the transaction kept conflicting. Safe to retry."""


class UnknownTransactionError(RevShareError):
    pass


class NormalizationError(RevShareError):
    pass


class InvalidSettingsError(RevShareError):
    pass


class DispatchFailureNotFoundError(RevShareError):
    pass


class ProviderUnavailableError(RevShareError):
    """The payment provider API could not be reached. Safe to retry."""
