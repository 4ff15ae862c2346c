"""TAXOMETRICS — Integration Error Taxonomy.

Recoverable errors (source, matching, validation) are handled inside the
orchestrator. Fatal errors (catalog, persistence) end the run as ``failed``.
"""


class IntegrationError(Exception):
    """Base class for all integration errors."""

    fatal = False


class SourceUnavailableError(IntegrationError):
    """One external metric source could not be fetched."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"{source} source unavailable: {message}")


class MatchingFailureError(IntegrationError):
    """Unexpected exception while scoring a single record."""

    def __init__(self, source: str, identifier: str, message: str):
        self.source = source
        self.identifier = identifier
        super().__init__(f"matching failed for {source} '{identifier}': {message}")


class GtinValidationError(IntegrationError, ValueError):
    """Identifier is not a usable GTIN."""


class CatalogLoadError(IntegrationError):
    """Tenant has no taxonomy nodes or no products."""

    fatal = True


class PersistenceError(IntegrationError):
    """Batched write failed; nothing from the run was committed."""

    fatal = True


class RunInProgressError(IntegrationError):
    """Another run for the same tenant and date did not finish in time."""

    fatal = True


class GoogleAPIError(Exception):
    """Raised when a Google API returns an error."""

    def __init__(self, message: str, status_code: int = 0, error_status: str = ""):
        self.status_code = status_code
        self.error_status = error_status
        super().__init__(message)
