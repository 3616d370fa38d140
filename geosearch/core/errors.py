"""Error taxonomy shared by the search components.

Only the orchestrator and the HTTP layer ever see these raised: components
below them turn invalid input into ``None`` and keep provider failures local.
"""


class SearchError(Exception):
    """Base error for search failures."""


class InvalidInput(SearchError):
    """Raised when a coordinate, postal code or query is malformed."""


class BackendUnavailable(SearchError):
    """Raised when the entity store or a provider cannot be reached."""


class ProviderQuotaExceeded(BackendUnavailable):
    """Raised when a backend or provider rejects a call for quota reasons."""


class NoLocation(SearchError):
    """Raised when no user location can be determined."""


class SearchExhausted(SearchError):
    """Raised when every stage of the fallback chain failed."""
