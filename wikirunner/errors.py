class NavigationError(Exception):
    """Base class for everything that can end or refuse a run."""


class FetchError(NavigationError):
    """The graph source could not return a page."""


class NotFoundError(FetchError):
    """The title resolves to nothing, even after following redirects."""


class NoCandidatesError(NavigationError):
    """The current page has no outgoing link worth following."""


class InvalidSolverResponseError(NavigationError):
    """The solver chose a link the current page does not have."""


class EmbeddingError(NavigationError):
    """The embedding model failed or produced a degenerate vector."""


class BudgetExceededError(NavigationError):
    """The step budget ran out before the target was reached."""


class ConfigurationError(NavigationError):
    """The run configuration cannot be used (e.g. missing API key)."""


class InvalidTransitionError(NavigationError):
    """The requested operation is not allowed in the current run state."""
