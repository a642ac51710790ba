"""Error taxonomy shared by the retrieval and generation layers."""


class FreshContextError(Exception):
    """Base exception for the package."""


class TransientNetworkError(FreshContextError):
    """A single outbound request failed (DNS, timeout, reset, bad status).

    Absorbed by the component that issued the request.
    """


class BackendProtocolError(FreshContextError):
    """The generation backend answered with a non-2xx status or a malformed payload."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class OfflineError(FreshContextError):
    """The reachability probe reported no network access."""


class ResearchInputError(FreshContextError):
    """A deep-research run was requested with a missing or unusable topic."""


class PromptCatalogError(LookupError):
    """A prompt key or template value does not match ``prompts/prompts.json``."""
