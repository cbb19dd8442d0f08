"""Request-level sync errors.

Per-mutation problems never raise; they become ``failed`` entries or
conflicts. These errors reject a whole request and are rendered as
``{"error": code}`` by the application's exception handler.
"""


class SyncRequestError(Exception):
    """A sync request that cannot be processed at all."""

    def __init__(self, code: str, status_code: int = 400):
        super().__init__(code)
        self.code = code
        self.status_code = status_code


INVALID_REQUEST = "invalid_request"
INVALID_MUTATIONS = "invalid_mutations"
INVALID_CURSOR = "invalid_cursor"
TOO_MANY_MUTATIONS = "too_many_mutations"
PULL_FAILED = "pull_failed"
