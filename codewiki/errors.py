"""Exception taxonomy for the ingestion pipeline and query path."""


class CodeWikiError(Exception):
    """Base class for all service errors."""

    pass


class ValidationError(CodeWikiError):
    """Bad or unsupported input, rejected before any job starts."""

    pass


class RepoNotFoundError(CodeWikiError):
    """No repository is registered under the given id."""

    def __init__(self, repo_id: str):
        super().__init__(f"Repository not found: {repo_id}")
        self.repo_id = repo_id


class CloneError(CodeWikiError):
    """Cloning or updating the working copy failed. Fatal for the job."""

    pass


class ExtractionError(CodeWikiError):
    """A single file could not be turned into chunks. Never fatal for the job."""

    def __init__(self, file_path: str, reason: str):
        super().__init__(f"{file_path}: {reason}")
        self.file_path = file_path
        self.reason = reason


class EmbeddingProviderError(CodeWikiError):
    """The embedding provider failed.

    ``retryable`` marks rate limiting, server errors and transport failures;
    anything else (bad request, wrong dimension) fails immediately.
    """

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class WikiGenerationError(CodeWikiError):
    """The summarization service failed or returned an unusable answer."""

    pass


class TransientStoreError(CodeWikiError):
    """The document store is temporarily unavailable; the request may be replayed."""

    pass


class IndexFeedError(CodeWikiError):
    """A feed batch kept failing after all retries."""

    pass


class ConcurrencyConflictError(CodeWikiError):
    """A job for the repository is already running."""

    def __init__(self, repo_id: str, message: str = ""):
        super().__init__(message or f"An ingestion job is already active for repository {repo_id}")
        self.repo_id = repo_id


class NotIndexedError(CodeWikiError):
    """The operation needs a completed ingestion first."""

    def __init__(self, repo_id: str):
        super().__init__(f"Repository {repo_id} has not been indexed yet")
        self.repo_id = repo_id


class InvalidTransitionError(CodeWikiError):
    """A status change that would move the pipeline backwards."""

    pass
