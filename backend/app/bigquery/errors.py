class BigQueryError(Exception):
    """Base class for everything the BigQuery engine raises."""


class CredentialShapeError(BigQueryError):
    """Credential JSON is missing fields a minter needs."""


class SourceUnavailableError(BigQueryError):
    """A credential source is absent or unreachable (metadata server, gcloud)."""


class TokenExchangeError(BigQueryError):
    """The OAuth token endpoint answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AdcUnavailableError(BigQueryError):
    """Every credential source failed. `errors` keeps each individual message."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(
            "BigQuery ADC unavailable. Run: gcloud auth application-default login "
            "&& gcloud config set project <project-id>. Details: "
            + " | ".join(self.errors)
        )


class BigQueryApiError(BigQueryError):
    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class QueryStillRunningError(BigQueryError):
    def __init__(self, message: str = "Query is still running. Try again in a moment."):
        super().__init__(message)


class ExportLimitError(BigQueryError):
    def __init__(self, limit: int, total_rows: int):
        self.limit = limit
        self.total_rows = total_rows
        super().__init__(
            f"Export is limited to {limit:,} rows (query has {total_rows:,}). "
            "Add filters or LIMIT and try again."
        )
