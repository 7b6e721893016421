class TracerError(Exception):
    pass


class DataSourceError(TracerError):
    pass


class RateLimitError(DataSourceError):
    pass


class InvalidAddressError(TracerError):
    pass


class ScanCancelledError(TracerError):
    def __init__(self, message: str = "Request cancelled by user") -> None:
        super().__init__(message)


class GraphInvariantError(TracerError):
    pass


# Fetch failures outside this tuple are recorded on the node; these stop the crawl.
PROPAGATED_ERRORS = (ScanCancelledError, GraphInvariantError)
