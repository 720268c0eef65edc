class SourceUnavailable(Exception):
    def __init__(self, source: str, message: str, status_code: int | None = None):
        self.source = source
        self.message = message
        self.status_code = status_code
        super().__init__(f"{source}: {message}")


class RateLimited(SourceUnavailable):
    def __init__(self, source: str, attempts: int):
        self.attempts = attempts
        super().__init__(
            source,
            f"Rate limit exceeded after {attempts} attempts",
            status_code=429,
        )


class AggregationFailed(Exception):
    def __init__(self, errors: list[SourceUnavailable]):
        self.errors = errors
        self.message = "All inventory sources failed: " + "; ".join(
            str(e) for e in errors
        )
        super().__init__(self.message)


class NotFound(Exception):
    def __init__(self, listing_id: str):
        self.listing_id = listing_id
        self.message = f"Listing {listing_id} not found"
        super().__init__(self.message)


class InvalidQuery(Exception):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)
