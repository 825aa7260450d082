class QuotaError(Exception):
    pass


class StoreUnavailable(QuotaError):
    """The usage store could not be reached or did not answer in time."""

    def __init__(self, message: str = "", operation: str = "", timed_out: bool = False):
        super().__init__(message or "usage store unavailable")
        self.operation = operation
        self.timed_out = timed_out


class UsageRecordMissing(StoreUnavailable):
    """atomic_increment was called for a user whose record was never saved."""

    def __init__(self, user_id: str):
        super().__init__(f"usage record missing for user {user_id}", operation="atomic_increment")
        self.user_id = user_id


class LoggingFailure(QuotaError):
    pass
