"""Exception taxonomy for the adsync reconciliation engine."""


class AdsyncError(Exception):
    """Base exception for all adsync errors."""


class MalformedTimestampError(AdsyncError):
    """Raised when a UTC timestamp cannot be parsed."""

    def __init__(self, raw_value: object):
        self.raw_value = raw_value
        super().__init__(f"Malformed timestamp: {raw_value!r}")


class UnknownTimezoneError(AdsyncError):
    """Raised when an IANA timezone name is not recognized."""

    def __init__(self, timezone_name: object):
        self.timezone_name = timezone_name
        super().__init__(f"Unknown timezone: {timezone_name!r}")


class UnsupportedDatasetCategoryError(AdsyncError):
    """Raised for push messages whose dataset identifier is not mapped."""

    def __init__(self, dataset_id: object):
        self.dataset_id = dataset_id
        super().__init__(f"Unsupported dataset category: {dataset_id!r}")


class PersistenceFailureError(AdsyncError):
    """Raised when a store write or read fails.

    Retryable by the caller; never aborts sibling work in a batch.
    """

    retryable = True


class FinalizedOverwriteAttempt(AdsyncError):
    """A push-derived write targeted a finalized cell.

    Informational only; callers log it and move on.
    """

    def __init__(self, account_id: str, campaign_id: str, local_date: str):
        self.account_id = account_id
        self.campaign_id = campaign_id
        self.local_date = local_date
        super().__init__(
            f"Cell is finalized: account={account_id}, campaign={campaign_id}, "
            f"date={local_date}"
        )


class InvalidDateRangeError(AdsyncError, ValueError):
    """Raised when an end date precedes its start date."""

    def __init__(self, start: object, end: object):
        self.start = start
        self.end = end
        super().__init__(f"Invalid date range: end {end} is before start {start}")


class AttributionWindowOpenError(AdsyncError):
    """Raised when finalization is requested for a date still inside the attribution window."""

    def __init__(self, local_date: str, eligible_at: object):
        self.local_date = local_date
        self.eligible_at = eligible_at
        super().__init__(
            f"Attribution window still open for {local_date} (eligible at {eligible_at})"
        )


class ReconcileLockedError(AdsyncError):
    """Raised when the per-account reconciliation lock is already held."""

    def __init__(self, account_id: str, lock_key: str):
        self.account_id = account_id
        self.lock_key = lock_key
        super().__init__(
            f"Reconciliation lock already held for account={account_id}, key={lock_key}"
        )


class ReportDownloadError(AdsyncError):
    """Raised when a batch report document cannot be downloaded or decoded."""
