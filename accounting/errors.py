"""
Error types for cl-accounting

Validation errors subclass ValueError so that the RPC layer can report them
as caller mistakes. Everything that indicates inconsistent node data, or a
failure to obtain prices, subclasses AccountingError. Any of these aborts
the report; there is no partial result.
"""


class AccountingError(RuntimeError):
    """Base class for failures while producing a report."""


# =============================================================================
# DATA CONSISTENCY
# =============================================================================

class ReceiveWithFeeError(AccountingError):
    def __init__(self, txid: str = ""):
        super().__init__(f"on chain receive with non-zero fee: {txid}")


class DuplicatesNotSupportedError(AccountingError):
    def __init__(self, payment_hash: str = ""):
        super().__init__(
            f"duplicate payments not supported ({payment_hash}), query "
            f"more recent timestamp to exclude duplicates"
        )


class DifferentDuplicatesError(AccountingError):
    def __init__(self, payment_hash: str = ""):
        super().__init__(
            f"duplicate payments paid to different sources: {payment_hash}"
        )


class NoHopsError(AccountingError):
    def __init__(self, payment_hash: str = ""):
        super().__init__(
            f"payment htlc has a route with zero hops: {payment_hash}"
        )


class BatchedTransactionError(AccountingError):
    """A single transaction funds several of our channels."""

    def __init__(self, txid: str = ""):
        super().__init__(
            f"batched transaction {txid} funds multiple channels, fee "
            f"attribution is not supported"
        )


# =============================================================================
# PRICE ORACLE
# =============================================================================

class PriceError(AccountingError):
    """Base class for price oracle failures."""


class NoPricesError(PriceError):
    def __init__(self):
        super().__init__("no price data provided")


class PriceOutOfRangeError(PriceError):
    def __init__(self, timestamp: int = 0):
        super().__init__(
            f"timestamp {timestamp} before beginning of price dataset"
        )


class ShuttingDownError(PriceError):
    def __init__(self):
        super().__init__("shutting down")


class RetriesExhaustedError(PriceError):
    def __init__(self, attempts: int = 0):
        super().__init__(
            f"could not get data within max retries ({attempts})"
        )


class UnsupportedCurrencyError(PriceError):
    def __init__(self, currency: str):
        super().__init__(f"no exchange rate available for: {currency}")


# =============================================================================
# VALIDATION
# =============================================================================

class ValidationError(ValueError):
    """Base class for caller-fixable input problems."""


class EndBeforeStartError(ValidationError):
    def __init__(self, start: int = 0, end: int = 0):
        super().__init__(f"end time {end} before start time {start}")


class ZeroRangeError(ValidationError):
    def __init__(self):
        super().__init__("start time equals end time")


class FutureRangeError(ValidationError):
    def __init__(self):
        super().__init__("end time is in the future")


class QueryTooLongError(ValidationError):
    def __init__(self):
        super().__init__("period too long for any granularity")


class PeriodTooLongError(ValidationError):
    def __init__(self, label: str = ""):
        super().__init__(f"period too long for granularity level: {label}")


class UnknownGranularityError(ValidationError):
    def __init__(self, label: str = ""):
        super().__init__(f"unknown level of granularity: {label}")


class GranularityRequiredError(ValidationError):
    def __init__(self):
        super().__init__("granularity required when fiat prices are enabled")


class GranularityUnexpectedError(ValidationError):
    def __init__(self):
        super().__init__("granularity unexpected for default price backend")


class GranularityUnsupportedError(ValidationError):
    def __init__(self, detail: str = ""):
        super().__init__(f"api does not support requested granularity: {detail}")


class PricePointsRequiredError(ValidationError):
    def __init__(self):
        super().__init__(
            "at least one price point required for a custom price backend"
        )


class UnknownPriceBackendError(ValidationError):
    def __init__(self, backend: str = ""):
        super().__init__(f"unknown price backend: {backend}")


class CategoryError(ValidationError):
    """A custom category is malformed."""
