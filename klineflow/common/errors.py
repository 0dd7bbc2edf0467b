class KlineflowError(Exception):
    """Base class for errors raised by klineflow."""


class UnknownPeriodError(KlineflowError, ValueError):
    """A period code outside the supported table was requested."""


class TransientNetworkError(KlineflowError):
    """Connection refused / timeout / DNS failure that survived all retries."""


class MalformedResponseError(KlineflowError):
    """The venue answered, but not with something we can parse."""


class FetchError(KlineflowError):
    """Historical fetch for one instrument could not be completed."""


class StoreError(KlineflowError):
    """The persistent bar store failed to read or write."""
