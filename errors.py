# errors.py


class RedeemError(Exception):
    """Base class for every rejected redemption.

    ``detail`` is the stable slug the HTTP layer sends back to clients.
    """

    detail = "redeem_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.detail)


class InvalidInput(RedeemError):
    detail = "invalid_input"


class InvalidCode(RedeemError):
    detail = "invalid_code"


class TamperedCode(RedeemError):
    detail = "tampered_code"


class Expired(RedeemError):
    detail = "expired"


class Exhausted(RedeemError):
    detail = "max_redemptions"


class RateLimited(RedeemError):
    detail = "rate_limited"


class StorageUnavailable(RedeemError):
    # Server-side fault, never reported to clients as a bad code.
    detail = "storage_unavailable"


class DuplicateCodeError(Exception):
    pass


class ExhaustedEntropyError(RuntimeError):
    pass
