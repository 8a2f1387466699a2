from __future__ import annotations


class BillingError(Exception):
    pass


class ValidationFailedError(BillingError):
    pass


class NotFoundError(BillingError):
    pass


class ConflictError(BillingError):
    pass


class GatewayError(BillingError):
    pass
