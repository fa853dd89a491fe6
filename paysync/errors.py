"""Typed billing errors.

Each error carries the HTTP status the API surfaces it with. Webhook
soft failures (unlinked identity, missing plan mapping) are returned as
``Skipped`` outcomes instead; see ``paysync.services.outcomes``.
"""


class BillingError(Exception):
    status_code = 500

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self):
        return {"error": self.message, "code": self.__class__.__name__}


class ValidationFailed(BillingError):
    status_code = 400


class NotFound(BillingError):
    status_code = 404


class UnlinkedIdentity(NotFound):
    """No identity mapping exists for the given customer id."""


class ForbiddenAccess(BillingError):
    status_code = 403


class Conflict(BillingError):
    status_code = 409


class SignatureInvalid(BillingError):
    # 5xx so the provider keeps retrying while the secret is fixed.
    status_code = 500
