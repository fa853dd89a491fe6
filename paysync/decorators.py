"""
Custom route decorators for access control.

- customer_required: ensures the caller is logged in AND the customer
  account is active. Inactive customers get a JSON 403.
"""

from functools import wraps

from flask_login import current_user, login_required

from paysync.errors import ForbiddenAccess


def customer_required(f):
    """Require login + an active customer account."""

    @wraps(f)
    @login_required
    def decorated(*args, **kwargs):
        if not current_user.is_active:
            raise ForbiddenAccess("Customer account is disabled")
        return f(*args, **kwargs)

    return decorated
