"""
Custom route decorators for access control.

- admin_token_required: request must carry "Authorization: Bearer <ADMIN_API_TOKEN>".
"""

import hmac
import logging
from functools import wraps

from flask import abort, current_app, request

logger = logging.getLogger(__name__)


def admin_token_required(f):
    """Require the configured admin API bearer token."""

    @wraps(f)
    def decorated(*args, **kwargs):
        expected = current_app.config.get("ADMIN_API_TOKEN")
        if not expected:
            # No token configured: the admin API is disabled.
            abort(403)

        header = request.headers.get("Authorization", "")
        scheme, _, supplied = header.partition(" ")
        if scheme.lower() != "bearer" or not hmac.compare_digest(supplied.strip(), expected):
            logger.warning(f"Rejected admin API request from {request.remote_addr}")
            abort(401)

        return f(*args, **kwargs)

    return decorated
