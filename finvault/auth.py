"""
Bearer token authentication for the operator API.
"""

import hmac
from functools import wraps
from typing import Optional

from flask import current_app, jsonify, request


def extract_bearer_token(header: Optional[str]) -> Optional[str]:
    """
    Pull the token out of an Authorization header.

    Args:
        header: Raw header value, e.g. "Bearer abc123"

    Returns:
        Token string, or None if the header is missing or malformed
    """
    if not header:
        return None

    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return token.strip()


def verify_token(expected: str, provided: str) -> bool:
    """Constant-time token comparison."""
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode('utf-8'), provided.encode('utf-8'))


def admin_required(view):
    """
    Require a valid BACKUP_ADMIN_TOKEN bearer token.

    Responds 503 when no token is configured, 401 when none is sent and
    403 when it does not match.
    """
    @wraps(view)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get('BACKUP_ADMIN_TOKEN')
        if not expected:
            current_app.logger.error("BACKUP_ADMIN_TOKEN is not configured; operator API disabled")
            return jsonify({'error': 'Operator API is not configured'}), 503

        provided = extract_bearer_token(request.headers.get('Authorization'))
        if provided is None:
            return jsonify({'error': 'Authentication required'}), 401

        if not verify_token(expected, provided):
            current_app.logger.warning(f"Rejected operator API request from {request.remote_addr}")
            return jsonify({'error': 'Invalid token'}), 403

        return view(*args, **kwargs)

    return wrapper
