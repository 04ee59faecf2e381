"""
Authentication utilities for the HTTP API.

Clients authenticate with ``Authorization: Bearer <token>``. Only a werkzeug
hash of the token is configured (API_TOKEN_HASH); Flask-Login's request
loader checks each request against it.
"""

from flask import current_app, jsonify
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

MIN_TOKEN_LENGTH = 24


def hash_token(token: str) -> str:
    """
    Hash an API token using werkzeug's pbkdf2:sha256.

    Args:
        token: Plain text token

    Returns:
        Hashed token string suitable for API_TOKEN_HASH
    """
    return generate_password_hash(token, method='pbkdf2:sha256')


def verify_token(token_hash: str, token: str) -> bool:
    """
    Verify a token against its hash.

    Args:
        token_hash: Configured token hash
        token: Plain text token to verify

    Returns:
        True if token matches, False otherwise
    """
    return check_password_hash(token_hash, token)


def validate_token_strength(token: str) -> tuple[bool, str]:
    """
    Validate a token meets minimum requirements.

    Requirements:
    - Minimum 24 characters
    - No whitespace

    Returns:
        Tuple of (is_valid, error_message)
    """
    if len(token) < MIN_TOKEN_LENGTH:
        return False, f"Token must be at least {MIN_TOKEN_LENGTH} characters long"

    if any(c.isspace() for c in token):
        return False, "Token must not contain whitespace"

    return True, ""


class ApiClient(UserMixin):
    """
    Flask-Login user for a request carrying a valid API token.
    """

    id = 'api'

    def get_id(self):
        return self.id


def load_user(user_id):
    return ApiClient() if user_id == ApiClient.id else None


def load_user_from_request(request):
    """
    Request loader: authenticate the bearer token.

    Returns:
        ApiClient, or None if the token is missing or wrong
    """
    token_hash = current_app.config.get('API_TOKEN_HASH')
    if not token_hash:
        return None

    scheme, _, token = request.headers.get('Authorization', '').partition(' ')
    token = token.strip()
    if scheme.lower() != 'bearer' or not token:
        return None

    if verify_token(token_hash, token):
        return ApiClient()
    return None


def unauthorized():
    return jsonify({'error': 'Authentication required'}), 401


def init_auth(login_manager):
    """Register the loaders on the login manager."""
    login_manager.session_protection = None
    login_manager.user_loader(load_user)
    login_manager.request_loader(load_user_from_request)
    login_manager.unauthorized_handler(unauthorized)
