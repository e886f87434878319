"""
Bearer token validation for service-to-service callers
"""

from typing import Optional
import hmac
import structlog

from search_agent.domain.errors import AuthenticationError

logger = structlog.get_logger(__name__)

BEARER_PREFIX = "bearer "


def extract_bearer_token(authorization: Optional[str]) -> str:
    """
    Pull the token out of an ``Authorization: Bearer <token>`` header

    Raises:
        AuthenticationError: If the header is missing or not a bearer credential
    """

    if not authorization or not authorization.lower().startswith(BEARER_PREFIX):
        raise AuthenticationError("Missing or invalid authorization header. Use Bearer token.")

    token = authorization[len(BEARER_PREFIX):].strip()
    if not token:
        raise AuthenticationError("Missing or invalid authorization header. Use Bearer token.")
    return token


def verify_token(authorization: Optional[str], expected_secret: str) -> None:
    """
    Verify a bearer header against the shared service secret

    Raises:
        AuthenticationError: If the token does not match
    """

    token = extract_bearer_token(authorization)
    if not hmac.compare_digest(token.encode("utf-8"), expected_secret.encode("utf-8")):
        logger.warning("Rejected bearer token", token_prefix=token[:4])
        raise AuthenticationError("Invalid bearer token")
