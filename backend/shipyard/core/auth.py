"""Operator authentication as a FastAPI dependency.

Public interface:
    ``require_operator`` returns the caller identity or raises 401.

Every write endpoint runs arbitrary build commands on the host, so they
all require the operator bearer token. When ``settings.auth_enabled`` is
False the dependency returns an anonymous operator so the development
workflow is unbroken.
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import settings
from ..exceptions import AuthenticationError

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)

ANONYMOUS_OPERATOR = "anonymous"
OPERATOR = "operator"


def require_operator(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> str:
    """Require the operator bearer token.

    When ``AUTH_ENABLED=false`` returns the anonymous operator.
    """
    if not settings.auth_enabled:
        return ANONYMOUS_OPERATOR

    if credentials is None:
        raise AuthenticationError("Missing authentication token")

    # Constant-time comparison
    if not hmac.compare_digest(credentials.credentials.encode(), settings.operator_token.encode()):
        logger.warning("Rejected request with invalid operator token")
        raise AuthenticationError("Invalid operator token")

    return OPERATOR
