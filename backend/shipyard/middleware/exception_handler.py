"""Maps ShipyardException to the JSON error envelope returned by the API."""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from ..core.logging_config import request_id_var
from ..exceptions import ShipyardException

logger = logging.getLogger(__name__)


async def shipyard_exception_handler(request: Request, exc: ShipyardException) -> JSONResponse:
    """Render ``exc.to_dict()`` with the exception's status code.

    Rejected requests (4xx) are routine for an operator API and log at
    warning; anything else logs at error.
    """
    code = exc.error_code.value
    logger.log(
        logging.WARNING if exc.status_code < 500 else logging.ERROR,
        f"{request.method} {request.url.path} rejected with {code}: {exc.message}",
        extra={"error_code": code, "status_code": exc.status_code, "details": exc.details},
    )

    response = JSONResponse(status_code=exc.status_code, content=exc.to_dict())
    rid = request_id_var.get("")
    if rid:
        response.headers["X-Request-ID"] = rid
    return response
