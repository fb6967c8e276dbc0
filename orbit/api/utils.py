import logging

from starlette.requests import Request
from starlette.responses import JSONResponse

from orbit.services.errors import (
    ConfigurationException,
    OrbitException,
    ProvisionException,
    ReservedNameException,
)

ERROR_STATUS = {
    ProvisionException: 409,
    ReservedNameException: 422,
    ConfigurationException: 500,
}

logger = logging.getLogger(__name__)


def _exception_handler(request: Request, exc: Exception):
    status = ERROR_STATUS.get(type(exc), 500)
    if status >= 500:
        logger.exception("Unhandled application error for path=%s: %s", request.url.path, exc)
    else:
        logger.warning("Request failed path=%s status=%s error=%s", request.url.path, status, exc)
    return JSONResponse({"success": False, "detail": str(exc)}, status_code=status)


def register_exception_handlers(app):
    app.exception_handler(OrbitException)(_exception_handler)
