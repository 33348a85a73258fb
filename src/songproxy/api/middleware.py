import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("songproxy.api.middleware")

class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        has_key = bool(request.headers.get("x-client-key") or request.headers.get("x-api-key"))
        logger.info(f"Request: {request.method} {request.url.path} | Client key: {has_key}")
        response: Response = await call_next(request)
        logger.info(f"Response: {request.method} {request.url.path} | Status: {response.status_code}")
        return response
