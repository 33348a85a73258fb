import logging
import secrets

from fastapi import Depends, Header

from songproxy.api.settings import Settings
from songproxy.api.utils import get_app_settings
from songproxy.exceptions import UnauthorizedError

logger = logging.getLogger(__name__)


async def require_client_key(
    settings: Settings = Depends(get_app_settings),
    x_client_key: str | None = Header(None),
    x_api_key: str | None = Header(None),
) -> None:
    """Check the shared client secret when CLIENT_API_KEY is configured."""
    if not settings.client_api_key:
        return

    provided = x_client_key or x_api_key
    if not provided or not secrets.compare_digest(
        provided.encode(), settings.client_api_key.encode()
    ):
        logger.warning("Rejected request with missing or invalid client key")
        raise UnauthorizedError("Unauthorized (invalid client key)")
