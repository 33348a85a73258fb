"""Entry point for running the proxy server as a module."""

import uvicorn

from songproxy.api.settings import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "songproxy.api.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
