"""Command-line entrypoint for running the image proxy."""

from __future__ import annotations

import uvicorn

from ..common.settings import ImageProxySettings
from .app import create_app


def main() -> None:
    settings = ImageProxySettings()
    config = uvicorn.Config(
        create_app(settings),
        host=settings.bind_host,
        port=settings.bind_port,
        log_level=settings.log_level.lower(),
        proxy_headers=True,
    )
    uvicorn.Server(config).run()


if __name__ == "__main__":
    main()
