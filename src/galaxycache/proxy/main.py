"""Console entrypoint running the proxy under uvicorn."""

from __future__ import annotations

import uvicorn

from ..common.settings import ProxySettings
from .app import create_app


def main() -> None:
    settings = ProxySettings()
    app = create_app(settings)
    config = uvicorn.Config(
        app,
        host=settings.bind_host,
        port=settings.bind_port,
        log_config=None,
        log_level=settings.log_level.lower(),
    )
    uvicorn.Server(config).run()


if __name__ == "__main__":  # pragma: no cover
    main()
