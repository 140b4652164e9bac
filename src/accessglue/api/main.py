"""Command-line entrypoint for serving the provisioning API."""

from __future__ import annotations

import uvicorn

from ..common.settings import GlueSettings


def main() -> None:
    settings = GlueSettings()
    uvicorn.run(
        "accessglue.api.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
