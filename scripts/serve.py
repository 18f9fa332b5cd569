from __future__ import annotations

import uvicorn

from appforge.apps.api.main import create_app
from appforge.core.config import get_settings


def main() -> None:
    # Serve the data API with env-driven host and port for compose and local runs.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
