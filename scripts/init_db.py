from __future__ import annotations

import asyncio

from appforge.core.logging import configure_logging
from appforge.persistence.db import engine, init_models


async def _init() -> None:
    # Create all tables; safe to re-run against an existing database.
    await init_models()
    await engine.dispose()
    print("tables_ready=true")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(_init())
