from __future__ import annotations

import uvicorn

from marketsync.config import settings

if __name__ == "__main__":
    uvicorn.run(
        "marketsync.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
