"""Run the LabelKit API via `python -m labelkit`."""

from __future__ import annotations

import uvicorn

from labelkit.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "labelkit.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level="info",
    )
