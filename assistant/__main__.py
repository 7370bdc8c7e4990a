from __future__ import annotations

import uvicorn

from assistant.config import settings


def main() -> None:
    uvicorn.run(
        "assistant.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
