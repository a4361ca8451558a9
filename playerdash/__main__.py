from __future__ import annotations

import os
import sys

from pydantic import ValidationError

from playerdash.config import get_settings
from playerdash.logging import get_logger

logger = get_logger(__name__)


def main() -> int:
    try:
        get_settings()
    except ValidationError as exc:
        logger.error(
            "settings_invalid",
            errors=[err.get("msg") for err in exc.errors()],
        )
        return 2

    import uvicorn

    uvicorn.run(
        "playerdash.app:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_config=None,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
