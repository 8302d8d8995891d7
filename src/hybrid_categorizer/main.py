import os

import uvicorn

from hybrid_categorizer.app import app
from hybrid_categorizer.core import settings
from hybrid_categorizer.logger import get_logging_config


def main() -> None:
    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=settings.get_env_int("PORT", 8000, min_value=1),
        log_config=get_logging_config(),
    )


if __name__ == "__main__":
    main()
