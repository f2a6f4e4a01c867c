"""Run the portal with ``python -m exam_portal``."""

import uvicorn

from exam_portal.config import settings
from exam_portal.logging_config import configure_logging


def main() -> None:
    configure_logging(settings.log_level)
    uvicorn.run("exam_portal.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
