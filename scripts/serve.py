from __future__ import annotations

import uvicorn

from digit_lab.api.app import create_app
from digit_lab.config import Settings
from digit_lab.logging import get_logger, init_logging


def main() -> None:
    init_logging()
    settings = Settings.load()
    get_logger().info(
        "serve_start port=%s model=%s", settings.app.port, settings.model.path.as_posix()
    )
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.app.port, log_config=None)


if __name__ == "__main__":  # pragma: no cover - used at runtime
    main()
