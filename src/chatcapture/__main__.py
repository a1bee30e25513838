"""``python -m chatcapture`` -- run the status API with uvicorn."""

import uvicorn

from chatcapture.api.app import create_app
from chatcapture.configs.config import get_app_config
from chatcapture.infra.logging import setup_logging


def main() -> None:
    config = get_app_config()
    setup_logging(config.logging)
    uvicorn.run(
        create_app(config),
        host=config.api.host,
        port=config.api.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
