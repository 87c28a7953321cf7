"""
Main Entry Point for the persona chat server

Loads configuration, builds the FastAPI app and serves it with uvicorn:

    python -m src.main
    CONFIG_PATH=configs/prod.yaml python -m src.main
"""

import uvicorn

from src.core.config import load_config
from src.utils.logging import get_logger, setup_logging
from src.web_app.server import create_app

logger = get_logger(__name__)


def main() -> None:
    cfg = load_config()
    setup_logging(cfg.server.mode)

    host, port = cfg.server.host_port()
    app = create_app(config=cfg)

    logger.info("Server starting on %s:%d (storage=%s, rag=%s)",
                host, port, cfg.storage.type, cfg.rag.enabled)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="debug" if cfg.server.mode == "debug" else "info",
    )
    logger.info("Server exited")


if __name__ == "__main__":
    main()
