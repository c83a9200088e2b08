"""Main entry point for Cardsmith."""

import logging
import sys
from datetime import datetime
from pathlib import Path

import uvicorn


def setup_logging(debug: bool = False):
    """Configure logging."""
    level = logging.DEBUG if debug else logging.INFO

    handlers = [logging.StreamHandler(sys.stdout)]

    file_handler = None
    log_file = None

    # Add file handler if debug mode is enabled
    if debug:
        log_dir = Path("data/debug_logs/server")
        log_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = log_dir / f"server_{timestamp}.log"

        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        handlers.append(file_handler)

    # Root stays at INFO so library loggers don't flood debug output
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )

    app_logger = logging.getLogger('cardsmith')
    app_logger.setLevel(level)

    logging.getLogger('PIL').setLevel(logging.WARNING)
    logging.getLogger('multipart').setLevel(logging.WARNING)

    startup_logger = logging.getLogger(__name__)
    if debug:
        startup_logger.info(f"[STARTUP] Server log file: {log_file}")
    startup_logger.info(f"[STARTUP] Logging configured: level={level}, cardsmith logger level={app_logger.level}")

    return file_handler, log_file


def main():
    """Run the FastAPI server."""
    from cardsmith.config import ConfigLoader, ConfigLoadError, EngineConfig
    try:
        config = ConfigLoader().load_engine_config()
    except ConfigLoadError as e:
        logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        logging.getLogger(__name__).warning(f"[STARTUP WARNING] Could not load engine config: {e}, using defaults")
        config = EngineConfig()

    setup_logging(debug=config.api.debug)

    logger = logging.getLogger(__name__)
    logger.info(f"Starting Cardsmith server (debug mode: {config.api.debug})...")
    logger.info(f"Server will listen on {config.api.host}:{config.api.port}")

    from cardsmith.api.app import create_app

    uvicorn.run(
        create_app(config=config),
        host=config.api.host,
        port=config.api.port,
        log_level="info",
        log_config=None,  # keep our basicConfig
    )


if __name__ == "__main__":
    main()
