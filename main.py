#!/usr/bin/env python3
"""
AI Speaker v1.0.0, main entry point.

    python main.py            # API server (with the embedded job worker)
    python main.py serve      # same
    python main.py worker     # standalone job worker, no HTTP
"""

import os
import sys
import signal
import logging
import threading
import traceback
from pathlib import Path
from datetime import datetime

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from aispeaker.core.config import AppConfig  # noqa: E402
from aispeaker.core.constants import APP_DISPLAY_NAME, APP_VERSION  # noqa: E402
from aispeaker.core.diagnostics import missing_tools  # noqa: E402
from aispeaker.core.security_utils import mask_secret  # noqa: E402

logger = logging.getLogger("aispeaker")


def setup_logging(log_file: str = ""):
    """Log to stderr, and to `log_file` as well when one is configured."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def check_prerequisites():
    """Check that yt-dlp and ffmpeg are available, exit if not."""
    import shutil
    missing = missing_tools()
    if missing:
        logger.error("Missing required tools: %s. PATH = %s",
                     ", ".join(missing), os.environ.get("PATH", ""))
        sys.exit(1)

    logger.info("yt-dlp found at: %s", shutil.which("yt-dlp"))
    logger.info("ffmpeg found at: %s", shutil.which("ffmpeg"))


def run_server(config: AppConfig):
    import uvicorn
    from aispeaker.api.server import create_app

    app = create_app(config)
    uvicorn.run(app, host=config.get('host'), port=config.get('port'), log_config=None)


def run_worker(config: AppConfig):
    from aispeaker.api.server import build_services

    services = build_services(config.as_dict())
    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    services.jobs.start_processing()
    logger.info("Worker running, waiting for jobs")
    stop.wait()
    services.jobs.stop_processing()
    services.db.close()


def main(argv: list[str] | None = None):
    argv = sys.argv[1:] if argv is None else argv
    mode = argv[0] if argv else "serve"
    if mode not in ("serve", "worker"):
        print(f"usage: {Path(sys.argv[0]).name} [serve|worker]", file=sys.stderr)
        sys.exit(2)

    config = AppConfig()
    setup_logging(config.get('log_file'))

    logger.info("=" * 60)
    logger.info("%s v%s (%s) starting at %s", APP_DISPLAY_NAME, APP_VERSION, mode,
                datetime.now().isoformat())
    logger.info("Python: %s", sys.executable)
    logger.info("Environment: %s", config.environment)
    logger.info("ElevenLabs key: %s", mask_secret(config.get('elevenlabs_api_key')))
    logger.info("Deepgram key: %s", mask_secret(config.get('deepgram_api_key')))
    logger.info("=" * 60)

    try:
        check_prerequisites()
        if mode == "worker":
            run_worker(config)
        else:
            run_server(config)
    except Exception as e:
        logger.critical("Fatal error: %s: %s\n%s", type(e).__name__, e, traceback.format_exc())
        sys.exit(1)


if __name__ == "__main__":
    main()
