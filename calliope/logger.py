from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOG_DIR = Path("logs")


def setup_logging(level: str = "INFO", log_dir: Optional[Path] = None) -> None:
    directory = log_dir or LOG_DIR
    directory.mkdir(parents=True, exist_ok=True)
    logfile = directory / "calliope.log"
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(logfile),
            logging.StreamHandler(),
        ],
    )
    # urllib3 logs every pooled connection at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
