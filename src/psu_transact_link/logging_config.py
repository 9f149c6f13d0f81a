import logging
import os
from pathlib import Path
from typing import Optional


def configure_logging(level: str = "INFO", file_path: Optional[str] = None) -> None:
    numeric_level = getattr(logging, (level or "INFO").upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if file_path:
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        handlers=handlers,
        force=True,  # the CLI reconfigures once the config file is loaded
    )

    # Reduce noise from chatty libraries
    for noisy in ("playwright", "urllib3", "asyncio", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(os.getenv("NOISY_LOG_LEVEL", "WARNING"))


def mask_email(email: str) -> str:
    """
    `jdoe123@psu.edu` -> `j***@psu.edu`. Used anywhere an account label reaches the logs.
    """
    s = (email or "").strip()
    if "@" not in s:
        return "***" if s else ""
    local, domain = s.split("@", 1)
    head = local[:1] if local else ""
    return f"{head}***@{domain}"
