import logging
import sys

_QUIET = ("sqlalchemy.engine", "httpx", "httpcore")

def configure_logging(level: str = "INFO"):
    root = logging.getLogger()
    root.setLevel(level)
    # idempotent: uvicorn reload and tests call this more than once
    if not any(getattr(h, "_grovemc", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(
            "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
        ))
        handler._grovemc = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    for name in _QUIET:
        logging.getLogger(name).setLevel(logging.WARNING)
