import logging
from pathlib import Path
from typing import Optional


def init_logging(logfile: Optional[Path] = None, level: int = logging.INFO) -> None:
    """
    Initialize logging with a stream handler + optional file handler.
    All existing handlers are removed so repeated CLI invocations in one
    process (tests, notebooks) do not duplicate output.
    """
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)
        h.close()

    handlers = [logging.StreamHandler()]

    if logfile is not None:
        logfile = Path(logfile)
        logfile.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(logfile, mode="w"))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
    )

    # numba / matplotlib chatter drowns the pipeline log at INFO
    for noisy in ("numba", "matplotlib", "fontTools"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))
