import logging
from pathlib import Path
from typing import Iterable, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# third-party loggers that flood DEBUG output
QUIET_LOGGERS = ("numba", "anndata", "h5py", "fsspec")

LOGGER = logging.getLogger(__name__)


def init_logging(
    logfile: Optional[Path] = None,
    level: int = logging.INFO,
    quiet: Iterable[str] = QUIET_LOGGERS,
) -> None:
    """
    Route all scSketch logging to stderr and, optionally, to ``logfile``.

    Any handlers already on the root logger are removed first (Typer and
    notebooks often install their own). Python warnings raised by anndata /
    scanpy are captured into the same stream so they end up in the run log.
    """
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)

    handlers = [logging.StreamHandler()]
    if logfile is not None:
        logfile = Path(logfile)
        logfile.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(logfile, mode="w", encoding="utf-8"))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)
    logging.captureWarnings(True)

    for name in quiet:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def log_run_header(command: str, options: dict) -> None:
    """One INFO line per option so every run log records how it was produced."""
    LOGGER.info("scsketch %s", command)
    for key in sorted(options):
        LOGGER.info("  %-20s %s", key, options[key])
