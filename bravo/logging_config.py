"""Logging setup for Bravo.

Two sinks live under ``<data dir>/logs``:

- ``local-YYYY-MM-DD.log``: the ``bravo`` logger hierarchy.
- ``ledger-events-YYYY-MM-DD.log``: one line per escrow hold, release,
  wallet credit and sync run, kept apart so money movements can be audited
  without the noise of the application log.
"""

import logging
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Optional

from bravo.utils import get_bravo_home

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _log_dir() -> Path:
    path = get_bravo_home() / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


def setup_bravo_logging(level: str = "INFO", log_dir: Optional[Path] = None) -> logging.Logger:
    """Configure the ``bravo`` logger with a dated file handler.

    Calling this more than once does not add duplicate handlers. At DEBUG a
    console handler is attached as well. Unknown level names fall back to INFO.
    """
    logger = logging.getLogger("bravo")
    resolved = getattr(logging, str(level).upper(), None)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logger.setLevel(resolved)

    directory = log_dir or _log_dir()
    directory.mkdir(parents=True, exist_ok=True)
    log_file = directory / f"local-{date.today().isoformat()}.log"

    formatter = logging.Formatter(LOG_FORMAT)

    has_file = any(
        isinstance(h, logging.FileHandler) and Path(h.baseFilename) == log_file
        for h in logger.handlers
    )
    if not has_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if resolved <= logging.DEBUG:
        has_console = any(
            isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
            for h in logger.handlers
        )
        if not has_console:
            console = logging.StreamHandler()
            console.setFormatter(formatter)
            logger.addHandler(console)

    return logger


def log_ledger_event(event_type: str, details: str) -> None:
    """Append one line to the ledger event log.

    Never raises: an unwritable log directory must not abort a settlement.
    """
    try:
        path = _log_dir() / f"ledger-events-{date.today().isoformat()}.log"
        timestamp = datetime.now(timezone.utc).isoformat()
        with open(path, "a", encoding="utf-8") as f:
            f.write(f"{timestamp} | {event_type} | {details}\n")
    except OSError as e:
        logging.getLogger(__name__).debug(f"Could not write ledger event: {e}")


def log_hold(job_id: str, price: float, professional: str, client: str) -> None:
    log_ledger_event(
        "hold", f"job={job_id} | price={price:.2f} | pro={professional} | client={client}"
    )


def log_release(job_id: str, price: float, commission: float, earning: float) -> None:
    log_ledger_event(
        "release",
        f"job={job_id} | price={price:.2f} | commission={commission:.2f} | earning={earning:.2f}",
    )


def log_credit(email: str, job_id: str, amount: float, balance: float) -> None:
    log_ledger_event(
        "credit", f"user={email} | job={job_id} | amount={amount:.2f} | balance={balance:.2f}"
    )


def log_sync(direction: str, count: int, errors: int = 0) -> None:
    log_ledger_event("sync", f"direction={direction} | count={count} | errors={errors}")
