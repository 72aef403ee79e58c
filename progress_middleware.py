import logging
import sys
from typing import Iterable, Iterator, Optional, TypeVar

from colorama import Fore, Style
from tqdm import tqdm

T = TypeVar("T")

_SIGNS = {
    logging.DEBUG: (Style.DIM, "*"),
    logging.INFO: (Fore.BLUE, "+"),
    logging.WARNING: (Fore.YELLOW, "!"),
    logging.ERROR: (Fore.RED, "#"),
    logging.CRITICAL: (Fore.RED, "#"),
}


class SignFormatter(logging.Formatter):
    """'[+] message' with the sign colorized when writing to a TTY."""

    def __init__(self, color: bool = True):
        super().__init__("%(message)s")
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        msg = super().format(record)
        color, sign = _SIGNS.get(record.levelno, ("", "?"))
        if self.color:
            return f"[{color}{sign}{Style.RESET_ALL}] {msg}"
        return f"[{sign}] {msg}"


class TqdmHandler(logging.Handler):
    """Route log lines through tqdm.write so a live bar stays pinned at the bottom."""

    def __init__(self, stream=None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord):
        try:
            tqdm.write(self.format(record), file=self.stream)
        except Exception:
            self.handleError(record)


def setup_logging(verbose: bool = False, quiet: bool = False, log_file: Optional[str] = None, stream=None):
    """
    stderr: INFO by default, DEBUG with verbose, ERROR only with quiet.
    Optional log file always gets INFO and up with timestamps.
    """
    stream = stream or sys.stderr
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)

    level = logging.ERROR if quiet else (logging.DEBUG if verbose else logging.INFO)
    handler = TqdmHandler(stream)
    handler.setLevel(level)
    isatty = getattr(stream, "isatty", None)
    handler.setFormatter(SignFormatter(color=bool(isatty and isatty())))
    root.addHandler(handler)
    # handlers do the filtering
    root.setLevel(logging.DEBUG)

    if log_file:
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(logging.DEBUG if verbose else logging.INFO)
        fh.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
        root.addHandler(fh)

    # urllib3 chatters at DEBUG about every connection
    logging.getLogger("urllib3").setLevel(logging.WARNING)


class ProgressMiddleware:
    """
    Counter of classified domains on stderr. The input is a stream, so the
    total is usually unknown and the bar just counts up.
    """

    def __init__(self, total=None, desc="Resolving", unit="host", disable=False):
        self.total = total
        self.desc = desc
        self.unit = unit
        self.disable = disable
        self._bar = None
        self._stderr = sys.stderr

    def start(self):
        if self.disable or self._bar is not None:
            return
        self._bar = tqdm(
            total=self.total,
            desc=self.desc,
            unit=self.unit,
            leave=False,
            dynamic_ncols=True,
            file=self._stderr,
            mininterval=0.2,
        )

    def wrap_iterable(self, iterable: Iterable[T]) -> Iterator[T]:
        if self._bar is None:
            self.start()
        bar = self._bar
        try:
            for item in iterable:
                yield item
                if bar is not None:
                    bar.update(1)
        finally:
            self.close()

    def close(self):
        if self._bar is not None:
            self._bar.close()
            self._bar = None
