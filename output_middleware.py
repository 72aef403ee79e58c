import sys
import threading
from enum import Flag
from typing import List, Optional, Sequence, TextIO

from resolver_middleware import Classification


class Mode(Flag):
    DEFAULT = 0
    APPEND = 1  # keep CDN hosts in the output
    QUIET = 2   # no info/progress chatter; results unaffected


def parse_ports(text: Optional[str]) -> List[int]:
    """'80,443' -> [80, 443]. Raises ValueError on anything outside 1-65535."""
    if not text:
        return []
    ports: List[int] = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        port = int(part)
        if not 1 <= port <= 65535:
            raise ValueError(f"port out of range: {port}")
        if port not in ports:
            ports.append(port)
    return ports


def render(c: Classification, mode: Mode = Mode.DEFAULT, ports: Sequence[int] = ()) -> List[str]:
    """
    Lines to print for one classification.
      no ports:          non-CDN hosts; CDN hosts too with APPEND
      ports + APPEND:    CDN hosts as host:port per port, non-CDN bare
      ports, no APPEND:  non-CDN hosts as host:port per port, CDN dropped
    Unresolved hosts never print.
    """
    if not c.resolved:
        return []
    append = bool(mode & Mode.APPEND)
    host = c.hostname.strip()

    if not ports:
        if c.is_cdn and not append:
            return []
        return [host]

    if append:
        if c.is_cdn:
            return [f"{host}:{p}" for p in ports]
        return [host]

    if c.is_cdn:
        return []
    return [f"{host}:{p}" for p in ports]


class OutputSink:
    def __init__(self, mode: Mode = Mode.DEFAULT, ports: Sequence[int] = (), stream: Optional[TextIO] = None):
        self.mode = mode
        self.ports = list(ports)
        self.stream = stream or sys.stdout
        self._lock = threading.Lock()
        self.printed = 0

    def emit(self, classification: Classification) -> int:
        lines = render(classification, self.mode, self.ports)
        if not lines:
            return 0
        with self._lock:
            self.stream.write("\n".join(lines) + "\n")
            self.stream.flush()
            self.printed += len(lines)
        return len(lines)
