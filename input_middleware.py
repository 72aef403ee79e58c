from typing import Iterable, Iterator


def iter_domains(stream: Iterable[str]) -> Iterator[str]:
    """
    Lazily yield domains from a text stream (one per line), skipping
    blanks and '#' comments. Nothing is buffered, so piped stdin of any
    size streams straight into the resolver pool.
    """
    for line in stream:
        s = line.strip()
        if not s or s.startswith("#"):
            continue
        yield s

