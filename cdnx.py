import argparse
import logging
import os
import sys
from pathlib import Path

from colorama import just_fix_windows_console

from cache_middleware import RangeCache, TotalRefreshFailure
from config_middleware import DEFAULT_THREADS, load_config
from input_middleware import iter_domains
from output_middleware import Mode, OutputSink, parse_ports
from progress_middleware import ProgressMiddleware, setup_logging
from resolver_middleware import DNSError, ResolverPool

log = logging.getLogger("cdnx")


def _bump_nofile_limit():
    # every in-flight lookup holds a socket
    if sys.platform.startswith("linux") or sys.platform == "darwin":
        try:
            import resource
            soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
            new_soft = min(max(soft, 8192), hard)
            resource.setrlimit(resource.RLIMIT_NOFILE, (new_soft, hard))
        except (ImportError, ValueError, OSError) as e:
            log.debug("Could not raise open-file limit: %s", e)


def _threads(value: str) -> int:
    if str(value).lower() == "auto":
        return min(256, (os.cpu_count() or 4) * 16)
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError("must be an integer or 'auto'")
    if n < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return n


def _ports(value: str):
    try:
        return parse_ports(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid ports {value!r}: {e}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cdnx",
        description="Strip (or keep) CDN-fronted hosts from a stream of domains",
        epilog="""Examples:
  cat subs.txt | cdnx
  cat subs.txt | cdnx -a
  cat subs.txt | cdnx -a 80,443 | httpx
""",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("ports", nargs="?", type=_ports, default=[],
                        help="Comma-separated ports (e.g. 80,443,8000)")
    parser.add_argument("-t", "--threads", type=_threads, default=DEFAULT_THREADS,
                        help=f"Number of concurrent lookups (default: {DEFAULT_THREADS}, or 'auto')")
    parser.add_argument("-a", "--append", action="store_true", help="Append CDN hosts")
    parser.add_argument("-q", "--quiet", action="store_true", help="Suppress info/progress messages")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose (debug) messages")
    parser.add_argument("--config", type=Path, default=None,
                        help="Config YAML (default: $CDNX_HOME/config.yaml or ~/.config/cdnx/config.yaml)")
    parser.add_argument("--refresh", action="store_true", help="Refetch provider ranges now, ignoring the interval")
    parser.add_argument("--logfile", default=None, help="Optional log file")
    return parser


def main(argv=None, stdin=None, stdout=None) -> int:
    args = build_parser().parse_args(argv)
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout

    just_fix_windows_console()
    setup_logging(verbose=args.verbose, quiet=args.quiet, log_file=args.logfile)
    _bump_nofile_limit()

    mode = Mode.DEFAULT
    if args.append:
        mode |= Mode.APPEND
    if args.quiet:
        mode |= Mode.QUIET

    config = load_config(args.config)
    try:
        range_set = RangeCache(config).load_or_refresh(
            config.providers, config.interval, config.cache_path, force=args.refresh
        )
    except TotalRefreshFailure as e:
        log.error("%s", e)
        return 1
    log.debug("Loaded %d CDN ranges", len(range_set))

    sink = OutputSink(mode, args.ports, stdout)
    pool = ResolverPool(config)
    try:
        pool.lookup.check()
    except DNSError as e:
        log.error("%s", e)
        return 1
    progress = ProgressMiddleware(disable=args.quiet or not sys.stderr.isatty())

    try:
        results = pool.run(iter_domains(stdin), args.threads, range_set)
        for c in progress.wrap_iterable(results):
            if c.error:
                log.debug("%s: %s", c.hostname, c.error)
            sink.emit(c)
        log.debug("Printed %d line(s)", sink.printed)
    except KeyboardInterrupt:
        log.error("Interrupted")
        return 130
    except BrokenPipeError:
        # downstream closed (e.g. `| head`); keep the interpreter's final flush quiet
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        return 0
    return 0


if __name__ == "__main__":
    sys.exit(main())
