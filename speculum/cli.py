"""Speculum CLI. Invoked as `speculum` when installed with pip install -e ."""

import argparse
import logging
import signal
import sys
from pathlib import Path

from tqdm import tqdm

from speculum.config import (
    DEFAULT_BODY_TIMEOUT,
    DEFAULT_HEADER_TIMEOUT,
    DEFAULT_INDEX,
    MirrorConfig,
    default_staging_dir,
)
from speculum.errors import StartupError
from speculum.filters import RobotsFilter, all_of, http_only, matching, same_host
from speculum.orchestrator import Orchestrator
from speculum.resource import Resource


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="speculum",
        description="Mirror a website to a local directory with links rewritten for offline browsing.",
    )
    parser.add_argument("url", help="Entry URL to mirror")
    parser.add_argument("--out-dir", default="mirror", help="Mirror root directory (default: mirror)")
    parser.add_argument(
        "--tmp-dir",
        default=None,
        metavar="DIR",
        help=f"Staging directory for partial downloads (default: {default_staging_dir()})",
    )
    parser.add_argument("--clean", action="store_true", help="Delete the mirror root before starting")
    parser.add_argument(
        "--skip-existing",
        action="store_true",
        help="Leave files whose content hash did not change untouched",
    )
    parser.add_argument(
        "--link-redirects",
        action="store_true",
        help="Symlink redirect and canonical URLs to the stored file instead of fetching them again",
    )
    parser.add_argument("--index", default=DEFAULT_INDEX, metavar="NAME", help="Filename for directory URLs")
    parser.add_argument(
        "--header-timeout",
        type=float,
        default=DEFAULT_HEADER_TIMEOUT,
        metavar="SECS",
        help=f"Max wait for response headers (default: {DEFAULT_HEADER_TIMEOUT:.0f})",
    )
    parser.add_argument(
        "--body-timeout",
        type=float,
        default=DEFAULT_BODY_TIMEOUT,
        metavar="SECS",
        help=f"Max time to receive a body (default: {DEFAULT_BODY_TIMEOUT:.0f})",
    )
    parser.add_argument("--workers", type=int, default=1, metavar="N", help="Resources processed in parallel (default: 1)")
    parser.add_argument(
        "--retries",
        type=int,
        default=0,
        metavar="N",
        help="Retries for timeouts, transport errors and 429/5xx (default: 0)",
    )
    parser.add_argument("--any-host", action="store_true", help="Follow links to other hosts too")
    parser.add_argument("--include", default=None, metavar="REGEX", help="Only mirror URLs matching REGEX")
    parser.add_argument("--exclude", default=None, metavar="REGEX", help="Never mirror URLs matching REGEX")
    parser.add_argument(
        "--no-robots",
        action="store_true",
        help="Ignore robots.txt (use only when you have permission).",
    )
    parser.add_argument("--no-progress", action="store_true", help="Disable progress bar (e.g. for scripting)")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="count", default=0, help="More log output (-vv for debug)")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only log errors")
    return parser


def build_filter(args: argparse.Namespace):
    filters = [http_only if args.any_host else same_host(args.url)]
    if args.include or args.exclude:
        filters.append(matching(args.include, args.exclude))
    if not args.no_robots:
        filters.append(RobotsFilter())
    return all_of(*filters)


def configure_logging(verbose: int, quiet: bool) -> None:
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        stream=sys.stderr,
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.quiet)

    try:
        config = MirrorConfig(
            entry_url=args.url.strip(),
            local_root=Path(args.out_dir),
            staging_dir=Path(args.tmp_dir) if args.tmp_dir else default_staging_dir(),
            clean_local=args.clean,
            skip_existing=args.skip_existing,
            link_redirects=args.link_redirects,
            default_index=args.index,
            header_timeout=args.header_timeout,
            body_timeout=args.body_timeout,
            workers=args.workers,
            max_retries=args.retries,
        )
    except ValueError as e:
        parser.error(str(e))

    use_progress = not args.no_progress and not args.quiet
    pbar = tqdm(desc="Mirror", unit=" file", file=sys.stderr, disable=not use_progress)
    failed: list[str] = []

    def on_resource(res: Resource, ok: bool) -> None:
        if not ok:
            failed.append(res.linked_url)
        pbar.set_postfix(queued=orchestrator.registry.pending, failed=len(failed))
        pbar.update(1)

    orchestrator = Orchestrator(config, build_filter(args), on_resource=on_resource)

    def on_interrupt(signum, frame) -> None:
        # second Ctrl-C aborts immediately
        signal.signal(signal.SIGINT, signal.default_int_handler)
        print("\nStopping after the current file...", file=sys.stderr)
        if orchestrator.running:
            orchestrator.stop()

    signal.signal(signal.SIGINT, on_interrupt)
    print(f"Mirror: {config.entry_url} -> {config.local_root}", file=sys.stderr)
    try:
        orchestrator.start()
    except StartupError as e:
        pbar.close()
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pbar.close()
        print("Interrupted.", file=sys.stderr)
        sys.exit(130)
    pbar.close()

    stats = orchestrator.url_stats()
    print(
        f"\nDone. {stats['downloaded']} saved, {stats['skipped']} skipped, "
        f"{stats['denied']} not admitted, {stats['bytes']} bytes.",
        file=sys.stderr,
    )
    for url in failed:
        print(f"  fail {url}", file=sys.stderr)
    if orchestrator.halted:
        sys.exit(130)


if __name__ == "__main__":
    main()
