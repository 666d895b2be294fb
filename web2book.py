#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# ------------------------------------------------------------------
# Web comic chapters  →  PDF or EPUB books, driven by .properties files
# -----------------------------------------------------------
import argparse
import dataclasses
import os
import signal
import sys
import time
from typing import Dict, List, Optional, Tuple

from core.config import (
    GLOBAL_CONFIG_FILE,
    OUTPUT_FORMATS,
    collect_book_config_paths,
    load_book_spec,
    load_properties,
)
from core.errors import ConfigValidationError
from core.fetch import FetchClient, create_session
from core.job import BookJob
from core.log import format_duration, log_error, log_info, log_warning, parse_log_level, setup_console
from core.models import BookSpec, JobReport
from core.pacing import Pacer


def apply_overrides(spec: BookSpec, args) -> BookSpec:
    """Command-line switches win over every book's own settings."""
    changes = {}
    if args.format:
        changes["output_format"] = args.format
    if args.regenerate:
        changes["regenerate_existing"] = True
    if args.thinking_time is not None:
        changes["thinking_time_ms"] = max(0, args.thinking_time)
    return dataclasses.replace(spec, **changes) if changes else spec


def load_global_config(args) -> Optional[Dict[str, str]]:
    path = args.config
    if os.path.exists(path):
        return load_properties(path)
    if args.book:
        log_warning(f"Global config {path} not found, using defaults.")
        return {}
    log_error(f"Global config file not found: {os.path.abspath(path)}")
    return None


def install_signal_handlers(pacer: Pacer) -> None:
    def _interrupt(signum, frame):
        if pacer.cancelled:
            raise KeyboardInterrupt
        print("\nInterrupt received, stopping after the current step (press again to force)...")
        pacer.cancel()

    signal.signal(signal.SIGINT, _interrupt)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _interrupt)


def run_books(
    book_paths: List[str], global_props: Dict[str, str], args, pacer: Pacer, client: FetchClient
) -> Tuple[List[JobReport], int]:
    reports: List[JobReport] = []
    failed = 0
    log_level = parse_log_level(global_props.get("log.level"))
    for i, path in enumerate(book_paths, start=1):
        log_info(f"\n=== Book {i}/{len(book_paths)}: {path} ===")
        try:
            spec = apply_overrides(load_book_spec(path, global_props), args)
        except (ConfigValidationError, OSError) as e:
            log_error(f"ERROR: {e}")
            failed += 1
            continue

        report = BookJob(spec, client=client, pacer=pacer, log_level=log_level).run()
        reports.append(report)
        if report.aborted:
            failed += 1
            log_error(f"Book failed: {path} ({report.reason})")
        elif report.failed:
            failed += 1
            log_error(f"Book failed: {path} ({len(report.failed)} volume(s) could not be generated)")
        if pacer.cancelled:
            log_warning("Interrupted, remaining books are not processed.")
            break
    return reports, failed


def main(argv=None) -> int:
    p = argparse.ArgumentParser("web2book")
    p.add_argument(
        "--config",
        default=GLOBAL_CONFIG_FILE,
        help=f"Global properties file (default: {GLOBAL_CONFIG_FILE}).",
    )
    p.add_argument(
        "--book",
        action="append",
        default=[],
        help="Book properties file to process. Repeatable; replaces book.config.N entries.",
    )
    p.add_argument(
        "--format",
        choices=list(OUTPUT_FORMATS),
        default=None,
        help="Force the output format for every book.",
    )
    p.add_argument(
        "--regenerate",
        action="store_true",
        help="Rebuild books even when the output file already exists.",
    )
    p.add_argument(
        "--thinking-time",
        type=int,
        default=None,
        metavar="MS",
        help="Base delay between chapters in milliseconds (random jitter is added).",
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable detailed, step-by-step logging.",
    )
    p.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Enable debug-level logging.",
    )
    args = p.parse_args(argv)
    setup_console(args.verbose, args.debug)

    try:
        global_props = load_global_config(args)
    except OSError as e:
        log_error(f"Failed to load global config: {e}")
        return 1
    if global_props is None:
        return 1

    book_paths = args.book or collect_book_config_paths(global_props)
    if not book_paths:
        log_error("No book configurations found (set book.config.1, ... or pass --book).")
        return 1

    pacer = Pacer()
    install_signal_handlers(pacer)
    client = FetchClient(create_session(), pacer)

    started = time.monotonic()
    reports, failed = run_books(book_paths, global_props, args, pacer, client)

    log_info(f"\nProcessed {len(book_paths)} book(s): {len(book_paths) - failed} succeeded, {failed} failed")
    for report in reports:
        for volume in report.built:
            log_info(f"  {volume.path}")
    log_info(f"Total time: {format_duration((time.monotonic() - started) * 1000)}")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
