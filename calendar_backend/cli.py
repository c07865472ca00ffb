"""Command-line entry point that serves the calendar API with uvicorn."""

from __future__ import annotations

import argparse
import dataclasses
from pathlib import Path
from typing import Sequence

import uvicorn

from calendar_backend.config import get_settings
from calendar_backend.logging import configure_logging
from calendar_backend.main import create_app


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="calendar-backend", description="Self-hosted calendar API server.")
    parser.add_argument("--host", help="Interface to bind (default from CALENDAR_HOST).")
    parser.add_argument("--port", type=int, help="Port to listen on (default from CALENDAR_PORT).")
    parser.add_argument("--data-dir", type=Path, help="Directory holding the JSON documents.")
    parser.add_argument("--log-level", help="Logging level, e.g. DEBUG or INFO.")
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    overrides = {
        "host": args.host,
        "port": args.port,
        "data_dir": args.data_dir,
        "log_level": args.log_level.upper() if args.log_level else None,
    }
    settings = dataclasses.replace(get_settings(), **{k: v for k, v in overrides.items() if v is not None})

    configure_logging(settings.log_level, log_path=settings.log_file)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":  # pragma: no cover
    main()
