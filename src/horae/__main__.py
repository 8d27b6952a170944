"""Entry point: python -m horae <command>

- "state [--skip N] [dir]": Print the compact state summary of a transcript
- "scan [dir]":             Annotate unprocessed turns, rebuild tables, save
- "parse <file>":           Print the Delta parsed from a raw text file as JSON
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

from horae.config import HoraeConfig, load_config

USAGE = """\
Usage: python -m horae [state|scan|parse] ...
  state [--skip N] [dir]  — Print the compact state summary
  scan [dir]              — Backfill un-annotated turns and rebuild tables
  parse <file>            — Parse one raw turn and print its Delta as JSON"""


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _transcript_dir(args: list[str], config: HoraeConfig) -> Path | None:
    root = Path(args[0]).expanduser() if args else config.transcript_dir
    if not root.is_dir():
        print(f"Transcript directory not found: {root}", file=sys.stderr)
        return None
    return root


def _run_state(args: list[str], config: HoraeConfig) -> int:
    """Print the summary, optionally ignoring the last N turns."""
    skip = 0
    if args[:1] == ["--skip"]:
        if len(args) < 2 or not args[1].isdigit():
            print(USAGE)
            return 1
        skip = int(args[1])
        args = args[2:]
    root = _transcript_dir(args, config)
    if root is None:
        return 1

    from horae.core import Horae
    from horae.transcript import TranscriptStore

    store = TranscriptStore(root)
    turns = store.load_turns()
    horae = Horae(turns, config, store.load_tables(config.global_tables))
    print(horae.summary(skip_last=skip))
    if horae.dirty:
        store.save_turns(turns)
    return 0


def _run_scan(args: list[str], config: HoraeConfig) -> int:
    root = _transcript_dir(args, config)
    if root is None:
        return 1

    from horae.core import Horae
    from horae.transcript import TranscriptStore

    store = TranscriptStore(root)
    turns = store.load_turns()
    tables = store.load_tables(config.global_tables)
    horae = Horae(turns, config, tables)

    result = asyncio.run(horae.scan_history())
    horae.rebuild_tables()
    store.save_turns(turns)
    store.save_tables(tables)
    print(f"processed={result.processed} skipped={result.skipped}")
    return 0


def _run_parse(args: list[str]) -> int:
    if not args:
        print(USAGE)
        return 1
    path = Path(args[0]).expanduser()
    if not path.is_file():
        print(f"File not found: {path}", file=sys.stderr)
        return 1

    from horae.parser import parse_loose, parse_tag

    text = path.read_text(encoding="utf-8")
    delta = parse_tag(text) or parse_loose(text)
    print(json.dumps(delta.to_dict() if delta else None, ensure_ascii=False, indent=2))
    return 0


def main(argv: list[str] | None = None) -> None:
    argv = sys.argv[1:] if argv is None else argv
    cmd = argv[0] if argv else ""
    config = load_config()
    _setup_logging(config.log_level)

    if cmd == "state":
        code = _run_state(argv[1:], config)
    elif cmd == "scan":
        code = _run_scan(argv[1:], config)
    elif cmd == "parse":
        code = _run_parse(argv[1:])
    else:
        print(USAGE)
        code = 1
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
