"""Configuration loading from environment variables and horae.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

from horae.tables import Table

_DEFAULT_TRANSCRIPT_DIR = Path.home() / ".horae" / "transcript"
_CONFIG_FILENAME = "horae.toml"


@dataclass
class SummaryConfig:
    """Which parts of the state go into the compact summary."""

    send_timeline: bool = True
    send_characters: bool = True
    send_items: bool = True
    context_depth: int = 15


@dataclass
class HoraeConfig:
    """Top-level Horae configuration."""

    summary: SummaryConfig = field(default_factory=SummaryConfig)
    global_tables: list[Table] = field(default_factory=list)
    transcript_dir: Path = _DEFAULT_TRANSCRIPT_DIR
    log_level: str = "INFO"


def load_config(config_path: Path | None = None) -> HoraeConfig:
    """Load configuration from environment variables and optional horae.toml.

    Priority: environment variables > horae.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text(encoding="utf-8"))
    else:
        # Search current dir and ~/.horae/
        for candidate in [Path.cwd() / _CONFIG_FILENAME, Path.home() / ".horae" / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text(encoding="utf-8"))
                break

    summary_data = file_data.get("summary", {})

    return HoraeConfig(
        summary=SummaryConfig(
            send_timeline=summary_data.get("send_timeline", True),
            send_characters=summary_data.get("send_characters", True),
            send_items=summary_data.get("send_items", True),
            context_depth=int(
                os.getenv("HORAE_CONTEXT_DEPTH", summary_data.get("context_depth", 15))
            ),
        ),
        global_tables=[Table.from_dict(t) for t in file_data.get("global_tables", [])],
        transcript_dir=Path(
            os.getenv("HORAE_TRANSCRIPT_DIR", file_data.get("transcript_dir", str(_DEFAULT_TRANSCRIPT_DIR)))
        ).expanduser(),
        log_level=os.getenv("HORAE_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
