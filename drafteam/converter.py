"""Textual contract with the external OSM to DXF converter.

The converter prints milestone phrases and summary counts on stdout. Lines
holding a JSON object are read as structured events instead, e.g.
``{"progress": 45, "message": "Clipping ways"}`` or
``{"stats": {"nodes": 12, "ways": 3, "layers": 2}}``.
"""
from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .state import ConversionStats, JobSpec

MILESTONES: Tuple[Tuple[str, int, str], ...] = (
    ("Processing nodes", 30, "Processing OSM nodes..."),
    ("Processing ways", 60, "Processing OSM ways..."),
    ("Generating DXF", 80, "Generating DXF file..."),
)

NODES_RE = re.compile(r"Processed (\d+) nodes")
WAYS_RE = re.compile(r"Processed (\d+) ways")
LAYERS_RE = re.compile(r"(\d+) layers created")


def build_command(
    spec: JobSpec,
    output_path: Union[str, Path],
    python_executable: str,
    converter_script: Union[str, Path],
) -> List[str]:
    command = [
        python_executable,
        str(converter_script),
        "--input", spec.input_file_path,
        "--output", str(output_path),
        "--projection", spec.projection,
    ]
    if spec.detailed:
        command.append("--detailed")
    return command


def _json_event(line: str) -> Optional[Dict[str, Any]]:
    line = line.strip()
    if not line.startswith("{"):
        return None
    try:
        event = json.loads(line)
    except ValueError:
        return None
    return event if isinstance(event, dict) else None


def _as_int(value: Any) -> Optional[int]:
    """Best-effort integer from converter JSON; None for NaN, infinities or junk."""
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def parse_progress(line: str) -> Optional[Tuple[int, Optional[str]]]:
    """Return ``(progress, message)`` if the line reports progress."""
    event = _json_event(line)
    if event is not None:
        progress = _as_int(event.get("progress"))
        if progress is None:
            return None
        message = event.get("message")
        return progress, str(message) if message else None
    for phrase, progress, message in MILESTONES:
        if phrase in line:
            return progress, message
    return None


def _count(pattern: re.Pattern, text: str) -> int:
    match = pattern.search(text)
    return int(match.group(1)) if match else 0


def parse_stats(stdout: str) -> ConversionStats:
    stats = ConversionStats(
        nodes=_count(NODES_RE, stdout),
        ways=_count(WAYS_RE, stdout),
        layers=_count(LAYERS_RE, stdout),
    )
    for line in stdout.splitlines():
        event = _json_event(line)
        if event is None or not isinstance(event.get("stats"), dict):
            continue
        reported = event["stats"]
        counts = {}
        for name in ("nodes", "ways", "layers"):
            value = _as_int(reported.get(name))
            counts[name] = getattr(stats, name) if value is None else value
        stats = ConversionStats(**counts)
    return stats
