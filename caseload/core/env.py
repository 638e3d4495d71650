from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Iterable, Optional

ENV_FILE_VARIABLE = "CASELOAD_ENV_FILE"


def load_env(path: Optional[Path] = None) -> Dict[str, str]:
    """
    Populate os.environ from dotenv files and return what was applied.

    Without `path` the files are `.env` then `.env.local` next to the project
    root, or the file named by CASELOAD_ENV_FILE. `.env.local` may override
    `.env`; variables already set in the shell are never touched.
    """
    shell_keys = frozenset(os.environ)
    applied: Dict[str, str] = {}

    for env_path, may_override in _candidates(path):
        if not env_path.is_file():
            continue
        for key, value in _parse(env_path.read_text(encoding="utf-8").splitlines()):
            if key in shell_keys:
                continue
            if key in os.environ and not may_override:
                continue
            os.environ[key] = value
            applied[key] = value
    return applied


def _candidates(path: Optional[Path]):
    if path is not None:
        return [(path, False)]
    explicit = os.getenv(ENV_FILE_VARIABLE, "").strip()
    if explicit:
        return [(Path(explicit).expanduser(), False)]
    root = Path(__file__).resolve().parents[2]
    return [(root / ".env", False), (root / ".env.local", True)]


def _parse(lines: Iterable[str]):
    for raw_line in lines:
        line = raw_line.strip()
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if key:
            yield key, _clean_value(value.strip())


def _clean_value(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    # Unquoted values may carry a trailing comment.
    if " #" in value:
        value = value.split(" #", 1)[0].rstrip()
    return value


__all__ = ["ENV_FILE_VARIABLE", "load_env"]
