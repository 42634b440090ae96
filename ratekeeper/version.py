from __future__ import annotations

import tomllib
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

_PYPROJECT = Path(__file__).resolve().parents[1] / "pyproject.toml"


def get_version() -> str:
    """Installed distribution version, else the source checkout's pyproject, else 0.0.0."""
    try:
        return version("ratekeeper")
    except PackageNotFoundError:
        pass

    try:
        project = tomllib.loads(_PYPROJECT.read_text(encoding="utf-8")).get("project", {})
    except (OSError, tomllib.TOMLDecodeError):
        return "0.0.0"
    v = project.get("version")
    return v.strip() if isinstance(v, str) and v.strip() else "0.0.0"
