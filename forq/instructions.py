"""Load and render prompt templates from disk.

Templates resolve in two layers:
  1. Personal overrides in ``~/.forq/instructions/`` (highest priority)
  2. Packaged defaults in ``forq/prompts/``
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping

_PERSONAL_DIR = Path("~/.forq/instructions").expanduser()
_PACKAGE_DIR = Path(__file__).resolve().parent / "prompts"


class _SafeFormatDict(dict[str, str]):
    """Leave unknown placeholders untouched instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionLoader:
    """Read and render templates, preferring personal overrides."""

    def __init__(
        self,
        base_dir: Path | str | None = None,
        personal_dir: Path | str | None = None,
    ):
        if base_dir is not None:
            self.base_dir = Path(base_dir).expanduser().resolve()
        else:
            env_dir = os.getenv("FORQ_INSTRUCTIONS_DIR")
            self.base_dir = Path(env_dir).expanduser().resolve() if env_dir else _PACKAGE_DIR
        self.personal_dir = (
            Path(personal_dir).expanduser().resolve() if personal_dir is not None else _PERSONAL_DIR
        )
        self._cache: dict[str, str] = {}

    def path_for(self, name: str) -> Path:
        personal = self.personal_dir / name
        if personal.is_file():
            return personal
        return self.base_dir / name

    def load(self, name: str) -> str:
        cached = self._cache.get(name)
        if cached is not None:
            return cached
        path = self.path_for(name)
        if not path.is_file():
            raise FileNotFoundError(f"Instruction template not found: {path}")
        content = path.read_text(encoding="utf-8").strip()
        self._cache[name] = content
        return content

    def render(self, name: str, **variables: object) -> str:
        """Render with ``str.format`` placeholders; unknown ones are kept."""
        values: Mapping[str, str] = {k: str(v) for k, v in variables.items()}
        return self.load(name).format_map(_SafeFormatDict(values))
