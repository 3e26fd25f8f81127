"""Project context gathered once per session for the system prompt."""

import subprocess
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path

from forq.instructions import InstructionLoader
from forq.logging import get_logger

log = get_logger(__name__)

PROJECT_INSTRUCTIONS_FILE = "FORQ.md"
SYSTEM_PROMPT_TEMPLATE = "system_prompt.md"
MAX_TREE_ENTRIES = 200
_SKIPPED_NAMES = {"node_modules", "__pycache__"}


@dataclass
class GitContext:
    branch: str = ""
    modified_files: list[str] = field(default_factory=list)
    recent_commits: list[str] = field(default_factory=list)

    def render(self) -> str:
        lines = ["## Git"]
        if self.branch:
            lines.append(f"Current branch: {self.branch}")
        if self.modified_files:
            lines.append("Modified files:")
            lines.extend(f"- {name}" for name in self.modified_files[:50])
        if self.recent_commits:
            lines.append("Recent commits:")
            lines.extend(f"- {commit}" for commit in self.recent_commits)
        return "\n".join(lines)


def load_project_instructions(root: Path) -> str | None:
    """Contents of FORQ.md in the project root, if present."""
    path = root / PROJECT_INSTRUCTIONS_FILE
    if not path.is_file():
        return None
    try:
        return path.read_text(encoding="utf-8").strip() or None
    except OSError as e:
        log.warning("Failed to read project instructions", path=str(path), error=str(e))
        return None


def _git(root: Path, *args: str) -> str | None:
    try:
        completed = subprocess.run(
            ["git", *args],
            cwd=root,
            capture_output=True,
            text=True,
            timeout=5,
            check=False,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    if completed.returncode != 0:
        return None
    return completed.stdout


def collect_git_context(root: Path) -> GitContext | None:
    """Branch, working tree changes and last commits; None outside a repository."""
    inside = _git(root, "rev-parse", "--is-inside-work-tree")
    if inside is None or inside.strip() != "true":
        return None

    status = _git(root, "status", "--porcelain") or ""
    commits = _git(root, "log", "-5", "--pretty=format:%h %s (%an, %ad)", "--date=short") or ""
    return GitContext(
        branch=(_git(root, "branch", "--show-current") or "").strip(),
        modified_files=[line[3:] for line in status.splitlines() if len(line) > 3],
        recent_commits=[line for line in commits.splitlines() if line.strip()],
    )


def directory_summary(root: Path, max_depth: int = 2) -> str:
    """Tree view of the project, directories first, hidden entries skipped."""
    lines = [f"Directory structure for {root.name or root}:"]

    def visit(directory: Path, depth: int, prefix: str) -> None:
        if depth > max_depth or len(lines) > MAX_TREE_ENTRIES:
            return
        try:
            entries = [
                entry for entry in directory.iterdir()
                if not entry.name.startswith(".") and entry.name not in _SKIPPED_NAMES
            ]
        except OSError:
            return
        entries.sort(key=lambda entry: (not entry.is_dir(), entry.name.lower()))
        for index, entry in enumerate(entries):
            if len(lines) > MAX_TREE_ENTRIES:
                lines.append(f"{prefix}...")
                return
            last = index == len(entries) - 1
            lines.append(f"{prefix}{'└── ' if last else '├── '}{entry.name}{'/' if entry.is_dir() else ''}")
            if entry.is_dir():
                visit(entry, depth + 1, prefix + ("    " if last else "│   "))

    visit(root, 1, "")
    return "\n".join(lines)


def build_system_prompt(
    root: Path | str | None = None,
    loader: InstructionLoader | None = None,
    include_git: bool = True,
    include_tree: bool = True,
) -> str:
    """Render the system prompt with project instructions, git state and layout."""
    project_root = Path(root or Path.cwd()).expanduser().resolve()
    loader = loader or InstructionLoader()

    sections: list[str] = []
    instructions = load_project_instructions(project_root)
    if instructions:
        sections.append(f"## Project-Specific Instructions\n{instructions}")
    if include_git:
        git_context = collect_git_context(project_root)
        if git_context is not None:
            sections.append(git_context.render())
    if include_tree:
        sections.append(f"## Project Layout\n{directory_summary(project_root)}")

    log.debug("Built system prompt", root=str(project_root), sections=len(sections))
    return loader.render(
        SYSTEM_PROMPT_TEMPLATE,
        working_directory=project_root,
        date=date.today().isoformat(),
        project_sections=("\n\n" + "\n\n".join(sections)) if sections else "",
    ).strip()
