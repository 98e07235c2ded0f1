"""Project instruction discovery for system prompts.

Walks from a start directory (default: the current working directory) up to
the filesystem root and returns the first non-empty instruction file found.

Recognised files, in precedence order within one directory:

* ``AGENTS.md``
* ``CLAUDE.md``
"""

from __future__ import annotations

from pathlib import Path

_INSTRUCTION_FILES: tuple[str, ...] = ("AGENTS.md", "CLAUDE.md")

_PREAMBLE = (
    "The following instructions come from the project's AGENTS.md file. "
    "They were written by the project maintainers and describe "
    "project-specific conventions, preferences, and rules you must follow."
)


def find_instructions(start_dir: str | Path | None = None) -> str | None:
    """Return the content of the nearest instruction file, or None.

    Empty (whitespace-only) and unreadable files are skipped and the walk
    continues upward.
    """
    current = Path(start_dir or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        for filename in _INSTRUCTION_FILES:
            filepath = directory / filename
            if not filepath.is_file():
                continue
            try:
                content = filepath.read_text(encoding="utf-8", errors="replace")
            except OSError:
                continue
            if content.strip():
                return content
    return None


def load_instructions(start_dir: str | Path | None = None) -> str | None:
    """Discovered instructions wrapped in an ``<agents-md>`` block, or None."""
    content = find_instructions(start_dir)
    if content is None:
        return None
    return f"<agents-md>\n{_PREAMBLE}\n\n{content.strip()}\n</agents-md>"
