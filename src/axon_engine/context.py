from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .models import Bead

logger = logging.getLogger(__name__)

_SAFE_TAG = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


@dataclass(frozen=True, slots=True)
class BeadContext:
    """Opaque reference material handed to the agent alongside the bead instruction."""

    system_prompt: str = ""
    skills_context: str = ""
    spec_context: str = ""

    def render(self) -> str:
        sections = [self.system_prompt.strip()]
        if self.spec_context.strip():
            sections.append(f"## Project Specification\n{self.spec_context.strip()}")
        if self.skills_context.strip():
            sections.append(f"## Reference Skills\n{self.skills_context.strip()}")
        return "\n\n".join(section for section in sections if section)


class ContextProvider(Protocol):
    def build_context(self, bead: Bead) -> BeadContext:
        ...


class EmptyContext:
    def build_context(self, bead: Bead) -> BeadContext:
        return BeadContext()


class SkillsDirectoryContext:
    """Read ``<skills_dir>/<tag>.md`` for each required skill plus the project spec file.

    Missing files are skipped. Tags that could escape the skills directory are ignored.
    """

    def __init__(self, skills_dir: Path, spec_path: Path | None = None, *, max_spec_chars: int = 20_000) -> None:
        self.skills_dir = skills_dir
        self.spec_path = spec_path
        self.max_spec_chars = max_spec_chars

    def _read(self, path: Path) -> str | None:
        if not path.is_file():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Skipping unreadable context file %s: %s", path, exc)
            return None

    def skills_text(self, tags: list[str]) -> str:
        blocks: list[str] = []
        for tag in tags:
            if not _SAFE_TAG.match(tag):
                logger.debug("Ignoring skill tag %r", tag)
                continue
            text = self._read(self.skills_dir / f"{tag}.md")
            if text is None:
                logger.debug("No skill file for tag %r in %s", tag, self.skills_dir)
                continue
            blocks.append(f"### {tag}\n{text.strip()}")
        return "\n\n".join(blocks)

    def spec_text(self) -> str:
        if self.spec_path is None:
            return ""
        text = self._read(self.spec_path) or ""
        return text[: self.max_spec_chars]

    def build_context(self, bead: Bead) -> BeadContext:
        lines = [f"Title: {bead.title}"] if bead.title else []
        if bead.acceptance_criteria:
            lines.append("Acceptance criteria:")
            lines.extend(f"- {criterion}" for criterion in bead.acceptance_criteria)
        return BeadContext(
            system_prompt="\n".join(lines),
            skills_context=self.skills_text(bead.skills_required),
            spec_context=self.spec_text(),
        )
