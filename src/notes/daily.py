"""Markdown daily notes with YAML front matter."""

import asyncio
import re
from datetime import date, datetime
from pathlib import Path
from typing import Callable, Optional

import frontmatter
import structlog
import yaml

from app.config_models import NotesConfig
from prompts.errors import FormatError, TransientIOError
from prompts.models import Prompt, local_day
from shared_types import LinkHandling, PromptType

from .sink import NoteHandle, NoteSink
from .templates import PROMPT_PLACEHOLDER, render_template

logger = structlog.get_logger()

_NEXT_SECTION = re.compile(r"\n## ")
_TITLE = re.compile(r"^#[^#\n]*\n", re.MULTILINE)


def format_prompt_block(
    prompt: Prompt,
    link_handling: LinkHandling = LinkHandling.DIRECT,
    heading: str = "## Daily Prompt",
    now: Optional[datetime] = None,
) -> str:
    """Section inserted into the note for one prompt."""
    stamp = (now or datetime.now()).strftime("%H:%M:%S")
    body = prompt.content
    if prompt.type == PromptType.LINK:
        if link_handling == LinkHandling.EMBED:
            body = f"![[{prompt.content}]]"
        elif link_handling == LinkHandling.REFERENCE:
            body = f"[[{prompt.content}]]"
        else:
            body = f"[{prompt.content}]({prompt.content})"
    return f"{heading} ({stamp})\n\n{body}\n\n---\n\n"


def insert_block(content: str, block: str, heading: str = "## Daily Prompt") -> str:
    """Place a prompt block into note content.

    The ``{{prompt}}`` placeholder is replaced when present; otherwise the
    block is appended to an existing prompt section, otherwise placed after
    the title heading, otherwise at the top.
    """
    if PROMPT_PLACEHOLDER in content:
        return content.replace(PROMPT_PLACEHOLDER, block.strip(), 1)

    section = re.search(re.escape(heading), content, re.IGNORECASE)
    if section:
        # Section ends at the next level-2 heading that is not an earlier prompt block
        position = len(content)
        for following in _NEXT_SECTION.finditer(content, section.end()):
            if not content[following.start() + 1:].lower().startswith(heading.lower()):
                position = following.start()
                break
    else:
        title = _TITLE.search(content)
        position = title.end() if title else 0
        if title and content.startswith("\n", position):
            position += 1

    before, after = content[:position], content[position:]
    spacing = "\n" if before and not before.endswith("\n") else ""
    return before + spacing + block + after


class MarkdownDailyNotes(NoteSink):
    """Daily notes stored as ``YYYY-MM-DD.md`` files under a notes directory."""

    def __init__(
        self,
        notes_dir: str | Path,
        config: Optional[NotesConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or NotesConfig()
        self.notes_dir = Path(notes_dir).expanduser().resolve()
        self.folder = self._validate_path(self.notes_dir / self.config.folder)
        self._clock = clock or datetime.now
        self.zen_mode = False

    def _validate_path(self, filepath: Path) -> Path:
        """Ensure resolved path is inside notes_dir."""
        resolved = filepath.resolve()
        if not resolved.is_relative_to(self.notes_dir):
            raise ValueError(f"Path escapes notes directory: {filepath}")
        return resolved

    def note_path(self, day: date) -> Path:
        return self._validate_path(self.folder / f"{day.isoformat()}.md")

    def _create_or_open(self, day: date) -> NoteHandle:
        path = self.note_path(day)
        if path.exists():
            return NoteHandle(path=path, date=day, created=False)

        path.parent.mkdir(parents=True, exist_ok=True)
        post = frontmatter.Post(render_template(self.config.template, day))
        post["date"] = day.isoformat()
        post["type"] = "daily"
        post["created"] = self._clock().isoformat()
        path.write_text(frontmatter.dumps(post) + "\n")
        logger.info("daily_note_created", path=str(path))
        return NoteHandle(path=path, date=day, created=True)

    def _insert(self, prompt: Prompt, note: NoteHandle) -> None:
        post = frontmatter.load(note.path)
        block = format_prompt_block(
            prompt, self.config.link_handling, self.config.section_heading, self._clock()
        )
        post.content = insert_block(post.content, block, self.config.section_heading)
        if post.metadata:
            post["updated"] = self._clock().isoformat()
            text = frontmatter.dumps(post)
        else:
            text = post.content
        note.path.write_text(text.rstrip("\n") + "\n")
        logger.info("prompt_inserted", path=str(note.path), prompt_id=prompt.id)

    async def create_or_open_daily_note(self, day: Optional[date] = None) -> NoteHandle:
        day = local_day(day or self._clock())
        try:
            return await asyncio.to_thread(self._create_or_open, day)
        except OSError as e:
            raise TransientIOError(f"Could not open daily note for {day}: {e}") from e

    async def insert_prompt(self, prompt: Prompt, note: NoteHandle) -> None:
        try:
            await asyncio.to_thread(self._insert, prompt, note)
        except OSError as e:
            raise TransientIOError(f"Could not insert prompt into {note.path.name}: {e}") from e
        except yaml.YAMLError as e:
            raise FormatError(f"Front matter of {note.path.name} is not valid YAML: {e}") from e

    def read_note(self, day: date) -> frontmatter.Post:
        return frontmatter.load(self.note_path(day))

    def enable_zen_mode(self) -> None:
        if not self.zen_mode:
            self.zen_mode = True
            logger.info("zen_mode_enabled")

    def disable_zen_mode(self) -> None:
        if self.zen_mode:
            self.zen_mode = False
            logger.info("zen_mode_disabled")
