import asyncio
import sys
from pathlib import Path
from typing import Protocol, TextIO, runtime_checkable

from loguru import logger

from revtracker.common.constants import DEFAULT_VIEW_TITLE
from revtracker.common.encoding import encode_text
from revtracker.presentation.split_view import render_html_page, render_inline_preview
from revtracker.pydantic_models.artifacts.diff import Diff


@runtime_checkable
class PresentationSink(Protocol):
    """Anything that can show a computed diff to the user."""

    async def render(self, diff: Diff, markup: str) -> None: ...


class HtmlFileSink:
    """Writes the split view as a stand-alone HTML page."""

    def __init__(self, path: str | Path, title: str = DEFAULT_VIEW_TITLE):
        self.path = Path(path)
        self.title = title

    async def render(self, diff: Diff, markup: str) -> None:
        await asyncio.to_thread(self._write_page, render_html_page(markup, self.title))
        logger.info(f"[View] Wrote split diff view to {self.path}")

    def _write_page(self, page: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_bytes(encode_text(page))


class TerminalSink:
    def __init__(self, stream: TextIO | None = None):
        self.stream = stream if stream is not None else sys.stdout

    async def render(self, diff: Diff, markup: str) -> None:
        if diff.is_unchanged:
            self.stream.write("No changes since the last calculation.\n")
            return
        self.stream.write(render_inline_preview(diff) + "\n")
        self.stream.write(
            f"{diff.inserted_line_count} line(s) inserted, {diff.deleted_line_count} line(s) deleted\n"
        )
