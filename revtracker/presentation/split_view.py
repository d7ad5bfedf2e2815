from collections.abc import Iterator

from revtracker.pydantic_models.artifacts.diff import Diff, DiffSegment, SegmentKind

SPLIT_DIFF_CSS: str = """
.split-diff-container {
  display: flex;
  justify-content: space-between;
}
.split-diff-left, .split-diff-right {
  width: 48%;
}
.diff-insert {
  background-color: #e6ffe6;
  text-decoration: none;
}
.diff-delete {
  background-color: #ffe6e6;
  text-decoration: line-through;
}
.diff-equal {
  background-color: none;
  text-decoration: none;
}
"""

CSS_CLASS_BY_KIND: dict[SegmentKind, str] = {
    SegmentKind.EQUAL: "diff-equal",
    SegmentKind.INSERT: "diff-insert",
    SegmentKind.DELETE: "diff-delete",
}

_HTML_ESCAPES: dict[str, str] = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#039;",
}


def escape_html(unsafe: str) -> str:
    return "".join(_HTML_ESCAPES.get(c, c) for c in unsafe)


def convert_newlines_to_br(text: str) -> str:
    return text.replace("\n", "<br>")


def render_fragment(segment: DiffSegment) -> str:
    return f'<div class="{CSS_CLASS_BY_KIND[segment.kind]}">{convert_newlines_to_br(escape_html(segment.text))}</div>'


def _side(diff: Diff, hidden: SegmentKind) -> Iterator[str]:
    for segment in diff.segments:
        if segment.kind is not hidden:
            yield render_fragment(segment)


def render_split_html(diff: Diff) -> str:
    """
    Render the diff as two columns.
    The left column is the previous version (deletions struck through), the right one the current version (insertions highlighted).
    """
    left = "".join(_side(diff, hidden=SegmentKind.INSERT))
    right = "".join(_side(diff, hidden=SegmentKind.DELETE))
    return (
        '<div class="split-diff-container">'
        f'<div class="split-diff-left">{left}</div>'
        f'<div class="split-diff-right">{right}</div>'
        "</div>"
    )


def render_html_page(markup: str, title: str) -> str:
    return (
        "<!DOCTYPE html>\n"
        "<html>\n<head>\n"
        '<meta charset="utf-8">\n'
        f"<title>{escape_html(title)}</title>\n"
        f"<style>{SPLIT_DIFF_CSS}</style>\n"
        "</head>\n<body>\n"
        f'<div class="diff-content">{markup}</div>\n'
        "</body>\n</html>\n"
    )


def render_inline_preview(diff: Diff) -> str:
    """Plain text view: every line prefixed with '+', '-' or ' '."""
    prefix = {SegmentKind.EQUAL: " ", SegmentKind.INSERT: "+", SegmentKind.DELETE: "-"}
    result_lines = []
    for segment in diff.segments:
        for line in segment.text.split("\n"):
            result_lines.append(f"{prefix[segment.kind]} {line}")
        # The split above yields an empty tail for a terminated segment
        if segment.text.endswith("\n"):
            result_lines.pop()
    return "\n".join(result_lines)
