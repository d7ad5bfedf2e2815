"""
Line based comparison of two texts.

Everything in here is pure: same input, same output, no I/O.
The unit of comparison is a line including its terminator, so `"a"` and `"a\\n"` are different lines.
"""

from collections.abc import Iterator, Sequence
from difflib import SequenceMatcher

from revtracker.common.constants import DEFAULT_CONTEXT_LINES
from revtracker.pydantic_models.artifacts.diff import Diff, DiffSegment, SegmentKind

Opcode = tuple[str, int, int, int, int]


def split_lines(text: str) -> list[str]:
    """
    Split `text` into lines, keeping the `\\n` terminators.
    The last line may lack a terminator. An empty text has no lines.
    """
    # DevNote: str.splitlines also splits on \r, \x0b, \x0c, \x1c-\x1e, \x85, \u2028 and \u2029.
    # Any of these inside a line would be silently turned into a line break in the patch.
    if not text:
        return []
    lines = text.split("\n")
    result = [line + "\n" for line in lines[:-1]]
    if lines[-1]:
        result.append(lines[-1])
    return result


def _matcher(base_lines: Sequence[str], revised_lines: Sequence[str]) -> SequenceMatcher:
    # autojunk is off: the popularity heuristic discards frequent lines (blank lines in markdown!)
    # and yields noisy alignments on long documents.
    return SequenceMatcher(None, base_lines, revised_lines, autojunk=False)


def compute_diff(base: str, revised: str) -> Diff:
    """
    Compare `base` and `revised` line by line.

    Returns:
        Diff: Segments in document order. Unchanged runs are one EQUAL segment,
              a changed run is a DELETE followed by an INSERT.
    """
    base_lines = split_lines(base)
    revised_lines = split_lines(revised)

    segments: list[DiffSegment] = []
    for kind, text in _iter_segments(base_lines, revised_lines):
        if segments and segments[-1].kind is kind:
            # No two adjacent segments of one kind
            segments[-1] = DiffSegment(kind=kind, text=segments[-1].text + text)
        else:
            segments.append(DiffSegment(kind=kind, text=text))
    return Diff(segments=tuple(segments))


def _iter_segments(
    base_lines: list[str], revised_lines: list[str]
) -> Iterator[tuple[SegmentKind, str]]:
    for tag, i1, i2, j1, j2 in _matcher(base_lines, revised_lines).get_opcodes():
        match tag:
            case "equal":
                yield SegmentKind.EQUAL, "".join(base_lines[i1:i2])
            case "delete":
                yield SegmentKind.DELETE, "".join(base_lines[i1:i2])
            case "insert":
                yield SegmentKind.INSERT, "".join(revised_lines[j1:j2])
            case "replace":
                yield SegmentKind.DELETE, "".join(base_lines[i1:i2])
                yield SegmentKind.INSERT, "".join(revised_lines[j1:j2])
            case _:
                raise ValueError(f"Unknown opcode {tag}")


def group_hunks(
    base_lines: Sequence[str],
    revised_lines: Sequence[str],
    context_lines: int | None = DEFAULT_CONTEXT_LINES,
) -> list[list[Opcode]]:
    """
    Group the changes into hunks with `context_lines` lines of unchanged context around them.
    Identical inputs give no hunks.

    With `context_lines=None` the whole text is context: a single group covers every line of both sides,
    even if they are identical, so a patch built from it spells out both texts completely.
    """
    if context_lines is None:
        if not base_lines and not revised_lines:
            return []
        if list(base_lines) == list(revised_lines):
            return [[("equal", 0, len(base_lines), 0, len(revised_lines))]]
        context_lines = max(len(base_lines), len(revised_lines))
    if context_lines < 0:
        raise ValueError("context_lines must not be negative")
    if list(base_lines) == list(revised_lines):
        # Also covers two empty inputs, where get_grouped_opcodes works on a made-up equal range
        return []
    return [
        list(group)
        for group in _matcher(base_lines, revised_lines).get_grouped_opcodes(
            context_lines
        )
    ]
