"""
Reading, writing and applying the stored patches.

A patch is a single-file unified diff with a small header in front of it:

    revtracker-patch: 1
    base-sha256: <sha256 of the base text>
    revised-sha256: <sha256 of the revised text>
    --- a/<label>
    +++ b/<label>
    @@ -1,2 +1,2 @@
     line1
    -line2
    +line2x

The hashes pin the patch to exactly one pair of texts.
Applying it to anything else fails with `PatchMismatch` instead of producing a plausible but wrong result.
"""

import hashlib
import re

from loguru import logger
from pydantic.dataclasses import dataclass
from unidiff import PatchSet
from unidiff.errors import UnidiffParseError

from revtracker.common.constants import (
    BASE_HASH_HEADER,
    DEFAULT_CONTEXT_LINES,
    DEFAULT_PATCH_LABEL,
    NO_NEWLINE_MARKER,
    PATCH_FORMAT_TAG,
    PATCH_FORMAT_VERSION,
    REVISED_HASH_HEADER,
    SOURCE_LABEL_PREFIX,
    SUPPORTED_PATCH_MAJOR_VERSIONS,
    TARGET_LABEL_PREFIX,
)
from revtracker.common.diff_engine import group_hunks, split_lines
from revtracker.common.encoding import encode_text
from revtracker.common.errors import MalformedPatch, PatchMismatch
from revtracker.pydantic_models.artifacts.patch import (
    FORMAT_TAG_RE,
    PatchArtifact,
    PatchDirection,
)

HEADER_LINE_RE = re.compile(r"^(?P<key>[A-Za-z0-9][A-Za-z0-9._-]*):\s*(?P<value>.*?)\s*$")
SHA256_RE = re.compile(r"^[0-9a-f]{64}$")
SOURCE_HEADER_RE = re.compile(r"^--- (?P<label>[^\t\n]+)$")
TARGET_HEADER_RE = re.compile(r"^\+\+\+ (?P<label>[^\t\n]+)$")
HUNK_HEADER_RE = re.compile(
    r"^@@ -(?P<source_start>\d+)(?:,(?P<source_length>\d+))? "
    r"\+(?P<target_start>\d+)(?:,(?P<target_length>\d+))? @@(?: .*)?$"
)

CONTEXT, REMOVED, ADDED = " ", "-", "+"


# ================================================================
#                      Parsed representation
# ================================================================


@dataclass(frozen=True)
class HunkLine:
    tag: str
    # The text includes its terminator, unless the line carried the no-newline marker.
    text: str

    @property
    def in_source(self) -> bool:
        return self.tag in (CONTEXT, REMOVED)

    @property
    def in_target(self) -> bool:
        return self.tag in (CONTEXT, ADDED)


@dataclass(frozen=True)
class Hunk:
    source_start: int
    source_length: int
    target_start: int
    target_length: int
    lines: tuple[HunkLine, ...]

    @property
    def source_offset(self) -> int:
        """0-based index of the first source line. A zero-length range names the line before it."""
        return self.source_start if self.source_length == 0 else self.source_start - 1

    @property
    def target_offset(self) -> int:
        return self.target_start if self.target_length == 0 else self.target_start - 1

    def reversed(self) -> "Hunk":
        swap = {CONTEXT: CONTEXT, REMOVED: ADDED, ADDED: REMOVED}
        return Hunk(
            source_start=self.target_start,
            source_length=self.target_length,
            target_start=self.source_start,
            target_length=self.source_length,
            lines=tuple(HunkLine(tag=swap[ln.tag], text=ln.text) for ln in self.lines),
        )


@dataclass(frozen=True)
class ParsedPatch:
    version: str
    base_sha256: str
    revised_sha256: str
    source_label: str
    target_label: str
    hunks: tuple[Hunk, ...] = ()

    def reversed(self) -> "ParsedPatch":
        """The same patch, read from the revised side towards the base side."""
        return ParsedPatch(
            version=self.version,
            base_sha256=self.revised_sha256,
            revised_sha256=self.base_sha256,
            source_label=self.target_label,
            target_label=self.source_label,
            hunks=tuple(h.reversed() for h in self.hunks),
        )


def text_sha256(text: str) -> str:
    return hashlib.sha256(encode_text(text)).hexdigest()


# ================================================================
#                      Writing
# ================================================================


def _format_range(start: int, stop: int) -> str:
    # Same convention as difflib / GNU diff, but the length is always written.
    beginning = start + 1
    length = stop - start
    if not length:
        beginning -= 1
    return f"{beginning},{length}"


def _format_body_line(tag: str, line: str) -> list[str]:
    if line.endswith("\n"):
        return [tag + line]
    return [tag + line + "\n", NO_NEWLINE_MARKER + "\n"]


def make_patch(
    base: str,
    revised: str,
    label: str = DEFAULT_PATCH_LABEL,
    context_lines: int | None = DEFAULT_CONTEXT_LINES,
) -> PatchArtifact:
    """
    Describe how to get from `base` to `revised`.

    Args:
        base (str): The older text, the `---` side.
        revised (str): The newer text, the `+++` side.
        label (str): Name shown in the file headers, usually the document identity.
        context_lines (int | None): Unchanged lines kept around each change.
                                    None keeps the whole text, see `recover_revised`.

    Returns:
        PatchArtifact: A patch that turns `base` into `revised` when applied FORWARD,
                       and `revised` into `base` when applied in REVERSE.
    """
    if not label or any(c in label for c in "\t\r\n"):
        raise ValueError(f"Invalid patch label {label!r}")

    base_lines = split_lines(base)
    revised_lines = split_lines(revised)

    out: list[str] = [
        f"{PATCH_FORMAT_TAG}: {PATCH_FORMAT_VERSION}\n",
        f"{BASE_HASH_HEADER}: {text_sha256(base)}\n",
        f"{REVISED_HASH_HEADER}: {text_sha256(revised)}\n",
        f"--- {SOURCE_LABEL_PREFIX}{label}\n",
        f"+++ {TARGET_LABEL_PREFIX}{label}\n",
    ]
    groups = group_hunks(base_lines, revised_lines, context_lines=context_lines)
    for group in groups:
        first, last = group[0], group[-1]
        out.append(
            f"@@ -{_format_range(first[1], last[2])} +{_format_range(first[3], last[4])} @@\n"
        )
        for tag, i1, i2, j1, j2 in group:
            if tag == "equal":
                for line in base_lines[i1:i2]:
                    out.extend(_format_body_line(CONTEXT, line))
                continue
            if tag in ("replace", "delete"):
                for line in base_lines[i1:i2]:
                    out.extend(_format_body_line(REMOVED, line))
            if tag in ("replace", "insert"):
                for line in revised_lines[j1:j2]:
                    out.extend(_format_body_line(ADDED, line))

    logger.debug(
        f"[Codec] Created patch for {label} with {len(groups)} hunk(s) ({len(base_lines)} -> {len(revised_lines)} lines)"
    )
    return PatchArtifact(content="".join(out))


# ================================================================
#                      Reading
# ================================================================


def _content_of(artifact: PatchArtifact | str) -> str:
    if isinstance(artifact, PatchArtifact):
        return artifact.content
    if isinstance(artifact, str):
        return artifact
    raise MalformedPatch(f"Expected a patch text, got {type(artifact).__name__}")


def _parse_format_tag(first_line: str) -> str:
    m = FORMAT_TAG_RE.match(first_line)
    if not m:
        raise MalformedPatch(
            f"Missing or malformed '{PATCH_FORMAT_TAG}' tag in the first line: {first_line!r}"
        )
    version = m.group("version")
    major = version.split(".", 1)[0]
    if major not in SUPPORTED_PATCH_MAJOR_VERSIONS:
        raise MalformedPatch(f"Unsupported patch format version {version}")
    return version


def _parse_hash(headers: dict[str, str], key: str) -> str:
    value = headers.get(key)
    if value is None:
        raise MalformedPatch(f"Missing '{key}' header")
    if not SHA256_RE.match(value):
        raise MalformedPatch(f"Malformed '{key}' header: {value!r}")
    return value


def _parse_hunk(
    lines: list[str], idx: int, header: re.Match
) -> tuple[Hunk, int]:
    """Parse the body following `header`, which was found at `lines[idx - 1]`. Returns the hunk and the next index."""
    source_start = int(header.group("source_start"))
    target_start = int(header.group("target_start"))
    # GNU diff omits the length when it is 1
    source_length = int(header.group("source_length") or 1)
    target_length = int(header.group("target_length") or 1)
    header_lno = idx

    body: list[HunkLine] = []
    source_seen = target_seen = 0
    source_closed = target_closed = False
    while source_seen < source_length or target_seen < target_length:
        if idx >= len(lines):
            raise MalformedPatch(
                f"Hunk at line {header_lno} is shorter than its header: "
                f"expected -{source_length},+{target_length} but saw -{source_seen},+{target_seen}"
            )
        raw = lines[idx]
        if not raw.endswith("\n"):
            raise MalformedPatch(f"Truncated patch at line {idx + 1}")
        tag, text = raw[:1], raw[1:]
        if tag not in (CONTEXT, REMOVED, ADDED):
            shown = raw.rstrip("\n")
            raise MalformedPatch(
                f"Invalid hunk body line at {idx + 1}: {shown!r} "
                "(expected ' ', '+', '-', or '\\ No newline at end of file')"
            )
        idx += 1
        has_marker = idx < len(lines) and lines[idx].rstrip("\n") == NO_NEWLINE_MARKER
        if has_marker:
            text = text[:-1]
            idx += 1

        line = HunkLine(tag=tag, text=text)
        # Only the very last line of a text can lack its terminator
        if (line.in_source and source_closed) or (line.in_target and target_closed):
            raise MalformedPatch(
                f"Line {idx} follows a line marked '{NO_NEWLINE_MARKER}'"
            )
        if has_marker:
            source_closed = source_closed or line.in_source
            target_closed = target_closed or line.in_target

        source_seen += line.in_source
        target_seen += line.in_target
        if source_seen > source_length or target_seen > target_length:
            raise MalformedPatch(
                f"Hunk length mismatch at line {header_lno}: "
                f"expected -{source_length},+{target_length} but saw more lines"
            )
        body.append(line)

    if not body:
        raise MalformedPatch(f"Empty hunk body after header at line {header_lno}")

    hunk = Hunk(
        source_start=source_start,
        source_length=source_length,
        target_start=target_start,
        target_length=target_length,
        lines=tuple(body),
    )
    return hunk, idx


def _check_hunk_order(hunks: list[Hunk]) -> None:
    source_end = 0
    delta = 0
    for n, hunk in enumerate(hunks, start=1):
        if hunk.source_offset < source_end:
            raise MalformedPatch(f"Hunk {n} overlaps or precedes the hunk before it")
        if hunk.target_offset != hunk.source_offset + delta:
            raise MalformedPatch(
                f"Hunk {n} has inconsistent ranges: -{hunk.source_start},{hunk.source_length} "
                f"+{hunk.target_start},{hunk.target_length}"
            )
        source_end = hunk.source_offset + hunk.source_length
        delta += hunk.target_length - hunk.source_length


def _unidiff_sanity_check(lines: list[str]) -> None:
    # DevNote: PatchSet would split a plain string with str.splitlines, so it gets our own line list.
    try:
        ps = PatchSet(lines)
    except UnidiffParseError as e:
        raise MalformedPatch(f"unidiff parse error: {e}") from e

    if len(ps) != 1:
        raise MalformedPatch(f"Expected exactly one file in the patch, unidiff saw {len(ps)}")
    for h in ps[0]:
        old_lines = sum(1 for ln in h if ln.is_removed or ln.is_context)
        new_lines = sum(1 for ln in h if ln.is_added or ln.is_context)
        if old_lines != h.source_length or new_lines != h.target_length:
            raise MalformedPatch(
                f"unidiff length mismatch: -{h.source_length},+{h.target_length} "
                f"but saw -{old_lines},+{new_lines}"
            )


def parse_patch(artifact: PatchArtifact | str) -> ParsedPatch:
    """
    Parse and validate a stored patch.

    Raises:
        MalformedPatch: If anything about the structure is off. The message names the offending line where possible.
    """
    content = _content_of(artifact)
    lines = split_lines(content)
    if not lines:
        raise MalformedPatch("Empty patch")

    version = _parse_format_tag(lines[0].rstrip("\n"))

    idx = 1
    headers: dict[str, str] = {}
    while idx < len(lines) and not lines[idx].startswith("--- "):
        m = HEADER_LINE_RE.match(lines[idx].rstrip("\n"))
        if not m:
            raise MalformedPatch(
                f"Unexpected line {idx + 1} in the patch header: {lines[idx]!r}"
            )
        # Unknown keys are skipped, newer minor versions may add some.
        headers[m.group("key").lower()] = m.group("value")
        idx += 1
    base_sha256 = _parse_hash(headers, BASE_HASH_HEADER)
    revised_sha256 = _parse_hash(headers, REVISED_HASH_HEADER)

    if idx >= len(lines):
        raise MalformedPatch("Missing file headers (---/+++)")
    source = SOURCE_HEADER_RE.match(lines[idx].rstrip("\n"))
    target = (
        TARGET_HEADER_RE.match(lines[idx + 1].rstrip("\n"))
        if idx + 1 < len(lines)
        else None
    )
    if not source or not target:
        raise MalformedPatch(f"Unpaired or malformed file header (---/+++) near line {idx + 1}")
    idx += 2

    hunks: list[Hunk] = []
    while idx < len(lines):
        header = HUNK_HEADER_RE.match(lines[idx].rstrip("\n"))
        if not header:
            raise MalformedPatch(f"Malformed hunk header at line {idx + 1}: {lines[idx]!r}")
        hunk, idx = _parse_hunk(lines, idx + 1, header)
        hunks.append(hunk)
    _check_hunk_order(hunks)

    if hunks:
        _unidiff_sanity_check(lines)

    return ParsedPatch(
        version=version,
        base_sha256=base_sha256,
        revised_sha256=revised_sha256,
        source_label=source.group("label"),
        target_label=target.group("label"),
        hunks=tuple(hunks),
    )


# ================================================================
#                      Applying
# ================================================================


def apply_patch(
    artifact: PatchArtifact | str,
    known_text: str,
    direction: PatchDirection = PatchDirection.FORWARD,
) -> str:
    """
    Rebuild the other side of the comparison that `artifact` describes.

    Args:
        artifact (PatchArtifact | str): The patch, usually as loaded from the store.
        known_text (str): The side we have. With FORWARD this is the base, with REVERSE the revised text.
        direction (PatchDirection): Which side `known_text` is.

    Returns:
        str: The other side, byte for byte.

    Raises:
        MalformedPatch: If the patch cannot be parsed.
        PatchMismatch: If the patch was not made for `known_text`.
    """
    direction = PatchDirection(direction)
    parsed = parse_patch(artifact)
    if direction is PatchDirection.REVERSE:
        parsed = parsed.reversed()

    if text_sha256(known_text) != parsed.base_sha256:
        raise PatchMismatch(
            f"The given text does not match the {'revised' if direction is PatchDirection.REVERSE else 'base'} side of the patch (sha256 differs)"
        )

    known_lines = split_lines(known_text)
    result: list[str] = []
    cursor = 0
    for n, hunk in enumerate(parsed.hunks, start=1):
        offset = hunk.source_offset
        if offset > len(known_lines):
            raise PatchMismatch(
                f"Hunk {n} starts at line {offset + 1}, but the text has only {len(known_lines)} lines"
            )
        result.extend(known_lines[cursor:offset])
        cursor = offset
        for line in hunk.lines:
            if line.in_source:
                if cursor >= len(known_lines) or known_lines[cursor] != line.text:
                    raise PatchMismatch(
                        f"Hunk {n} does not match the text at line {cursor + 1}"
                    )
                cursor += 1
            if line.in_target:
                result.append(line.text)
    result.extend(known_lines[cursor:])

    rebuilt = "".join(result)
    if text_sha256(rebuilt) != parsed.revised_sha256:
        raise PatchMismatch("The rebuilt text does not match the checksum recorded in the patch")
    logger.debug(
        f"[Codec] Applied patch ({direction.value}, {len(parsed.hunks)} hunk(s)): {len(known_lines)} -> {len(split_lines(rebuilt))} lines"
    )
    return rebuilt


def reconstruct_previous(artifact: PatchArtifact | str, current: str) -> str:
    """
    The stored patch always describes `previous -> current`.
    So the previous version is the base side, obtained by applying the patch in REVERSE to the current content.
    """
    return apply_patch(artifact, current, direction=PatchDirection.REVERSE)


def recover_revised(artifact: PatchArtifact | str) -> str:
    """
    Rebuild the revised side from the patch alone, without knowing either text.

    This only works if the hunks spell out the whole revised text, which is the case for patches
    written with `context_lines=None` and for every patch against an empty base.

    Raises:
        MalformedPatch: If the patch cannot be parsed.
        PatchMismatch: If the hunks leave parts of the revised text out.
    """
    parsed = parse_patch(artifact)
    result: list[str] = []
    covered = 0
    for n, hunk in enumerate(parsed.hunks, start=1):
        if hunk.target_offset != covered:
            raise PatchMismatch(
                f"Hunk {n} starts at revised line {hunk.target_offset + 1}, lines {covered + 1}-{hunk.target_offset} are not part of the patch"
            )
        result.extend(line.text for line in hunk.lines if line.in_target)
        covered += hunk.target_length

    revised = "".join(result)
    # Also catches lines missing after the last hunk
    if text_sha256(revised) != parsed.revised_sha256:
        raise PatchMismatch("The patch does not contain the whole revised text")
    return revised
