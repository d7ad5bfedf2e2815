import re
from enum import Enum

from pydantic import computed_field
from pydantic.dataclasses import dataclass

from revtracker.common.constants import NO_NEWLINE_MARKER, PATCH_FORMAT_TAG

FORMAT_TAG_RE = re.compile(
    rf"^{re.escape(PATCH_FORMAT_TAG)}:\s*(?P<version>\S+)\s*$", re.MULTILINE
)
HUNK_RE = re.compile(r"^@@", re.MULTILINE)


class PatchDirection(str, Enum):
    """
    Which side of a patch the caller already has.

    FORWARD: the known text is the base (`---`) side, the result is the revised side.
    REVERSE: the known text is the revised (`+++`) side, the result is the base side.
    """

    FORWARD = "forward"
    REVERSE = "reverse"


@dataclass(frozen=True)
class PatchArtifact:
    """
    The serialized patch as it is stored next to a document.

    Important: constructing an artifact never validates the content.
    A stored patch can be damaged on disk, and that has to surface as `MalformedPatch` when it is applied,
    not as a validation error when it is loaded. See `revtracker.common.patch_codec.parse_patch`.
    """

    content: str

    @computed_field(return_type=str | None)
    def format_version(self) -> str | None:
        # Only the first line may carry the tag
        first_line = self.content.split("\n", 1)[0]
        m = FORMAT_TAG_RE.match(first_line)
        return m.group("version") if m else None

    @computed_field(return_type=int)
    def number_of_hunks(self) -> int:
        """
        Compute the number of hunks by lines that start with @@
        This is a simple heuristic, a body line can never start with @@ because it always carries a prefix.
        """
        return len(HUNK_RE.findall(self.content))

    @computed_field(return_type=bool)
    def has_no_newline_eof_marker(self) -> bool:
        return NO_NEWLINE_MARKER in self.content
