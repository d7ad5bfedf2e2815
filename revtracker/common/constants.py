"""
Glossary:

- Patch chain: the current content plus the one stored patch suffice to rebuild the previous version.
  That is the content at the last calculation, or the one before it if the document was not edited since.
- Base / Revised: the two sides of one comparison, in the patch they are the `---` and `+++` side

"""

from typing import Final

# =============================================================
#                 Patch Format
# =============================================================

PATCH_FORMAT_TAG: Final[str] = "revtracker-patch"
PATCH_FORMAT_VERSION: Final[str] = "1"
# DevNote: Only the major version is checked on read. Minor versions may add header lines, which older readers skip.
SUPPORTED_PATCH_MAJOR_VERSIONS: Final[frozenset[str]] = frozenset({"1"})

BASE_HASH_HEADER: Final[str] = "base-sha256"
REVISED_HASH_HEADER: Final[str] = "revised-sha256"

NO_NEWLINE_MARKER: Final[str] = "\\ No newline at end of file"

DEFAULT_CONTEXT_LINES: Final[int] = 3
DEFAULT_PATCH_LABEL: Final[str] = "document"
SOURCE_LABEL_PREFIX: Final[str] = "a/"
TARGET_LABEL_PREFIX: Final[str] = "b/"

# =============================================================
#                 Storage
# =============================================================

DEFAULT_PATCH_SUFFIX: Final[str] = ".patch"
TEXT_ENCODING: Final[str] = "utf-8"

# =============================================================
#                 Workflow
# =============================================================

OVERLAP_POLICY_REJECT: Final[str] = "reject"
OVERLAP_POLICY_QUEUE: Final[str] = "queue"

# =============================================================
#                 Logging & Display
# =============================================================

DEFAULT_VIEW_TITLE: Final[str] = "Text Diff"
CONTENT_MAX_PRINT_CUT_OFF: Final[int] = 200
