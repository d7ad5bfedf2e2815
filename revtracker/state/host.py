"""
The host application, seen from the revision workflow.

The workflow never touches a filesystem or an editor directly. Everything goes through a `HostCollaborator`,
which is handed in by whoever runs the workflow. `FileSystemHost` is the implementation for a plain folder of notes.
"""

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Protocol, runtime_checkable

from loguru import logger
from pydantic import TypeAdapter

from revtracker.common.constants import DEFAULT_PATCH_SUFFIX
from revtracker.common.encoding import decode_text, encode_text
from revtracker.common.errors import NoActiveDocument
from revtracker.pydantic_models.common.constrained_types import DocumentIdentity

_identity_adapter = TypeAdapter(DocumentIdentity)


def to_document_identity(value: str) -> str:
    """Normalize a path into a `DocumentIdentity`, raising a pydantic `ValidationError` if that is impossible."""
    return _identity_adapter.validate_python(value)


@runtime_checkable
class HostCollaborator(Protocol):
    async def active_document(self) -> DocumentIdentity | None:
        """The document the user is looking at, or None if there is none."""
        ...

    async def read_document(self, identity: DocumentIdentity) -> str:
        """The whole current content. Raises `NoActiveDocument` if it cannot be read."""
        ...

    async def read_blob(self, path: str) -> str | None:
        """The stored blob, or None if nothing is stored at `path`."""
        ...

    async def write_blob(self, path: str, text: str) -> None:
        """Replace the blob at `path`. Must be all-or-nothing."""
        ...

    def resolve_patch_path(self, identity: DocumentIdentity) -> str: ...


class FileSystemHost:
    """
    Host for a plain directory of documents (a 'vault').
    Patches are stored next to their document, as `<document><suffix>`.

    The blocking file operations run in worker threads (`asyncio.to_thread`),
    so runs for different documents interleave on the event loop.
    """

    root: Path
    patch_suffix: str

    def __init__(
        self,
        root: str | Path,
        active: str | None = None,
        patch_suffix: str = DEFAULT_PATCH_SUFFIX,
    ):
        if not root or (isinstance(root, str) and not root.strip()):
            raise ValueError("root must be a non-empty path")
        if not patch_suffix or "/" in patch_suffix or "\\" in patch_suffix:
            raise ValueError(f"Invalid patch suffix {patch_suffix!r}")
        self.root = Path(root)
        if not self.root.is_dir():
            raise ValueError(f"Vault root '{self.root}' is not a directory")
        self.patch_suffix = patch_suffix
        self._active: DocumentIdentity | None = (
            to_document_identity(active) if active else None
        )
        logger.debug(f"[Host] Using vault at {self.root.absolute()}")

    def _absolute(self, relative: str) -> Path:
        return self.root / relative

    async def active_document(self) -> DocumentIdentity | None:
        return self._active

    async def read_document(self, identity: DocumentIdentity) -> str:
        return await asyncio.to_thread(self._read_document, identity)

    def _read_document(self, identity: DocumentIdentity) -> str:
        path = self._absolute(identity)
        if not path.is_file():
            raise NoActiveDocument(f"Document '{identity}' does not exist in {self.root}")
        # Vaults carry attachments (images, pdfs) next to the notes, only text is diffed.
        try:
            return decode_text(path.read_bytes())
        except UnicodeDecodeError as e:
            raise NoActiveDocument(f"Document '{identity}' is not a UTF-8 text file") from e

    async def read_blob(self, path: str) -> str | None:
        return await asyncio.to_thread(self._read_blob, path)

    def _read_blob(self, path: str) -> str | None:
        absolute = self._absolute(path)
        try:
            raw = absolute.read_bytes()
        except FileNotFoundError:
            return None
        # Damaged bytes surface later as a malformed patch, which the workflow can recover from.
        return decode_text(raw, errors="replace")

    async def write_blob(self, path: str, text: str) -> None:
        await asyncio.to_thread(self._write_blob, path, text)
        logger.debug(f"[Host] Wrote {len(text)} characters to {self._absolute(path)}")

    def _write_blob(self, path: str, text: str) -> None:
        absolute = self._absolute(path)
        absolute.parent.mkdir(parents=True, exist_ok=True)
        # DevNote: A crash halfway through a plain write would leave half a patch, which then breaks the chain.
        # Writing a sibling temp file and renaming it over the target is atomic on POSIX and on Windows (os.replace).
        tmp_name: str | None = None
        try:
            with tempfile.NamedTemporaryFile(
                "wb",
                dir=absolute.parent,
                prefix=f".{absolute.name}.",
                suffix=".tmp",
                delete=False,
            ) as tf:
                tmp_name = tf.name
                tf.write(encode_text(text))
                tf.flush()
                os.fsync(tf.fileno())
            os.replace(tmp_name, absolute)
        except OSError:
            if tmp_name:
                Path(tmp_name).unlink(missing_ok=True)
            raise

    def resolve_patch_path(self, identity: DocumentIdentity) -> str:
        return f"{identity}{self.patch_suffix}"
