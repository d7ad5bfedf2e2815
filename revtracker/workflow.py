"""
The revision workflow: one "calculate diff" run for one document.

    IDLE -> READING_CURRENT -> RESOLVING_PREVIOUS -> DIFFING -> RENDERING -> PERSISTING -> IDLE

Reading the current content is the only step that aborts the run.
The previous version comes out of the stored patch (see `previous_from_artifact`).
A broken stored patch degrades to an empty previous version, a failing sink or a failing write is reported.
Once diffing succeeded, a new patch is always persisted, so the chain keeps moving even if rendering failed.
"""

import asyncio
from collections import Counter
from contextlib import asynccontextmanager

from loguru import logger
from pydantic import ValidationError

from revtracker.common.constants import (
    CONTENT_MAX_PRINT_CUT_OFF,
    OVERLAP_POLICY_REJECT,
)
from revtracker.common.diff_engine import compute_diff
from revtracker.common.errors import (
    NoActiveDocument,
    PatchError,
    RevisionInProgress,
    StorageWriteFailure,
)
from revtracker.common.patch_codec import (
    make_patch,
    parse_patch,
    reconstruct_previous,
    recover_revised,
    text_sha256,
)
from revtracker.config import AppConfig
from revtracker.presentation.sinks import PresentationSink
from revtracker.presentation.split_view import render_split_html
from revtracker.pydantic_models.artifacts.patch import PatchArtifact
from revtracker.pydantic_models.common.constrained_types import DocumentIdentity
from revtracker.pydantic_models.output.report import RevisionReport, WorkflowState
from revtracker.state.host import HostCollaborator, to_document_identity
from revtracker.state.patch_store import PatchStore


def _preview(text: str) -> str:
    if len(text) <= CONTENT_MAX_PRINT_CUT_OFF:
        return repr(text)
    return repr(text[:CONTENT_MAX_PRINT_CUT_OFF]) + f" ... ({len(text)} characters)"


def previous_from_artifact(artifact: PatchArtifact, current: str) -> str:
    """
    The version before `current`, as far as the stored patch knows it.

    If the document was not edited since the patch was written, that is the base side of the patch (the change is shown again).
    If it was edited, it is the revised side, the content at the last calculation.

    Raises:
        PatchError: If neither side can be rebuilt.
    """
    if text_sha256(current) == parse_patch(artifact).revised_sha256:
        return reconstruct_previous(artifact, current)
    logger.debug("[Workflow] Document was edited since the last calculation, using the revised side of the patch")
    return recover_revised(artifact)


class RevisionWorkflow:
    """
    Orchestrates Patch Store, Patch Codec, Diff Engine and the presentation sink.

    All collaborators are handed in, nothing is looked up globally,
    so tests can run the whole workflow against an in-memory host.
    """

    def __init__(
        self,
        host: HostCollaborator,
        sink: PresentationSink | None = None,
        config: AppConfig | None = None,
    ):
        if host is None:
            raise ValueError("RevisionWorkflow requires a host")
        self.host = host
        self.sink = sink
        self.config = config if config is not None else AppConfig()
        self.store = PatchStore(host)
        self._states: dict[str, WorkflowState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # Runs holding or waiting for each lock, so idle documents can be dropped from `_locks`
        self._lock_users: Counter[str] = Counter()

    def state_of(self, identity: str) -> WorkflowState:
        return self._states.get(identity, WorkflowState.IDLE)

    def _transition(self, identity: str, state: WorkflowState) -> None:
        logger.debug(
            f"[Workflow] {identity}: {self.state_of(identity).value} -> {state.value}"
        )
        if state is WorkflowState.IDLE:
            self._states.pop(identity, None)
        else:
            self._states[identity] = state

    @asynccontextmanager
    async def _in_flight_guard(self, identity: DocumentIdentity):
        lock = self._locks.setdefault(identity, asyncio.Lock())
        if lock.locked() and self.config.overlap_policy == OVERLAP_POLICY_REJECT:
            logger.warning(f"[Workflow] Rejected overlapping run for {identity}")
            raise RevisionInProgress(
                f"A diff calculation for '{identity}' is already running"
            )
        self._lock_users[identity] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[identity] -= 1
            if not self._lock_users[identity]:
                del self._lock_users[identity]
                del self._locks[identity]

    def in_flight(self) -> set[str]:
        """Documents with a run that is still going or waiting for its turn."""
        return set(self._locks)

    async def _resolve_identity(self, identity: str | None) -> DocumentIdentity:
        if identity is None:
            identity = await self.host.active_document()
        if not identity:
            raise NoActiveDocument("No active file found")
        try:
            return to_document_identity(identity)
        except ValidationError as e:
            raise NoActiveDocument(f"'{identity}' is not a valid document path") from e

    async def _read_document(self, identity: DocumentIdentity) -> str:
        try:
            return await self.host.read_document(identity)
        except OSError as e:
            raise NoActiveDocument(f"Could not read '{identity}': {e}") from e

    async def _read_current(self, identity: DocumentIdentity) -> str:
        self._transition(identity, WorkflowState.READING_CURRENT)
        current = await self._read_document(identity)
        logger.debug(f"[Workflow] Current content of {identity}: {_preview(current)}")
        return current

    async def _resolve_previous(
        self, identity: DocumentIdentity, current: str, warnings: list[str]
    ) -> tuple[str, bool]:
        """Returns the previous content and whether it came out of a stored patch."""
        self._transition(identity, WorkflowState.RESOLVING_PREVIOUS)
        artifact = await self.store.load(identity)
        if artifact is None:
            logger.info(f"[Workflow] No stored patch for {identity} - using an empty previous version")
            return "", False
        try:
            previous = previous_from_artifact(artifact, current)
        except PatchError as e:
            message = (
                f"Stored patch for '{identity}' could not be used ({type(e).__name__}: {e}). "
                "Comparing against an empty previous version instead."
            )
            logger.warning(f"[Workflow] {message}")
            warnings.append(message)
            return "", False
        logger.debug(f"[Workflow] Previous content of {identity}: {_preview(previous)}")
        return previous, True

    async def previous_content(self, identity: str | None = None) -> str:
        """
        Reconstruct the previous version of a document without diffing, rendering or writing anything.

        Raises:
            NoActiveDocument: If the document cannot be identified or read.
            PatchError: If a stored patch exists but cannot be applied.
        """
        document = await self._resolve_identity(identity)
        current = await self._read_document(document)
        artifact = await self.store.load(document)
        if artifact is None:
            return ""
        return previous_from_artifact(artifact, current)

    async def calculate(self, identity: str | None = None) -> RevisionReport:
        """
        Run the workflow for `identity`, or for the host's active document if no identity is given.

        Returns:
            RevisionReport: The diff and the outcome of rendering and persisting.

        Raises:
            NoActiveDocument: If there is no document to work on. Nothing was written.
            RevisionInProgress: If another run for the same document has not finished yet (reject policy).
            StorageReadFailure: If the stored patch exists but could not be read. Nothing was written.
        """
        document = await self._resolve_identity(identity)
        async with self._in_flight_guard(document):
            try:
                return await self._calculate(document)
            except Exception:
                self._transition(document, WorkflowState.FAILED)
                raise
            finally:
                self._transition(document, WorkflowState.IDLE)

    async def _calculate(self, document: DocumentIdentity) -> RevisionReport:
        logger.info(f"[Workflow] Calculating diff for {document}")
        current = await self._read_current(document)

        warnings: list[str] = []
        previous, from_patch = await self._resolve_previous(document, current, warnings)

        self._transition(document, WorkflowState.DIFFING)
        diff = compute_diff(previous, current)
        logger.info(
            f"[Workflow] {document}: {diff.inserted_line_count} line(s) inserted, {diff.deleted_line_count} line(s) deleted"
        )
        report = RevisionReport(
            document=document,
            previous_content=previous,
            current_content=current,
            diff=diff,
            previous_from_patch=from_patch,
            warnings=warnings,
        )

        self._transition(document, WorkflowState.RENDERING)
        await self._render(report)

        self._transition(document, WorkflowState.PERSISTING)
        await self._persist(report)

        report.final_state = WorkflowState.IDLE
        return report

    async def _render(self, report: RevisionReport) -> None:
        if self.sink is None:
            logger.debug("[Workflow] No presentation sink configured - skipping rendering")
            return
        try:
            await self.sink.render(report.diff, render_split_html(report.diff))
            report.rendered = True
        except Exception as e:
            # DevNote: The sink is foreign code. Whatever it raises, the patch still has to be persisted below.
            logger.error(f"[Workflow] Rendering the diff for {report.document} failed: {e}")
            report.render_error = f"{type(e).__name__}: {e}"

    async def _persist(self, report: RevisionReport) -> None:
        patch = make_patch(
            report.previous_content,
            report.current_content,
            label=report.document,
            context_lines=self.config.context_lines,
        )
        report.patch = patch
        try:
            await self.store.save(report.document, patch)
        except StorageWriteFailure as e:
            logger.error(f"[Workflow] Failed to store patch for {report.document}: {e}")
            report.storage_error = str(e)
