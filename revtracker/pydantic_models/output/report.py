from enum import Enum

from pydantic import Field, computed_field
from pydantic.dataclasses import dataclass

from revtracker.pydantic_models.artifacts.diff import Diff
from revtracker.pydantic_models.artifacts.patch import PatchArtifact
from revtracker.pydantic_models.common.constrained_types import (
    DocumentIdentity,
    ReportMessage,
)


class WorkflowState(str, Enum):
    IDLE = "idle"
    READING_CURRENT = "reading_current"
    RESOLVING_PREVIOUS = "resolving_previous"
    DIFFING = "diffing"
    RENDERING = "rendering"
    PERSISTING = "persisting"
    FAILED = "failed"


@dataclass(kw_only=True)
class RevisionReport:
    """
    Everything one run of the revision workflow produced.

    A report is only returned when the run got past diffing.
    Rendering and persisting can still have failed, see `render_error` and `storage_error`.
    """

    # DevNote:
    # Not frozen: the workflow fills in the render and storage outcome as it goes.
    # Once `calculate` returns, nothing touches the report anymore.

    document: DocumentIdentity
    previous_content: str
    current_content: str
    diff: Diff
    patch: PatchArtifact | None = None

    previous_from_patch: bool = False
    warnings: list[ReportMessage] = Field(default_factory=list)

    rendered: bool = False
    render_error: ReportMessage | None = None
    storage_error: ReportMessage | None = None
    final_state: WorkflowState = WorkflowState.DIFFING

    @computed_field(return_type=bool)
    def chain_advanced(self) -> bool:
        return self.patch is not None and self.storage_error is None

    @computed_field(return_type=bool)
    def is_first_run(self) -> bool:
        return not self.previous_from_patch and not self.warnings
