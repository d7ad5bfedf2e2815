from enum import Enum

from pydantic import computed_field, field_validator, model_validator
from pydantic.dataclasses import dataclass


class SegmentKind(str, Enum):
    EQUAL = "equal"
    INSERT = "insert"
    DELETE = "delete"


@dataclass(frozen=True)
class DiffSegment:
    """
    One run of whole lines that is either unchanged, only in the revised text, or only in the base text.
    The text keeps its line terminators.
    """

    kind: SegmentKind
    text: str

    @field_validator("text")
    @classmethod
    def text_must_not_be_empty(cls, v: str) -> str:
        if v == "":
            raise ValueError("DiffSegment text must not be empty")
        return v

    @property
    def line_count(self) -> int:
        # A final line without terminator still counts as a line
        return self.text.count("\n") + (0 if self.text.endswith("\n") else 1)


@dataclass(frozen=True)
class Diff:
    """
    Ordered comparison of a `base` and a `revised` text.

    Reading only EQUAL and DELETE segments gives back the base,
    reading only EQUAL and INSERT segments gives back the revised text.
    """

    segments: tuple[DiffSegment, ...] = ()

    @model_validator(mode="after")  # pyright: ignore[reportArgumentType]
    def check_no_fragmentation(self) -> "Diff":
        for previous, current in zip(self.segments, self.segments[1:]):
            if previous.kind == current.kind:
                raise ValueError(
                    f"Adjacent segments of kind {current.kind.value} must be merged"
                )
        return self

    @computed_field(return_type=str)
    def base_text(self) -> str:
        return "".join(
            s.text for s in self.segments if s.kind is not SegmentKind.INSERT
        )

    @computed_field(return_type=str)
    def revised_text(self) -> str:
        return "".join(
            s.text for s in self.segments if s.kind is not SegmentKind.DELETE
        )

    @computed_field(return_type=bool)
    def is_unchanged(self) -> bool:
        return all(s.kind is SegmentKind.EQUAL for s in self.segments)

    @computed_field(return_type=int)
    def inserted_line_count(self) -> int:
        return sum(s.line_count for s in self.segments if s.kind is SegmentKind.INSERT)

    @computed_field(return_type=int)
    def deleted_line_count(self) -> int:
        return sum(s.line_count for s in self.segments if s.kind is SegmentKind.DELETE)

    def __len__(self) -> int:
        return len(self.segments)

    def __iter__(self):
        return iter(self.segments)
