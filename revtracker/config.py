from dataclasses import dataclass
from typing import Literal

from revtracker.common.constants import (
    DEFAULT_PATCH_SUFFIX,
    OVERLAP_POLICY_QUEUE,
    OVERLAP_POLICY_REJECT,
)

OverlapPolicy = Literal["reject", "queue"]


@dataclass(frozen=True)
class AppConfig:
    # None keeps the whole text in the stored patch, so the previous version survives edits between two runs
    context_lines: int | None = None
    patch_suffix: str = DEFAULT_PATCH_SUFFIX
    # What happens when a document is triggered again while its previous run is still going
    overlap_policy: OverlapPolicy = OVERLAP_POLICY_REJECT

    def __post_init__(self) -> None:
        if self.context_lines is not None and self.context_lines < 0:
            raise ValueError(f"context_lines must be >= 0, got {self.context_lines}")
        if not self.patch_suffix or "/" in self.patch_suffix:
            raise ValueError(f"Invalid patch suffix {self.patch_suffix!r}")
        if self.overlap_policy not in (OVERLAP_POLICY_REJECT, OVERLAP_POLICY_QUEUE):
            raise ValueError(f"Unknown overlap policy {self.overlap_policy!r}")


class ConfigSingleton:
    _instance: AppConfig | None = None

    class classproperty:
        def __init__(self, fget):
            self.fget = fget

        def __get__(self, obj, owner):
            return self.fget(owner)

    @classproperty
    def config(cls) -> AppConfig:
        """Returns the current configuration instance."""
        if cls._instance is None:
            raise RuntimeError(
                "Config has not been initialized. Call ConfigSingleton.init() before running a command."
            )
        return cls._instance

    @classmethod
    def init(
        cls,
        context_lines: int | None = None,
        patch_suffix: str = DEFAULT_PATCH_SUFFIX,
        overlap_policy: OverlapPolicy = OVERLAP_POLICY_REJECT,
    ) -> AppConfig:
        if cls._instance is not None:
            raise RuntimeError("Config already initialized")

        cls._instance = AppConfig(
            context_lines=context_lines,
            patch_suffix=patch_suffix,
            overlap_policy=overlap_policy,
        )
        return cls._instance

    @classmethod
    def reset(cls):
        cls._instance = None

    @classmethod
    def is_initialized(cls):
        return cls._instance is not None
