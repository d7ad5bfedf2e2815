import asyncio

import pytest

from revtracker.common.errors import NoActiveDocument
from revtracker.config import ConfigSingleton
from revtracker.pydantic_models.artifacts.diff import Diff


class InMemoryHost:
    """
    A host that keeps documents and blobs in dicts.
    Reads and writes can be made to fail, and writes can be held back with `write_gate`.
    """

    def __init__(self, patch_suffix: str = ".patch"):
        self.documents: dict[str, str] = {}
        self.blobs: dict[str, str] = {}
        self.active: str | None = None
        self.patch_suffix = patch_suffix

        self.fail_reads = False
        self.fail_writes = False
        self.write_gate: asyncio.Event | None = None

        self.blob_reads = 0
        self.blob_writes = 0

    async def active_document(self) -> str | None:
        return self.active

    async def read_document(self, identity: str) -> str:
        if identity not in self.documents:
            raise NoActiveDocument(f"Document '{identity}' does not exist")
        return self.documents[identity]

    async def read_blob(self, path: str) -> str | None:
        self.blob_reads += 1
        if self.fail_reads:
            raise OSError("Input/output error")
        return self.blobs.get(path)

    async def write_blob(self, path: str, text: str) -> None:
        if self.write_gate is not None:
            await self.write_gate.wait()
        if self.fail_writes:
            raise OSError("Read-only file system")
        self.blob_writes += 1
        self.blobs[path] = text

    def resolve_patch_path(self, identity: str) -> str:
        return f"{identity}{self.patch_suffix}"


class RecordingSink:
    def __init__(self):
        self.calls: list[tuple[Diff, str]] = []

    async def render(self, diff: Diff, markup: str) -> None:
        self.calls.append((diff, markup))


class FailingSink:
    async def render(self, diff: Diff, markup: str) -> None:
        raise RuntimeError("Failed to activate view")


@pytest.fixture
def host() -> InMemoryHost:
    return InMemoryHost()


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def failing_sink() -> FailingSink:
    return FailingSink()


@pytest.fixture(autouse=True)
def reset_config():
    ConfigSingleton.reset()
    yield
    ConfigSingleton.reset()
