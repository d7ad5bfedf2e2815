import asyncio

import pytest

from revtracker.common.errors import (
    MalformedPatch,
    NoActiveDocument,
    RevisionInProgress,
    StorageReadFailure,
)
from revtracker.common.patch_codec import make_patch, reconstruct_previous
from revtracker.config import AppConfig
from revtracker.presentation.split_view import render_split_html
from revtracker.pydantic_models.artifacts.diff import DiffSegment, SegmentKind
from revtracker.pydantic_models.output.report import WorkflowState
from revtracker.workflow import RevisionWorkflow

### ================================================================
###                      Test Data
### ================================================================

V1 = "line1\nline2\n"
V2 = "line1\nline2x\n"

LONG_V1 = "".join(f"paragraph {i}\n" for i in range(40))
LONG_V2 = LONG_V1.replace("paragraph 20\n", "paragraph twenty\n")
LONG_V3 = LONG_V2.replace("paragraph 35\n", "")


### ================================================================
###                      Happy Path
### ================================================================


@pytest.mark.asyncio
@pytest.mark.workflow
async def test_first_run_should_compare_against_empty_and_store_patch(host, recording_sink):
    host.documents["a.md"] = "hello\n"
    host.active = "a.md"
    workflow = RevisionWorkflow(host, sink=recording_sink)

    report = await workflow.calculate()

    assert report.document == "a.md"
    assert report.previous_content == ""
    assert report.diff.segments == (DiffSegment(kind=SegmentKind.INSERT, text="hello\n"),)
    assert report.is_first_run
    assert report.rendered
    assert report.chain_advanced
    assert report.final_state is WorkflowState.IDLE

    stored = host.blobs["a.md.patch"]
    assert stored == make_patch("", "hello\n", label="a.md").content
    assert reconstruct_previous(stored, "hello\n") == ""


@pytest.mark.asyncio
@pytest.mark.workflow
async def test_sink_should_receive_diff_and_split_markup(host, recording_sink):
    host.documents["a.md"] = V1
    workflow = RevisionWorkflow(host, sink=recording_sink)

    report = await workflow.calculate("a.md")

    assert recording_sink.calls == [(report.diff, render_split_html(report.diff))]


@pytest.mark.asyncio
@pytest.mark.workflow
async def test_chain_should_advance_over_two_runs(host, recording_sink):
    workflow = RevisionWorkflow(host, sink=recording_sink)

    host.documents["a.md"] = V1
    await workflow.calculate("a.md")
    host.documents["a.md"] = V2
    report = await workflow.calculate("a.md")

    assert report.previous_content == V1
    assert report.previous_from_patch
    assert not report.warnings
    assert report.diff.segments == (
        DiffSegment(kind=SegmentKind.EQUAL, text="line1\n"),
        DiffSegment(kind=SegmentKind.DELETE, text="line2\n"),
        DiffSegment(kind=SegmentKind.INSERT, text="line2x\n"),
    )
    stored = host.blobs["a.md.patch"]
    assert stored == make_patch(V1, V2, label="a.md").content
    assert reconstruct_previous(stored, V2) == V1

    left, right = recording_sink.calls[-1][1].split('<div class="split-diff-right">')
    assert '<div class="diff-delete">line2<br></div>' in left
    assert '<div class="diff-insert">line2x<br></div>' in right


@pytest.mark.asyncio
@pytest.mark.workflow
@pytest.mark.regression
async def test_long_document_chain_should_keep_advancing(host):
    workflow = RevisionWorkflow(host)

    for version in (LONG_V1, LONG_V2, LONG_V3):
        host.documents["long.md"] = version
        last = await workflow.calculate("long.md")

    assert last.previous_content == LONG_V2
    assert last.diff.deleted_line_count == 1
    assert last.diff.inserted_line_count == 0
    assert not last.warnings


@pytest.mark.asyncio
@pytest.mark.workflow
async def test_repeated_run_without_edit_should_show_same_change(host):
    workflow = RevisionWorkflow(host)
    host.documents["a.md"] = V1
    await workflow.calculate("a.md")
    host.documents["a.md"] = V2
    first = await workflow.calculate("a.md")
    stored = host.blobs["a.md.patch"]

    again = await workflow.calculate("a.md")

    assert again.previous_content == V1
    assert again.diff == first.diff
    assert host.blobs["a.md.patch"] == stored


@pytest.mark.asyncio
@pytest.mark.workflow
async def test_reverted_document_should_compare_against_last_calculation(host):
    workflow = RevisionWorkflow(host)
    host.documents["a.md"] = V1
    await workflow.calculate("a.md")
    host.documents["a.md"] = V2
    await workflow.calculate("a.md")

    host.documents["a.md"] = V1
    report = await workflow.calculate("a.md")

    assert report.previous_content == V2
    assert report.current_content == V1


@pytest.mark.asyncio
@pytest.mark.workflow
async def test_documents_should_have_independent_chains(host):
    workflow = RevisionWorkflow(host)
    host.documents["a.md"] = "a\n"
    host.documents["sub/b.md"] = "b\n"

    await workflow.calculate("a.md")
    report = await workflow.calculate("sub/b.md")

    assert report.previous_content == ""
    assert set(host.blobs) == {"a.md.patch", "sub/b.md.patch"}


@pytest.mark.asyncio
@pytest.mark.workflow
async def test_identity_should_be_normalized_before_use(host):
    workflow = RevisionWorkflow(host)
    host.documents["notes/a.md"] = "a\n"

    report = await workflow.calculate("./notes\\a.md")

    assert report.document == "notes/a.md"
    assert "notes/a.md.patch" in host.blobs


@pytest.mark.asyncio
@pytest.mark.workflow
async def test_calculate_without_sink_should_still_persist(host):
    host.documents["a.md"] = V1
    report = await RevisionWorkflow(host).calculate("a.md")

    assert not report.rendered
    assert report.render_error is None
    assert report.chain_advanced


### ================================================================
###                      Degraded Paths
### ================================================================


@pytest.mark.asyncio
@pytest.mark.workflow
async def test_corrupt_patch_should_fall_back_to_empty_previous(host, recording_sink):
    host.documents["a.md"] = V2
    host.blobs["a.md.patch"] = "this was a patch once"
    workflow = RevisionWorkflow(host, sink=recording_sink)

    report = await workflow.calculate("a.md")

    assert report.previous_content == ""
    assert not report.previous_from_patch
    assert len(report.warnings) == 1
    assert "MalformedPatch" in report.warnings[0]
    assert report.rendered
    # The chain restarts from here
    assert host.blobs["a.md.patch"] == make_patch("", V2, label="a.md").content


@pytest.mark.asyncio
@pytest.mark.workflow
async def test_patch_that_does_not_fit_should_fall_back_to_empty_previous(host):
    host.documents["long.md"] = "something else entirely\n"
    host.blobs["long.md.patch"] = make_patch(LONG_V1, LONG_V2, label="long.md").content

    report = await RevisionWorkflow(host).calculate("long.md")

    assert report.previous_content == ""
    assert "PatchMismatch" in report.warnings[0]
    assert report.chain_advanced


@pytest.mark.asyncio
@pytest.mark.workflow
async def test_compact_patches_should_only_bridge_unchanged_documents(host):
    workflow = RevisionWorkflow(host, config=AppConfig(context_lines=3))
    host.documents["long.md"] = LONG_V1
    await workflow.calculate("long.md")
    host.documents["long.md"] = LONG_V2
    second = await workflow.calculate("long.md")
    again = await workflow.calculate("long.md")
    host.documents["long.md"] = LONG_V3
    third = await workflow.calculate("long.md")

    # A patch against an empty base always spells out the whole text
    assert second.previous_content == LONG_V1
    assert again.previous_content == LONG_V1
    assert third.previous_content == ""
    assert third.warnings


@pytest.mark.asyncio
@pytest.mark.workflow
async def test_failing_sink_should_not_stop_persisting(host, failing_sink):
    host.documents["a.md"] = V1
    workflow = RevisionWorkflow(host, sink=failing_sink)

    report = await workflow.calculate("a.md")

    assert not report.rendered
    assert report.render_error == "RuntimeError: Failed to activate view"
    assert report.chain_advanced
    assert "a.md.patch" in host.blobs


@pytest.mark.asyncio
@pytest.mark.workflow
async def test_failed_write_should_be_reported_and_keep_old_patch(host):
    workflow = RevisionWorkflow(host)
    host.documents["a.md"] = V1
    await workflow.calculate("a.md")
    old_patch = host.blobs["a.md.patch"]

    host.documents["a.md"] = V2
    host.fail_writes = True
    report = await workflow.calculate("a.md")

    assert report.storage_error is not None
    assert report.patch is not None
    assert not report.chain_advanced
    assert report.final_state is WorkflowState.IDLE
    assert host.blobs["a.md.patch"] == old_patch

    # Next run compares against the same previous version again
    host.fail_writes = False
    retry = await workflow.calculate("a.md")
    assert retry.previous_content == V1
    assert retry.chain_advanced


@pytest.mark.asyncio
@pytest.mark.workflow
async def test_failed_patch_read_should_abort_without_writing(host):
    workflow = RevisionWorkflow(host)
    host.documents["a.md"] = V1
    host.fail_reads = True

    with pytest.raises(StorageReadFailure):
        await workflow.calculate("a.md")

    assert host.blob_writes == 0
    assert workflow.state_of("a.md") is WorkflowState.IDLE


### ================================================================
###                      No Document
### ================================================================


@pytest.mark.asyncio
@pytest.mark.workflow
@pytest.mark.parametrize("active", [None, ""])
async def test_no_active_document_should_raise(host, recording_sink, active):
    host.active = active
    workflow = RevisionWorkflow(host, sink=recording_sink)

    with pytest.raises(NoActiveDocument, match="No active file found"):
        await workflow.calculate()

    assert recording_sink.calls == []
    assert host.blob_writes == 0


@pytest.mark.asyncio
@pytest.mark.workflow
async def test_missing_document_should_raise_and_write_nothing(host):
    workflow = RevisionWorkflow(host)

    with pytest.raises(NoActiveDocument):
        await workflow.calculate("missing.md")

    assert host.blob_writes == 0
    assert workflow.state_of("missing.md") is WorkflowState.IDLE


@pytest.mark.asyncio
@pytest.mark.workflow
@pytest.mark.parametrize("identity", ["../outside.md", "bad\x00name.md", "   "])
async def test_invalid_identity_should_raise_no_active_document(host, identity):
    with pytest.raises(NoActiveDocument):
        await RevisionWorkflow(host).calculate(identity)


@pytest.mark.workflow
def test_workflow_requires_host():
    with pytest.raises(ValueError):
        RevisionWorkflow(None)  # type: ignore[arg-type]


### ================================================================
###                      Overlapping Runs
### ================================================================


@pytest.mark.asyncio
@pytest.mark.workflow
async def test_overlapping_run_should_be_rejected(host):
    host.documents["a.md"] = V1
    host.write_gate = asyncio.Event()
    workflow = RevisionWorkflow(host)

    first = asyncio.create_task(workflow.calculate("a.md"))
    await asyncio.sleep(0)
    assert workflow.state_of("a.md") is WorkflowState.PERSISTING

    with pytest.raises(RevisionInProgress):
        await workflow.calculate("a.md")

    host.write_gate.set()
    report = await first
    assert report.chain_advanced
    assert host.blob_writes == 1
    assert workflow.state_of("a.md") is WorkflowState.IDLE
    assert workflow.in_flight() == set()


@pytest.mark.asyncio
@pytest.mark.workflow
async def test_other_documents_should_not_be_blocked(host):
    host.documents["a.md"] = "a\n"
    host.documents["b.md"] = "b\n"
    host.write_gate = asyncio.Event()
    workflow = RevisionWorkflow(host)

    first = asyncio.create_task(workflow.calculate("a.md"))
    await asyncio.sleep(0)
    second = asyncio.create_task(workflow.calculate("b.md"))
    await asyncio.sleep(0)

    assert workflow.state_of("b.md") is WorkflowState.PERSISTING
    host.write_gate.set()
    reports = await asyncio.gather(first, second)
    assert [r.document for r in reports] == ["a.md", "b.md"]


@pytest.mark.asyncio
@pytest.mark.workflow
async def test_overlapping_run_should_wait_with_queue_policy(host):
    host.documents["a.md"] = V1
    host.write_gate = asyncio.Event()
    workflow = RevisionWorkflow(host, config=AppConfig(overlap_policy="queue"))

    first = asyncio.create_task(workflow.calculate("a.md"))
    await asyncio.sleep(0)
    second = asyncio.create_task(workflow.calculate("a.md"))
    await asyncio.sleep(0)
    assert not second.done()
    assert workflow.in_flight() == {"a.md"}

    host.documents["a.md"] = V2
    host.write_gate.set()
    first_report, second_report = await asyncio.gather(first, second)

    assert first_report.current_content == V1
    assert second_report.previous_content == V1
    assert second_report.current_content == V2
    assert host.blob_writes == 2
    assert workflow.in_flight() == set()


@pytest.mark.asyncio
@pytest.mark.workflow
@pytest.mark.regression
async def test_finished_documents_should_not_stay_in_flight(host, failing_sink):
    workflow = RevisionWorkflow(host, sink=failing_sink)
    for i in range(50):
        host.documents[f"note-{i}.md"] = f"{i}\n"
        await workflow.calculate(f"note-{i}.md")

    with pytest.raises(NoActiveDocument):
        await workflow.calculate("missing.md")

    assert workflow.in_flight() == set()


### ================================================================
###                      Previous Content
### ================================================================


@pytest.mark.asyncio
@pytest.mark.workflow
async def test_previous_content_without_patch_is_empty(host):
    host.documents["a.md"] = V1
    assert await RevisionWorkflow(host).previous_content("a.md") == ""


@pytest.mark.asyncio
@pytest.mark.workflow
async def test_previous_content_should_not_write(host):
    workflow = RevisionWorkflow(host)
    host.documents["a.md"] = V1
    await workflow.calculate("a.md")
    host.documents["a.md"] = V2
    writes = host.blob_writes

    assert await workflow.previous_content("a.md") == V1
    await workflow.calculate("a.md")
    assert await workflow.previous_content("a.md") == V1
    assert host.blob_writes == writes + 1


@pytest.mark.asyncio
@pytest.mark.workflow
async def test_previous_content_should_raise_on_corrupt_patch(host):
    host.documents["a.md"] = V1
    host.blobs["a.md.patch"] = "garbage"

    with pytest.raises(MalformedPatch):
        await RevisionWorkflow(host).previous_content("a.md")
