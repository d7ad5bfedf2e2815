import asyncio
import sys
from argparse import ArgumentParser, ArgumentTypeError, Namespace
from pathlib import Path

from loguru import logger

from revtracker.common.constants import (
    DEFAULT_PATCH_SUFFIX,
    OVERLAP_POLICY_QUEUE,
    OVERLAP_POLICY_REJECT,
)
from revtracker.common.errors import (
    NoActiveDocument,
    PatchError,
    RevisionInProgress,
    StorageReadFailure,
)
from revtracker.config import AppConfig, ConfigSingleton
from revtracker.presentation.sinks import HtmlFileSink, PresentationSink, TerminalSink
from revtracker.pydantic_models.output.report import RevisionReport
from revtracker.state.host import FileSystemHost
from revtracker.workflow import RevisionWorkflow

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_CHAIN_NOT_ADVANCED = 2


def parse_non_negative_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError:
        raise ArgumentTypeError(f"Expected an integer, got {value!r}")
    if parsed < 0:
        raise ArgumentTypeError(f"Expected a non-negative integer, got {parsed}")
    return parsed


def add_common_args(parser: ArgumentParser) -> None:
    parser.add_argument(
        "--vault",
        type=Path,
        required=True,
        help="Path to the folder containing the documents. Patches are stored next to their document.",
    )
    parser.add_argument(
        "document",
        type=str,
        help="Path of the document, relative to the vault.",
    )
    parser.add_argument(
        "--patch-suffix",
        type=str,
        default=DEFAULT_PATCH_SUFFIX,
        help="Suffix appended to the document path to locate its patch.",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Console log level for loguru.",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="If specified, a DEBUG level log is written to this file as well.",
    )


def set_calculate_parser_args(parser: ArgumentParser) -> None:
    add_common_args(parser)
    parser.add_argument(
        "--html-out",
        type=Path,
        default=None,
        help="Write the split diff view as an HTML page to this file.",
    )
    parser.add_argument(
        "--no-terminal",
        action="store_true",
        help="Do not print the diff to the terminal.",
    )
    parser.add_argument(
        "--context-lines",
        type=parse_non_negative_int,
        default=None,
        help="Unchanged lines kept around each change in the stored patch. "
        "By default the whole document is kept, which lets the next run compare against this version even after further edits.",
    )
    parser.add_argument(
        "--overlap-policy",
        default=OVERLAP_POLICY_REJECT,
        choices=[OVERLAP_POLICY_REJECT, OVERLAP_POLICY_QUEUE],
        help="What to do if the same document is triggered again while a run is still going.",
    )


def set_previous_parser_args(parser: ArgumentParser) -> None:
    add_common_args(parser)


def parse_args(argv: list[str] | None = None):
    parser = ArgumentParser(prog="revtracker")

    subparser_dest_attr_name = "command"
    subparsers = parser.add_subparsers(dest=subparser_dest_attr_name, required=True)

    calculate_parser = subparsers.add_parser(
        "calculate",
        help="Diff a document against its previous version and store a new patch.",
    )
    set_calculate_parser_args(calculate_parser)

    previous_parser = subparsers.add_parser(
        "previous",
        help="Print the previous version of a document. Nothing is written.",
    )
    set_previous_parser_args(previous_parser)

    return parser.parse_args(argv), subparser_dest_attr_name


def build_and_register_config(args: Namespace) -> AppConfig:
    ConfigSingleton.init(
        context_lines=getattr(args, "context_lines", None),
        patch_suffix=args.patch_suffix,
        overlap_policy=getattr(args, "overlap_policy", OVERLAP_POLICY_REJECT),
    )
    return ConfigSingleton.config


class _FanOutSink:
    def __init__(self, sinks: list[PresentationSink]):
        self.sinks = sinks

    async def render(self, diff, markup: str) -> None:
        # Each sink renders even if an earlier one failed
        errors: list[Exception] = []
        for sink in self.sinks:
            try:
                await sink.render(diff, markup)
            except Exception as e:
                logger.error(f"[View] {type(sink).__name__} failed: {e}")
                errors.append(e)
        if errors:
            raise errors[0]


def _build_sink(args: Namespace) -> PresentationSink | None:
    sinks: list[PresentationSink] = []
    if not args.no_terminal:
        sinks.append(TerminalSink())
    if args.html_out:
        sinks.append(HtmlFileSink(args.html_out))
    if not sinks:
        return None
    return sinks[0] if len(sinks) == 1 else _FanOutSink(sinks)


def _report_outcome(report: RevisionReport) -> int:
    for warning in report.warnings:
        print(f"Warning: {warning}", file=sys.stderr)
    if report.render_error:
        print(f"Failed to display the diff: {report.render_error}", file=sys.stderr)
    if report.storage_error:
        print(
            f"Failed to store patch: {report.storage_error}. The next run will compare against the same previous version.",
            file=sys.stderr,
        )
        return EXIT_CHAIN_NOT_ADVANCED
    return EXIT_OK


async def handle_command(
    args: Namespace, subparser_dest_attr_name: str, config: AppConfig
) -> int:
    subcommand = getattr(args, subparser_dest_attr_name, None)
    host = FileSystemHost(args.vault, active=args.document, patch_suffix=config.patch_suffix)

    if subcommand == "calculate":
        workflow = RevisionWorkflow(host, sink=_build_sink(args), config=config)
        report = await workflow.calculate()
        return _report_outcome(report)

    elif subcommand == "previous":
        workflow = RevisionWorkflow(host, config=config)
        sys.stdout.write(await workflow.previous_content())
        return EXIT_OK

    else:
        raise ValueError(f"Unknown command: {subcommand}")


def setup_loguru(console_log_level: str, log_file: str | None) -> None:
    logger.remove()
    console_fmt = "<level>{level: <7}</level> | <cyan>{name}</cyan> - <level>{message}</level>"
    file_fmt = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <7} | {name}:{function}:{line} - {message}"
    logger.add(sys.stderr, level=console_log_level.upper(), format=console_fmt)
    if log_file:
        # Debug records carry document content, so the file can get large
        logger.add(log_file, level="DEBUG", format=file_fmt, rotation="10 MB", encoding="utf-8")
    logger.debug(
        f"[Setup] Logging to stderr at {console_log_level.upper()}, file: {log_file if log_file else 'none'}"
    )


def main(argv: list[str] | None = None) -> int:
    args, subparser_dest_attr_name = parse_args(argv)
    setup_loguru(console_log_level=args.log_level, log_file=args.log_file)
    try:
        config = build_and_register_config(args)
        return asyncio.run(handle_command(args, subparser_dest_attr_name, config))
    except (NoActiveDocument, RevisionInProgress, StorageReadFailure, PatchError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ABORTED
    except ValueError as e:
        # Invalid vault or suffix
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ABORTED
    finally:
        ConfigSingleton.reset()


if __name__ == "__main__":
    sys.exit(main())
