"""
Command-line front end for the Bazel formatter adapter.

Formats stdin to stdout, or a list of files (printed, checked, or rewritten
in place), using the same FormatAdapter the Sublime Text plugin uses.
"""

import argparse
import logging
import os
import sys
from typing import List, Optional, TextIO

import bazel_format_core as core

logger = logging.getLogger(__name__)


def non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be 0 or more, got {value}")
    return number


class ExitCode:
    SUCCESS = 0
    FORMAT_ERROR = 1
    USAGE_ERROR = 2
    NEEDS_FORMATTING = 3


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bazel-format",
        description="Format Bazel files with an external formatter (buildifier by default).",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  bazel-format < BUILD\n"
            "  bazel-format --check BUILD.bazel defs.bzl\n"
            "  bazel-format -i --formatter ~/go/bin/buildifier BUILD\n"
        ),
    )
    parser.add_argument("files", nargs="*", help="Files to format (default: stdin to stdout)")

    formatter_group = parser.add_argument_group("Formatter")
    formatter_group.add_argument(
        "--formatter",
        default=core.DEFAULT_FORMATTER,
        help="Formatter executable name or path (default: %(default)s)",
    )
    formatter_group.add_argument(
        "--formatter-arg",
        action="append",
        default=[],
        dest="formatter_args",
        metavar="ARG",
        help="Extra argument passed to the formatter (repeatable)",
    )
    formatter_group.add_argument(
        "--type", dest="file_type", help="Force the file type instead of detecting it from the name"
    )
    formatter_group.add_argument(
        "--assume-filename",
        help="Filename used to detect the file type when reading stdin",
    )
    formatter_group.add_argument(
        "--timeout",
        type=non_negative_int,
        default=core.DEFAULT_TIMEOUT_MS,
        metavar="MS",
        help="Kill the formatter after this many milliseconds, 0 to wait forever (default: %(default)s)",
    )

    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument(
        "--check", action="store_true", help="Report files that need formatting, change nothing"
    )
    mode_group.add_argument("--in-place", "-i", action="store_true", help="Rewrite files in place")

    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    return parser


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )


def make_config(args: argparse.Namespace, filename: Optional[str]) -> core.FormatterConfig:
    file_type = args.file_type
    if not file_type and filename:
        file_type = core.get_file_type(filename)
    return core.FormatterConfig(
        command=args.formatter,
        args=args.formatter_args,
        timeout_ms=args.timeout,
        file_type=file_type,
    )


def format_stdin(args: argparse.Namespace, stdin: TextIO, stdout: TextIO) -> int:
    text = stdin.read()
    document = core.Document(text)
    result = core.format_document(document, core.FormatAdapter(make_config(args, args.assume_filename)))

    if not result.ok:
        logger.error("<stdin>: %s", result.reason)
        return ExitCode.FORMAT_ERROR
    if args.check:
        if document.text != text:
            print("<stdin>", file=stdout)
            return ExitCode.NEEDS_FORMATTING
        return ExitCode.SUCCESS

    stdout.write(document.text)
    return ExitCode.SUCCESS


def format_file(args: argparse.Namespace, path: str, stdout: TextIO) -> int:
    """Format one file according to the selected mode."""
    # newline="" keeps \r\n intact so the formatter sees the exact bytes
    with open(path, encoding="utf-8", newline="") as f:
        document = core.Document(f.read())

    config = make_config(args, path)
    config.cwd = core.find_config_dir(path) or os.path.dirname(os.path.abspath(path))
    result = core.FormatAdapter(config).format(document.text)

    if not result.ok:
        logger.error("%s: %s", path, result.reason)
        return ExitCode.FORMAT_ERROR

    changed = core.apply_result(document, result)
    if args.check:
        if changed:
            print(path, file=stdout)
            return ExitCode.NEEDS_FORMATTING
        return ExitCode.SUCCESS

    if args.in_place:
        if changed:
            with open(path, "w", encoding="utf-8", newline="") as f:
                f.write(document.text)
            logger.info("formatted %s", path)
        return ExitCode.SUCCESS

    stdout.write(document.text)
    return ExitCode.SUCCESS


def main(argv: Optional[List[str]] = None, stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None) -> int:
    """
    Entry point for the bazel-format command.

    Returns:
        Exit code (0 ok, 1 formatter failure, 3 files need formatting)
    """
    parser = create_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout

    if not args.files:
        if args.in_place:
            parser.error("--in-place requires at least one file")
        return format_stdin(args, stdin, stdout)

    exit_code = ExitCode.SUCCESS
    for path in args.files:
        try:
            code = format_file(args, path, stdout)
        except OSError as e:
            logger.error("%s: %s", path, e)
            code = ExitCode.FORMAT_ERROR
        except UnicodeDecodeError as e:
            logger.error("%s: not valid UTF-8: %s", path, e)
            code = ExitCode.FORMAT_ERROR
        # Formatter failures outrank "needs formatting"
        if code == ExitCode.FORMAT_ERROR or exit_code == ExitCode.SUCCESS:
            exit_code = code
    return exit_code

