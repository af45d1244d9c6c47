"""
Core logic for the Bazel Format Sublime Text plugin.

This module has no Sublime Text dependencies. It runs the external formatter,
models the formatting result and applies it to an in-memory document, so the
whole contract can be tested with pytest outside of the editor.
"""

import fnmatch
import logging
import os
import shutil
import subprocess
import sys
from typing import Any, List, Mapping, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

DEFAULT_FORMATTER = "buildifier"
DEFAULT_TIMEOUT_MS = 5000

# Ordered: first match wins
FILE_TYPE_RULES: List[Tuple[str, str]] = [
    ("BUILD", "build"),
    ("BUILD.*", "build"),  # BUILD.bazel, BUILD.oss
    ("WORKSPACE", "workspace"),
    ("WORKSPACE.*", "workspace"),
    ("MODULE.bazel", "module"),
    ("*.bzl", "bzl"),
    ("*.bzl.*", "bzl"),
]

CONFIG_FILENAME = ".buildifier.json"


def get_file_type(filename: str, additional_patterns: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """
    Map a filename to the formatter's --type value.

    Args:
        filename: File name or path; only the basename is inspected
        additional_patterns: Extra glob patterns to file types,
                             e.g. {"*.star": "default", "DEPS": "build"}

    Returns:
        "build", "workspace", "module", "bzl", a user-supplied type, or None
    """
    basename = os.path.basename(filename)
    rules = list(FILE_TYPE_RULES)
    if additional_patterns:
        rules.extend(additional_patterns.items())

    for pattern, file_type in rules:
        # Case-sensitive: "build" is not a BUILD file
        if fnmatch.fnmatchcase(basename, pattern):
            return file_type
    return None


def is_bazel_file(filename: str, additional_patterns: Optional[Mapping[str, str]] = None) -> bool:
    """Return True if the formatter should handle this file."""
    return get_file_type(filename, additional_patterns) is not None


def find_config_dir(start_path: str, config_filename: str = CONFIG_FILENAME) -> Optional[str]:
    """
    Walk up from start_path looking for a directory holding config_filename.

    Returns:
        The directory containing the config file, or None at the filesystem root
    """
    current = os.path.dirname(start_path) if os.path.isfile(start_path) else start_path
    current = os.path.abspath(current)

    while not os.path.isfile(os.path.join(current, config_filename)):
        parent = os.path.dirname(current)
        if parent == current:
            return None
        current = parent
    return current


def resolve_executable(command: str) -> Optional[str]:
    """
    Resolve a configured formatter command to an executable path.

    Accepts an absolute or relative path (with ~ and environment variables
    expanded) or a bare name looked up on PATH.
    """
    if not command:
        return None
    expanded = os.path.expandvars(os.path.expanduser(command))
    if os.path.isfile(expanded):
        return expanded
    return shutil.which(expanded)


class FormatterConfig:
    """Settings for one formatter invocation."""

    def __init__(
        self,
        command: str = DEFAULT_FORMATTER,
        args: Optional[Sequence[str]] = None,
        timeout_ms: Optional[int] = DEFAULT_TIMEOUT_MS,
        file_type: Optional[str] = None,
        cwd: Optional[str] = None,
    ):
        self.command = command
        self.args = list(args or [])
        self.timeout_ms = timeout_ms
        self.file_type = file_type
        self.cwd = cwd

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any], **overrides: Any) -> "FormatterConfig":
        """
        Build a config from a settings mapping (Sublime settings or a dict).

        Keys: formatter_command, formatter_args, formatter_timeout.
        Keyword overrides (file_type, cwd, ...) are applied on top.
        """
        config = cls(
            command=settings.get("formatter_command") or DEFAULT_FORMATTER,
            args=settings.get("formatter_args") or [],
            timeout_ms=settings.get("formatter_timeout", DEFAULT_TIMEOUT_MS),
        )
        for key, value in overrides.items():
            setattr(config, key, value)
        return config

    @property
    def timeout_sec(self) -> Optional[float]:
        if not self.timeout_ms:
            return None
        return self.timeout_ms / 1000.0

    def build_command(self, executable: str) -> List[str]:
        """Build the argv used to spawn the formatter."""
        cmd = [executable] + self.args
        if self.file_type:
            cmd.append(f"--type={self.file_type}")
        return cmd

    def __repr__(self) -> str:
        return f"FormatterConfig(command={self.command!r}, args={self.args!r}, file_type={self.file_type!r})"


class FormatErrorKind:
    """Reasons a format invocation can fail."""

    SPAWN_FAILURE = "spawn_failure"
    NON_ZERO_EXIT = "non_zero_exit"
    TIMEOUT = "timeout"
    INVALID_INPUT = "invalid_input"
    INVALID_OUTPUT = "invalid_output"


class FormatResult:
    """Outcome of one formatter run. Either a Success or a Failure."""

    ok = False

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FormatResult):
            return NotImplemented
        return type(self) is type(other) and self._key() == other._key()

    def __hash__(self) -> int:
        return hash((type(self), self._key()))

    def _key(self) -> Tuple[Any, ...]:
        raise NotImplementedError


class Success(FormatResult):
    """The formatter exited 0; text is its stdout, verbatim."""

    ok = True

    def __init__(self, text: str):
        self.text = text

    def _key(self) -> Tuple[Any, ...]:
        return (self.text,)

    def __repr__(self) -> str:
        return f"Success({self.text!r})"


class Failure(FormatResult):
    """The formatter could not produce output. The document must stay untouched."""

    def __init__(
        self,
        kind: str,
        reason: str,
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        self.kind = kind
        self.reason = reason
        self.returncode = returncode
        self.stderr = stderr

    def _key(self) -> Tuple[Any, ...]:
        return (self.kind, self.reason, self.returncode)

    def __repr__(self) -> str:
        return f"Failure({self.kind}: {self.reason})"


class FormatterBusyError(RuntimeError):
    """Raised when a FormatAdapter is invoked while it is already formatting."""


class FormatState:
    IDLE = "idle"
    FORMATTING = "formatting"


def _first_line(text: str) -> str:
    stripped = text.strip()
    return stripped.splitlines()[0] if stripped else ""


class FormatAdapter:
    """
    Runs an external formatter over a document's text.

    The call is synchronous: format() blocks until the child exits (or the
    optional timeout expires). Failures are returned, not raised.
    """

    def __init__(self, config: Optional[FormatterConfig] = None):
        self.config = config or FormatterConfig()
        self.state = FormatState.IDLE

    @property
    def is_formatting(self) -> bool:
        return self.state == FormatState.FORMATTING

    def format(self, document_text: str) -> FormatResult:
        """
        Format document_text with the configured formatter.

        Args:
            document_text: Full text of the document

        Returns:
            Success carrying the formatter's stdout, or Failure with a reason

        Raises:
            FormatterBusyError: If this adapter is already running a format
        """
        if self.is_formatting:
            raise FormatterBusyError("formatter is already running")

        self.state = FormatState.FORMATTING
        try:
            return self._run(document_text)
        finally:
            self.state = FormatState.IDLE

    def _run(self, document_text: str) -> FormatResult:
        config = self.config
        executable = resolve_executable(config.command)
        if not executable:
            return self._fail(FormatErrorKind.SPAWN_FAILURE, f"{config.command} not found")

        try:
            input_bytes = document_text.encode("utf-8")
        except UnicodeEncodeError as e:
            return self._fail(FormatErrorKind.INVALID_INPUT, f"document is not encodable as UTF-8: {e}")

        cmd = config.build_command(executable)
        logger.debug("running %s (cwd=%s)", cmd, config.cwd)

        # On Windows, hide the console window that would otherwise flash
        creationflags = subprocess.CREATE_NO_WINDOW if sys.platform == "win32" else 0

        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=config.cwd,
                creationflags=creationflags,
            )
        except OSError as e:
            # FileNotFoundError, PermissionError, exec format errors
            return self._fail(FormatErrorKind.SPAWN_FAILURE, f"cannot run {executable}: {e}")

        try:
            stdout, stderr = process.communicate(input=input_bytes, timeout=config.timeout_sec)
        except subprocess.TimeoutExpired:
            process.kill()
            process.communicate()
            return self._fail(
                FormatErrorKind.TIMEOUT, f"{config.command} timed out after {config.timeout_ms} ms"
            )
        except BaseException:
            # Never leave the child running behind an unexpected error
            process.kill()
            process.communicate()
            raise

        stderr_text = stderr.decode("utf-8", errors="replace")
        logger.debug("%s exited with %d", executable, process.returncode)

        if process.returncode != 0:
            reason = f"{config.command} exited with status {process.returncode}"
            detail = _first_line(stderr_text)
            if detail:
                reason += f": {detail}"
            return self._fail(
                FormatErrorKind.NON_ZERO_EXIT, reason, returncode=process.returncode, stderr=stderr_text
            )

        try:
            text = stdout.decode("utf-8")
        except UnicodeDecodeError as e:
            return self._fail(
                FormatErrorKind.INVALID_OUTPUT, f"{config.command} produced non UTF-8 output: {e}", returncode=0
            )

        return Success(text)

    @staticmethod
    def _fail(kind: str, reason: str, returncode: Optional[int] = None, stderr: str = "") -> Failure:
        logger.warning("format failed: %s", reason)
        return Failure(kind, reason, returncode=returncode, stderr=stderr)


def format_text(document_text: str, formatter: Union[str, FormatterConfig, None] = None) -> FormatResult:
    """
    Format text with an external formatter.

    Args:
        document_text: Text to feed to the formatter on stdin
        formatter: Command name/path, a FormatterConfig, or None for buildifier

    Returns:
        Success or Failure
    """
    if isinstance(formatter, FormatterConfig):
        config = formatter
    else:
        config = FormatterConfig(command=formatter or DEFAULT_FORMATTER)
    return FormatAdapter(config).format(document_text)


# ----------------------------------------------------------------------------
# Applying results
# ----------------------------------------------------------------------------


class TextEdit:
    """Replace old[begin:end] with text."""

    def __init__(self, begin: int, end: int, text: str):
        self.begin = begin
        self.end = end
        self.text = text

    @property
    def delta(self) -> int:
        return len(self.text) - (self.end - self.begin)

    def apply(self, content: str) -> str:
        return content[: self.begin] + self.text + content[self.end :]

    def map_offset(self, offset: int) -> int:
        """Translate an offset in the old content to the new content."""
        if offset <= self.begin:
            return offset
        if offset >= self.end:
            return offset + self.delta
        # Inside the replaced range
        return min(offset, self.begin + len(self.text))

    def __repr__(self) -> str:
        return f"TextEdit({self.begin}, {self.end}, {self.text!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TextEdit):
            return NotImplemented
        return (self.begin, self.end, self.text) == (other.begin, other.end, other.text)


def compute_edit(old: str, new: str) -> Optional[TextEdit]:
    """
    Find the smallest single replacement turning old into new.

    Returns:
        A TextEdit, or None if the strings are equal
    """
    if old == new:
        return None

    limit = min(len(old), len(new))
    prefix = 0
    while prefix < limit and old[prefix] == new[prefix]:
        prefix += 1

    # The suffix must not overlap the prefix in either string
    suffix = 0
    limit -= prefix
    while suffix < limit and old[-1 - suffix] == new[-1 - suffix]:
        suffix += 1

    return TextEdit(prefix, len(old) - suffix, new[prefix : len(new) - suffix])


def clamp_offset(offset: int, size: int) -> int:
    return max(0, min(offset, size))


REPLACE_STRATEGIES = ("minimal", "replace")

Selection = Tuple[int, int]


def restore_selections(
    selections: Sequence[Selection], old: str, new: str, strategy: str = "minimal"
) -> List[Selection]:
    """
    Map selections from old content onto new content.

    With the "replace" strategy offsets are clamped to the new length. With
    "minimal" they follow the edit computed by compute_edit. Results always
    lie within [0, len(new)].
    """
    if strategy not in REPLACE_STRATEGIES:
        raise ValueError(f"Unknown replace strategy: {strategy}")

    size = len(new)
    edit = compute_edit(old, new) if strategy == "minimal" else None

    restored = []
    for a, b in selections:
        if edit is not None:
            a, b = edit.map_offset(a), edit.map_offset(b)
        restored.append((clamp_offset(a, size), clamp_offset(b, size)))
    return restored


class Document:
    """
    A mutable text buffer with selections, standing in for an editor view.

    A cursor is an empty selection (a == b).
    """

    def __init__(self, text: str = "", selections: Optional[Sequence[Selection]] = None):
        self.text = text
        if selections is None:
            selections = [(0, 0)]
        self.selections = [(clamp_offset(a, len(text)), clamp_offset(b, len(text))) for a, b in selections]
        self.change_count = 0

    @property
    def cursor(self) -> int:
        """Offset of the first selection's caret."""
        return self.selections[0][1] if self.selections else 0

    def replace(self, text: str, strategy: str = "minimal") -> None:
        self.selections = restore_selections(self.selections, self.text, text, strategy)
        self.text = text
        self.change_count += 1

    def __len__(self) -> int:
        return len(self.text)

    def __repr__(self) -> str:
        return f"Document(len={len(self.text)}, selections={self.selections})"


def apply_result(document: Document, result: FormatResult, strategy: str = "minimal") -> bool:
    """
    Apply a format result to a document.

    The document changes only for a Success whose text differs from the
    current content.

    Returns:
        True if the document was modified
    """
    if not isinstance(result, Success):
        return False
    if result.text == document.text:
        return False
    document.replace(result.text, strategy)
    return True


def format_document(
    document: Document, adapter: Optional[FormatAdapter] = None, strategy: str = "minimal"
) -> FormatResult:
    """Format a Document in place. Returns the FormatResult."""
    adapter = adapter or FormatAdapter()
    result = adapter.format(document.text)
    apply_result(document, result, strategy)
    return result
