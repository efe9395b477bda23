"""Error types for hopper.

Two families live here:

- ``HopperError`` and its subclasses: setup-time errors (bad configuration,
  registry conflicts, CLI misuse). They carry an error code, the user source
  location and notes, and print rustc-style through the installed excepthook.
- Runtime errors raised while tasks flow through the system
  (``VersionMismatchError``, ``BackendReportError``, ``TransportError`` ...).
  These are plain exceptions; the consumer wrapper attaches its retry
  classification to them before re-raising to the broker.
"""

from __future__ import annotations

import inspect
import linecache
import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:
    from hopper.core.types.status import TaskState

# Used by _find_user_frame to tell library frames from user code.
_HOPPER_PKG_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class ErrorCode(str, Enum):
    """Error codes for setup-time errors.

    Organized by category:
    - E200-E299: Config/broker/backend errors
    - E300-E399: Registry errors
    """

    # Config (E200-E299)
    CONFIG_INVALID_CONCURRENCY = 'E200'
    CONFIG_INVALID_BACKEND = 'E201'
    CONFIG_INVALID_BROKER = 'E202'
    BROKER_INVALID_URL = 'E203'
    BACKEND_INVALID_URL = 'E204'
    CLI_INVALID_LOCATOR = 'E207'

    # Registry (E300-E399)
    TASK_NOT_REGISTERED = 'E300'
    TASK_DUPLICATE_NAME = 'E301'


class _Colors:
    """ANSI escape codes for terminal colors."""

    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    DIM = '\033[2m'


class _NoColors:
    """No-op color codes for non-TTY output."""

    RESET = ''
    BOLD = ''
    RED = ''
    BLUE = ''
    CYAN = ''
    GREEN = ''
    DIM = ''


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in ('1', 'true', 'yes')


def _should_use_colors() -> bool:
    """Determine if colors should be used in output."""
    if _env_flag('HOPPER_FORCE_COLOR'):
        return True
    # https://no-color.org/
    if os.environ.get('NO_COLOR') is not None:
        return False
    return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


@dataclass
class SourceLocation:
    """Source code location information."""

    file: str
    line: int

    @classmethod
    def from_frame(cls, frame: Any) -> SourceLocation:
        return cls(file=frame.f_code.co_filename, line=frame.f_lineno)

    @classmethod
    def from_function(cls, fn: Any) -> SourceLocation | None:
        """Location of a function definition, None for builtins and mocks."""
        code = getattr(fn, '__code__', None)
        if code is None:
            return None
        return cls(file=code.co_filename, line=code.co_firstlineno)

    def get_source_line(self) -> str | None:
        line = linecache.getline(self.file, self.line)
        return line.rstrip('\n') if line else None

    def format_short(self) -> str:
        return f'{self.file}:{self.line}'


@dataclass
class HopperError(Exception):
    """Base exception for hopper setup-time errors."""

    message: str
    code: ErrorCode | None = None
    location: SourceLocation | None = None
    notes: list[str] = field(default_factory=lambda: [])
    help_text: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

        if self.location is None:
            user_frame = _find_user_frame()
            if user_frame is not None:
                self.location = SourceLocation.from_frame(user_frame)

    def with_note(self, note: str) -> HopperError:
        self.notes.append(note)
        return self

    def with_help(self, help_text: str) -> HopperError:
        self.help_text = help_text
        return self

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Format the error like rustc diagnostics."""
        if use_colors is None:
            use_colors = _should_use_colors()
        c = _Colors if use_colors else _NoColors

        code_part = f'[{self.code.value}]' if self.code else ''
        lines: list[str] = [
            '',
            f'{c.BOLD}{c.RED}error{code_part}:{c.RESET} {self.message}',
        ]

        if self.location:
            lines.append(
                f'  {c.BLUE}-->{c.RESET} {c.CYAN}{self.location.format_short()}{c.RESET}'
            )
            source_line = self.location.get_source_line()
            if source_line:
                line_num = str(self.location.line)
                padding = ' ' * len(line_num)
                stripped = source_line.lstrip()
                underline = ' ' * (len(source_line) - len(stripped)) + '^' * len(stripped)
                lines.append(f'   {c.BLUE}{padding}|{c.RESET}')
                lines.append(f'   {c.BLUE}{line_num}|{c.RESET} {source_line}')
                lines.append(f'   {c.BLUE}{padding}|{c.RESET} {c.RED}{underline}{c.RESET}')

        for note in self.notes:
            first, *rest = note.split('\n')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.BLUE}note{c.RESET}: {first}')
            lines.extend(f'          {extra}' for extra in rest)

        if self.help_text:
            lines.append('')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.GREEN}help{c.RESET}:')
            lines.extend(f'        {help_line}' for help_line in self.help_text.split('\n'))

        return '\n'.join(lines)

    def __str__(self) -> str:
        # Plain text: safe for log handlers and storage
        return self.format_rust_style(use_colors=False)


_original_excepthook = sys.excepthook


def _hopper_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    """Print HopperError rustc-style, delegate everything else."""
    if _env_flag('HOPPER_PLAIN_ERRORS') or not isinstance(exc_value, HopperError):
        _original_excepthook(exc_type, exc_value, exc_tb)
        return

    print(exc_value.format_rust_style(), file=sys.stderr)
    if _env_flag('HOPPER_VERBOSE'):
        c = _Colors if _should_use_colors() else _NoColors
        print(file=sys.stderr)
        print(f'{c.DIM}Full traceback (HOPPER_VERBOSE=1):{c.RESET}', file=sys.stderr)
        traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)


def install_error_handler() -> None:
    """Install the custom exception hook for rustc-style error display."""
    sys.excepthook = _hopper_excepthook


def uninstall_error_handler() -> None:
    """Restore the original exception hook."""
    sys.excepthook = _original_excepthook


# =============================================================================
# Setup-time Error Classes
# =============================================================================


@dataclass
class ConfigurationError(HopperError):
    """Raised when producer/consumer/broker/backend configuration is invalid."""

    pass


@dataclass
class RegistryError(HopperError):
    """Raised when a task registry operation fails."""

    pass


class ValidationReport:
    """Collects every HopperError found while validating one phase."""

    def __init__(self, phase_name: str) -> None:
        self.phase_name: str = phase_name
        self.errors: list[HopperError] = []

    def add(self, error: HopperError) -> None:
        self.errors.append(error)

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        if use_colors is None:
            use_colors = _should_use_colors()
        c = _Colors if use_colors else _NoColors

        parts = [error.format_rust_style(use_colors=use_colors) for error in self.errors]
        parts.append(
            f'\n{c.BOLD}{c.RED}error{c.RESET}: aborting due to {len(self.errors)} previous errors'
        )
        return '\n'.join(parts)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


@dataclass
class MultipleValidationErrors(HopperError):
    """Wraps a ValidationReport holding two or more errors."""

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f'aborting due to {len(self.report.errors)} previous errors'
        # Location is per error in the report
        Exception.__init__(self, self.message)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        return self.report.format_rust_style(use_colors=use_colors)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


def raise_collected(report: ValidationReport) -> None:
    """Raise what a report collected.

    - 0 errors: no-op
    - 1 error: raises that error unchanged
    - 2+ errors: raises MultipleValidationErrors wrapping the report
    """
    count = len(report.errors)
    if count == 0:
        return
    if count == 1:
        raise report.errors[0]
    raise MultipleValidationErrors(
        message=f'aborting due to {count} previous errors',
        report=report,
    )


def _find_user_frame() -> Any | None:
    """Return the first stack frame outside hopper and site-packages."""
    frame = inspect.currentframe()
    while frame is not None:
        filename = frame.f_code.co_filename
        if (
            not filename.startswith('<')
            and not filename.startswith(_HOPPER_PKG_DIR)
            and '/site-packages/' not in filename
        ):
            return frame
        frame = frame.f_back
    return None


# =============================================================================
# Runtime Error Classes
# =============================================================================


class NonRetryableError(Exception):
    """Raise (or subclass) from a handler to fail the task without retrying.

    Any exception with a truthy ``no_retry`` attribute is treated the same way.
    """

    no_retry: bool = True


class VersionMismatchError(NonRetryableError):
    """The task was produced for a protocol version this consumer cannot run."""

    def __init__(self, got: Any, supported: Any) -> None:
        super().__init__(f'unsupported task version {got!r} (supported: {supported!r})')
        self.got = got
        self.supported = supported


class BackendReportError(Exception):
    """Persisting a task state transition failed."""

    def __init__(
        self,
        task_id: str | None,
        transition: TaskState,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(
            f'failed to report {transition.value} for task {task_id}: {cause}'
        )
        self.task_id = task_id
        self.transition = transition
        self.cause = cause


class TransportError(Exception):
    """Connection, channel or publish failure talking to the broker."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message if cause is None else f'{message}: {cause}')
        self.cause = cause


class LifecycleError(Exception):
    """An aggregate close/health operation failed on at least one collaborator.

    ``outcomes`` maps collaborator name to its result or raised exception.
    """

    def __init__(self, operation: str, outcomes: Mapping[str, Any]) -> None:
        failed = sorted(k for k, v in outcomes.items() if isinstance(v, BaseException))
        super().__init__(f'{operation} failed for: {", ".join(failed)}')
        self.operation = operation
        self.outcomes = dict(outcomes)
