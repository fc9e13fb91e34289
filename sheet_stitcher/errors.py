"""Error taxonomy shared by the mapping, diff, validation and stitch stages.

Structural problems (a required artifact or block is missing or malformed)
propagate to the caller and abort the stage. Line-level problems in AI text
are raised as ``CorrectionParseError`` and recovered by the parser that hit
them: the line is logged and skipped.
"""

from __future__ import annotations


class StitchError(Exception):
    """Base class for every error raised by sheet-stitcher."""


class ContractError(StitchError):
    """The column mapping or schema contract is missing or unusable."""


class SchemaExtractionError(ContractError):
    """A required tagged block could not be located in an AI response."""

    def __init__(self, message: str, *, section: str | None = None) -> None:
        super().__init__(message)
        self.section = section


class MissingArtifactError(ContractError, FileNotFoundError):
    """A required input file for a stage does not exist."""

    def __init__(self, artifact: str, path) -> None:
        super().__init__(f"Required {artifact} not found: {path}")
        self.artifact = artifact
        self.path = path


class CorrectionParseError(StitchError, ValueError):
    """One line of AI text could not be parsed."""

    def __init__(self, message: str, *, line: str = "", line_number: int | None = None) -> None:
        super().__init__(message)
        self.line = line
        self.line_number = line_number


class OutOfRangeError(StitchError, IndexError):
    """A row id or column index points outside the live table."""

    def __init__(self, message: str, *, row_id: int | None = None, column: str | None = None) -> None:
        super().__init__(message)
        self.row_id = row_id
        self.column = column


class ValidationDegradation(StitchError):
    """A regex contract could not be compiled; validation fails open."""

    def __init__(self, regex: str, reason: str) -> None:
        super().__init__(f"Invalid regex pattern '{regex}': {reason}")
        self.regex = regex
        self.reason = reason
