from __future__ import annotations

from pathlib import Path
from typing import Iterable, Sequence


class ThicknessError(Exception):
    """Base class for pipeline errors that abort the current side."""

    exit_code: int = 1


class ConfigurationError(ThicknessError):
    """Missing or unreadable input, template, output path or configuration value."""


class MissingPrerequisiteError(ThicknessError):
    """A stage needs an artifact that an earlier stage should have written."""

    def __init__(self, what: str, missing: Iterable[Path]) -> None:
        self.what = what
        self.missing = [Path(p) for p in missing]
        listing = ", ".join(str(p) for p in self.missing)
        super().__init__(f"{what}: missing {listing}")


class ClassificationError(ThicknessError):
    """Group membership cannot be derived from the similarity data."""


class ExternalToolError(ThicknessError):
    """An external numerical tool exited with a non-zero status."""

    def __init__(self, cmd: Sequence[str], returncode: int, output: str = "") -> None:
        self.cmd = list(cmd)
        self.returncode = int(returncode)
        self.output = output or ""
        self.exit_code = self.returncode if self.returncode > 0 else 1
        super().__init__(f"The command \"{' '.join(self.cmd)}\" exited with code {self.returncode}")


class IncompleteArtifactError(ThicknessError):
    """A producer returned without writing every output it was asked for."""

    def __init__(self, missing: Iterable[Path]) -> None:
        self.missing = [Path(p) for p in missing]
        super().__init__(f"Producer finished without writing {', '.join(str(p) for p in self.missing)}")


class StageFailure(ThicknessError):
    """Unexpected error (image I/O, filesystem, ...) raised while running a step."""

    def __init__(self, where: str, cause: BaseException) -> None:
        self.where = where
        self.__cause__ = cause
        super().__init__(f"{where} failed with {type(cause).__name__}: {cause}")
