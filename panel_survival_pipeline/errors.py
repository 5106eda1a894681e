"""Error taxonomy for panel reduction, event derivation and grid cells."""

from __future__ import annotations


class PanelSurvivalError(Exception):
    pass


class MalformedPanelError(PanelSurvivalError):
    """Raised when subject/wave keys are missing, null or duplicated. Aborts the run."""


class MissingHistoryError(PanelSurvivalError):
    """Raised when a reference subject has no panel rows to derive events from."""

    def __init__(self, subject: object) -> None:
        super().__init__(f"subject {subject!r} has no panel history")
        self.subject = subject


class FitFailure(PanelSurvivalError):
    """A single grid cell could not be fitted or evaluated."""


class SchemaGapError(PanelSurvivalError):
    def __init__(self, cell_id: str, missing: list[str]) -> None:
        super().__init__(f"{cell_id}: missing columns {', '.join(missing)}")
        self.cell_id = cell_id
        self.missing = list(missing)
