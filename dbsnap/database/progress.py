"""Import progress reporting and the cooperative abort protocol."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable, Optional

from loguru import logger

from ..utils.exceptions import AbortedError


@dataclass
class ImportProgress:
    total_tables: int = 0
    completed_tables: int = 0
    total_rows: Optional[int] = None
    completed_rows: int = 0
    done: bool = False

    @property
    def percent(self) -> Optional[float]:
        if not self.total_rows:
            return None
        return 100.0 * self.completed_rows / self.total_rows


ProgressCallback = Callable[[ImportProgress], bool]


class ProgressTracker:
    """Keeps the counters of one import and reports them to the observer.

    The observer gets a copy of the progress and returns True to abort.
    """

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self.callback = callback
        self.progress = ImportProgress()
        self.notifications = 0

    def start(self, total_tables: int, total_rows: int) -> None:
        self.progress.total_tables = total_tables
        self.progress.total_rows = total_rows

    def add_rows(self, count: int) -> None:
        completed = self.progress.completed_rows + count
        total = self.progress.total_rows
        if total is not None and completed > total:
            logger.warning(
                f"Export delivered more rows than its manifest declares ({completed} > {total})"
            )
            completed = max(total, self.progress.completed_rows)
        self.progress.completed_rows = completed

    def complete_table(self) -> None:
        self.progress.completed_tables += 1

    def finish(self) -> None:
        self.progress.done = True
        self.notify()

    def notify(self) -> None:
        """Report progress; raises AbortedError if the observer asks to stop."""
        if self.callback is None:
            return
        self.notifications += 1
        if self.callback(replace(self.progress)):
            logger.info(
                f"Import aborted by progress callback after {self.progress.completed_rows} rows"
            )
            raise AbortedError(context={"progress": replace(self.progress)})
