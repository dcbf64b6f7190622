from __future__ import annotations

import threading
from typing import Any, Optional

from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn


class RunProgress:
    """
    Transient progress display for the project fan-out, drawn on stderr so it
    never mixes with the report on stdout. Disabled instances are no-ops.
    """

    def __init__(self, *, enabled: bool, console: Optional[Console] = None) -> None:
        self._console = console or Console(stderr=True)
        self._enabled = bool(enabled and self._console.is_terminal)
        self._progress: Optional[Progress] = None
        self._projects_task: Optional[Any] = None
        self._failed = 0
        self._lock = threading.Lock()
        self._started = False
        if self._enabled:
            self._progress = Progress(
                TextColumn("{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TextColumn("{task.fields[detail]}", justify="left"),
                TimeElapsedColumn(),
                console=self._console,
                transient=True,
            )

    def __enter__(self) -> RunProgress:
        if self._enabled and self._progress and not self._started:
            self._progress.start()
            self._started = True
        return self

    def __exit__(self, exc_type: Any, exc: Any, exc_tb: Any) -> None:
        if self._enabled and self._progress and self._started:
            self._progress.stop()
            self._started = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start_projects(self, total: Optional[int] = None) -> None:
        if not self._enabled or not self._progress:
            return
        self._projects_task = self._progress.add_task("Projects", total=total, detail="")

    def advance_projects(self, *, failed: bool = False) -> None:
        if not self._enabled or not self._progress or self._projects_task is None:
            return
        with self._lock:
            if failed:
                self._failed += 1
            detail = f"{self._failed} skipped" if self._failed else ""
            self._progress.update(self._projects_task, advance=1, detail=detail)
