"""
Progress display for backward time sweeps.

A disabled bar is a no-op, so the time loop calls ``update`` unconditionally.
"""

from __future__ import annotations

from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn

console = Console(stderr=True)


class RichProgressBar:
    """Rich bar over timesteps with a status suffix (current time, iterations)."""

    def __init__(self, total: int | None = None, desc: str = "", disable: bool = False):
        self.total = total
        self.desc = desc
        self.disable = disable
        self._status = ""
        self._progress: Progress | None = None
        self._task = None

    def __enter__(self):
        if not self.disable:
            self._progress = Progress(
                TextColumn("[bold blue]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                TextColumn("{task.fields[status]}"),
                console=console,
            )
            self._progress.start()
            self._task = self._progress.add_task(self.desc, total=self.total, status="")
        return self

    def __exit__(self, *args):
        if self._progress is not None:
            self._progress.stop()
        return False

    def update(self, n: int = 1):
        if self._progress is not None:
            self._progress.update(self._task, advance=n, status=self._status)

    def set_postfix(self, **fields):
        self._status = " ".join(f"{key}={value}" for key, value in fields.items())
        if self._progress is not None:
            self._progress.update(self._task, status=self._status)
