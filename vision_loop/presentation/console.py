from __future__ import annotations

from datetime import datetime

import typer

from vision_loop.models import Status, StatusClass

_STATUS_COLORS = {
    StatusClass.NONE: None,
    StatusClass.PROCESSING: typer.colors.YELLOW,
    StatusClass.ACTIVE: typer.colors.GREEN,
    StatusClass.ERROR: typer.colors.RED,
}


class ConsoleSink:
    """Terminal presentation: status lines on stderr, analysis text on stdout."""

    def __init__(self, *, show_processing: bool = False, timestamps: bool = True) -> None:
        self.show_processing = show_processing
        self.timestamps = timestamps
        self.last_status: Status | None = None

    def on_status(self, status: Status) -> None:
        if status == self.last_status:
            return
        self.last_status = status
        if status.status_class is StatusClass.PROCESSING and not self.show_processing:
            return
        typer.secho(f"[{status.label}]", fg=_STATUS_COLORS[status.status_class], err=True)

    def on_result(self, text: str, is_error: bool) -> None:
        line = f"{self._prefix()}{text}"
        if is_error:
            typer.secho(line, fg=typer.colors.RED, err=True)
        else:
            typer.echo(line)

    def _prefix(self) -> str:
        if not self.timestamps:
            return ""
        return f"{datetime.now().strftime('%H:%M:%S')} "
