from typing import Optional

from rich.console import Console
from rich.prompt import Confirm, Prompt
from rich.table import Table

from vrc.domain.events import (
    CleanupFinished,
    JobFinished,
    JobProgressUpdated,
    JobStarted,
    QueueBuilt,
    ReconcileFinished,
    SchedulerStopped,
    VolumeSuspended,
    WaitingForWindow,
)
from vrc.infrastructure.event_bus import EventBus
from vrc.pipeline.run_window import RunWindow
from vrc.pipeline.scheduler import Prompter, WindowChoice
from vrc.pipeline.worker import EXIT_HANDLED, EXIT_LOW_SPACE


def format_size(size: float) -> str:
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}TB"


def format_duration(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m" if hours else f"{minutes}m{secs:02d}s"


class ConsoleReporter:
    """Prints one line per domain event."""

    def __init__(self, event_bus: EventBus, console: Optional[Console] = None, show_progress: bool = False):
        self.console = console or Console()
        self._last_percent = -10.0
        event_bus.subscribe(QueueBuilt, self.on_queue_built)
        event_bus.subscribe(ReconcileFinished, self.on_reconcile)
        event_bus.subscribe(CleanupFinished, self.on_cleanup)
        event_bus.subscribe(JobStarted, self.on_job_started)
        event_bus.subscribe(JobFinished, self.on_job_finished)
        event_bus.subscribe(VolumeSuspended, self.on_volume_suspended)
        event_bus.subscribe(WaitingForWindow, self.on_waiting)
        event_bus.subscribe(SchedulerStopped, self.on_stopped)
        if show_progress:
            event_bus.subscribe(JobProgressUpdated, self.on_progress)

    def on_queue_built(self, event: QueueBuilt):
        table = Table(title="Volume queues")
        table.add_column("Volume")
        table.add_column("Files", justify="right")
        for volume, count in event.queue_sizes.items():
            table.add_row(volume, str(count))
        self.console.print(table)
        if event.excluded:
            self.console.print(f"[dim]{event.excluded} files excluded by pattern or age[/dim]")

    def on_reconcile(self, event: ReconcileFinished):
        for path in event.restored:
            self.console.print(f"[yellow]Restored from backup:[/yellow] {path}")
        for path in event.suspicious:
            self.console.print(f"[bold yellow]Needs review:[/bold yellow] {path} (backup present, probe failed)")
        for path in event.failed:
            self.console.print(f"[bold red]Restore failed:[/bold red] {path}")

    def on_cleanup(self, event: CleanupFinished):
        self.console.print(f"[dim]Removed {len(event.removed)} stale temp files[/dim]")

    def on_job_started(self, event: JobStarted):
        self._last_percent = -10.0
        self.console.print(
            f"[cyan]▶[/cyan] {event.file.path.name} [dim]({format_size(event.file.size_bytes)}, {event.file.volume})[/dim]"
        )

    def on_progress(self, event: JobProgressUpdated):
        if event.progress_percent - self._last_percent >= 10.0:
            self._last_percent = event.progress_percent
            self.console.print(f"[dim]  {event.path.name}: {event.progress_percent:.0f}%[/dim]")

    def on_job_finished(self, event: JobFinished):
        if event.exit_code == EXIT_HANDLED:
            self.console.print(f"[green]✓[/green] {event.file.path.name}")
        elif event.exit_code == EXIT_LOW_SPACE:
            self.console.print(f"[yellow]⚠[/yellow] {event.file.path.name}: low free space on {event.file.volume}")
        else:
            self.console.print(f"[bold red]✗ {event.file.path.name}: worker crashed (exit {event.exit_code})[/bold red]")

    def on_volume_suspended(self, event: VolumeSuspended):
        self.console.print(f"[yellow]Volume {event.volume} suspended for this run:[/yellow] {event.reason}")

    def on_waiting(self, event: WaitingForWindow):
        self.console.print(f"Outside run window, sleeping {format_duration(event.seconds)}")

    def on_stopped(self, event: SchedulerStopped):
        self.console.print(f"[bold]Stopped:[/bold] {event.reason} ({event.processed} files processed)")


class ConsolePrompter(Prompter):
    """Asks on the terminal; `assume_yes` answers every question with yes."""

    def __init__(self, console: Optional[Console] = None, assume_yes: bool = False):
        self.console = console or Console()
        self.assume_yes = assume_yes

    def outside_window(self, window: RunWindow, seconds_until_open: float) -> WindowChoice:
        if self.assume_yes:
            return WindowChoice.PROCEED
        self.console.print(
            f"Outside run window {window.describe()} (opens in {format_duration(seconds_until_open)})."
        )
        answer = Prompt.ask(
            "Proceed now, wait for the window, or stop?",
            choices=[c.value for c in WindowChoice],
            default=WindowChoice.WAIT.value,
            console=self.console,
        )
        return WindowChoice(answer)

    def continue_after_low_space(self, volume: str) -> bool:
        if self.assume_yes:
            return True
        return Confirm.ask(
            f"Volume {volume} is low on space and was suspended. Continue with other volumes?",
            default=True,
            console=self.console,
        )
