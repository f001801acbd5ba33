import typer
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from vrc.config.loader import apply_overrides, load_config
from vrc.config.models import AppConfig, validate_queue_sort
from vrc.domain.errors import ProbeError
from vrc.infrastructure.audit_log import AuditLog
from vrc.infrastructure.event_bus import EventBus
from vrc.infrastructure.ffmpeg import FFmpegAdapter
from vrc.infrastructure.ffprobe import FFprobeAdapter
from vrc.infrastructure.file_scanner import FileScanner
from vrc.infrastructure.housekeeping import HousekeepingService
from vrc.infrastructure.logging import setup_logging
from vrc.pipeline.decision import decide, effective_bitrate
from vrc.pipeline.scheduler import Scheduler, SubprocessWorkerRunner
from vrc.pipeline.volume_queues import VolumeQueueBuilder
from vrc.pipeline.worker import WorkerPipeline, exit_code_for
from vrc.ui.console import ConsolePrompter, ConsoleReporter, format_size

app = typer.Typer(help="VRC (Video Re-encode Controller) - unattended HEVC re-encoding across volumes")

DEFAULT_CONFIG = Path("conf/vrc.yaml")


def _load(config_path: Path, debug: bool = False, queue_sort: Optional[str] = None) -> AppConfig:
    if config_path.exists():
        config = load_config(config_path)
    elif config_path == DEFAULT_CONFIG:
        config = AppConfig()
    else:
        raise FileNotFoundError(f"Config file not found: {config_path}")
    if queue_sort is not None:
        try:
            queue_sort = validate_queue_sort(queue_sort)
        except ValueError as exc:
            typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)
    return apply_overrides(config, "general", debug=True if debug else None, queue_sort=queue_sort)


def _target_dirs(config: AppConfig, targets: Optional[List[Path]]) -> List[Path]:
    dirs = list(targets) if targets else [Path(p) for p in config.general.target_dirs]
    if not dirs:
        typer.secho("Error: No target folders provided in CLI or config.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    return dirs


def _scanner(config: AppConfig) -> FileScanner:
    return FileScanner(
        extensions=config.general.extensions,
        exclude_pattern=config.general.exclude_pattern,
        min_age_days=config.general.min_age_days,
    )


def build_worker(config: AppConfig, event_bus: Optional[EventBus] = None) -> WorkerPipeline:
    return WorkerPipeline(
        config=config,
        ffprobe_adapter=FFprobeAdapter(config.encoder.ffprobe_path),
        ffmpeg_adapter=FFmpegAdapter(codec=config.encoder.codec, ffmpeg_path=config.encoder.ffmpeg_path),
        audit_log=AuditLog(Path(config.general.audit_log_path)),
        event_bus=event_bus,
    )


def _dry_run(config: AppConfig, dirs: List[Path], console: Console) -> None:
    builder = VolumeQueueBuilder(_scanner(config), config.general.queue_sort)
    queues = builder.build(dirs)
    probe = FFprobeAdapter(config.encoder.ffprobe_path)
    table = Table(title="Dry run")
    for column in ("Volume", "File", "Size", "Codec", "kbps", "Decision"):
        table.add_column(column)
    for volume in queues.non_empty():
        for candidate in queues.files(volume):
            try:
                descriptor = probe.probe(candidate.path)
            except ProbeError as exc:
                table.add_row(volume, candidate.path.name, format_size(candidate.size_bytes), "?", "?", f"ProbeError ({exc.exit_code})")
                continue
            decision = decide(descriptor, candidate.size_bytes, config.policy)
            video = descriptor.primary_video
            table.add_row(
                volume,
                candidate.path.name,
                format_size(candidate.size_bytes),
                video.codec if video else "none",
                f"{effective_bitrate(descriptor, candidate.size_bytes) / 1000:.0f}",
                f"{decision.reason.value}{' 10bit' if decision.use_10bit else ''}",
            )
    console.print(table)


@app.command()
def run(
    targets: Optional[List[Path]] = typer.Argument(None, help="Target folders (optional if set in config)"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to YAML config"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Answer yes to run-window and low-space prompts"),
    no_prompt: bool = typer.Option(False, "--no-prompt", help="Never prompt: wait for the run window, continue after low space"),
    queue_sort: Optional[str] = typer.Option(None, "--queue-sort", help="Queue order (smallest, largest, name, none)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Build queues and print decisions without encoding"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Reconcile, clean up, build volume queues and dispatch files one at a time."""
    console = Console()
    try:
        config = _load(config_path, debug=debug, queue_sort=queue_sort)
        dirs = _target_dirs(config, targets)
        logger = setup_logging(Path(config.general.log_path), debug=config.general.debug)
        logger.info(f"VRC started: targets={dirs}")
        logger.info(
            f"Config: sort={config.general.queue_sort}, dv_policy={config.policy.dolby_vision.value}, "
            f"bit_depth={config.policy.bit_depth.value}, window={config.schedule.window_start}-{config.schedule.window_end}"
        )

        if dry_run:
            _dry_run(config, dirs, console)
            return

        bus = EventBus()
        ConsoleReporter(bus, console=console)
        prompter = None if no_prompt else ConsolePrompter(console=console, assume_yes=yes)
        runner = SubprocessWorkerRunner(config)
        scheduler = Scheduler(
            config=config,
            event_bus=bus,
            queue_builder=VolumeQueueBuilder(_scanner(config), config.general.queue_sort),
            housekeeping=HousekeepingService(probe=FFprobeAdapter(config.encoder.ffprobe_path).probe),
            worker_runner=runner,
            prompter=prompter,
        )
        try:
            scheduler.run(dirs)
        finally:
            runner.close()

    except KeyboardInterrupt:
        typer.secho("\nStopped by user (Ctrl+C)", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130)

    except typer.Exit:
        raise

    except Exception as e:
        typer.secho(f"Fatal Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


@app.command()
def worker(
    path: Path = typer.Argument(..., help="Media file to process"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to YAML config"),
):
    """Run the pipeline for one file. Exit code 10 means low free space."""
    config = _load(config_path)
    setup_logging(Path(config.general.log_path), debug=config.general.debug, role="worker")
    bus = EventBus()
    ConsoleReporter(bus, show_progress=True)
    result = build_worker(config, bus).process(path)
    raise typer.Exit(code=exit_code_for(result))


@app.command()
def reconcile(
    targets: Optional[List[Path]] = typer.Argument(None, help="Target folders (optional if set in config)"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to YAML config"),
):
    """Restore or flag backups left behind by an interrupted swap."""
    config = _load(config_path)
    dirs = _target_dirs(config, targets)
    setup_logging(Path(config.general.log_path), debug=config.general.debug)
    housekeeper = HousekeepingService(probe=FFprobeAdapter(config.encoder.ffprobe_path).probe)
    console = Console()
    suspicious = 0
    for directory in dirs:
        report = housekeeper.reconcile_backups(directory, config.general.extensions)
        for p in report.restored:
            console.print(f"[yellow]Restored:[/yellow] {p}")
        for p in report.suspicious:
            console.print(f"[bold yellow]Needs review:[/bold yellow] {p}")
        for p in report.failed:
            console.print(f"[bold red]Restore failed:[/bold red] {p}")
        suspicious += len(report.suspicious) + len(report.failed)
    if suspicious:
        raise typer.Exit(code=2)


@app.command("decide")
def decide_command(
    path: Path = typer.Argument(..., help="Media file to inspect"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to YAML config"),
):
    """Probe one file and print the encode decision."""
    config = _load(config_path)
    try:
        descriptor = FFprobeAdapter(config.encoder.ffprobe_path).probe(path)
    except ProbeError as exc:
        typer.secho(f"Probe failed: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    decision = decide(descriptor, path.stat().st_size, config.policy)
    typer.echo(f"video: {descriptor.video_summary()}")
    typer.echo(f"audio: {descriptor.audio_summary()}")
    typer.echo(f"dolby_vision: {descriptor.dolby_vision}")
    typer.echo(f"decision: process={decision.should_process} reason={decision.reason.value} 10bit={decision.use_10bit}")


if __name__ == "__main__":
    app()
