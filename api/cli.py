import asyncio
import logging
import sys
import threading

import click
from flask import current_app

from lib.error_handler import AppError, ErrorHandler
from lib.local_storage import LocalStorage
from .services.capture import AudioCapture
from .services.quota import AnonymousQuotaLedger
from .services.storage import AnonymousReportStore

logger = logging.getLogger(__name__)

METER_WIDTH = 40

def render_level(level: float, width: int = METER_WIDTH) -> str:
    filled = int(round(max(0.0, min(1.0, level)) * width))
    return '[' + '#' * filled + ' ' * (width - filled) + ']'

def register_cli(app):
    @app.cli.command('record')
    @click.option('--browser-id', default='cli', show_default=True,
                  help='Anonymous storage scope the report is saved under.')
    @click.option('--max-seconds', type=float, default=None,
                  help='Override the maximum recording length.')
    def record(browser_id, max_seconds):
        """Record a voice clip from the microphone and run a stress check."""
        settings = current_app.config['STRESS_SETTINGS']
        service = current_app.extensions['stress_check']
        local_storage = LocalStorage(settings.local_storage_path, browser_id)
        ledger = AnonymousQuotaLedger(local_storage, limit=settings.max_anonymous_checks)

        status = asyncio.run(ledger.status())
        if not status.can_check:
            raise click.ClickException(
                f"You have used all {status.limit} free stress checks. Sign up for an account to get more."
            )

        capture = AudioCapture(
            max_seconds=max_seconds or settings.max_recording_seconds,
            samplerate=settings.sample_rate,
            device=settings.input_device,
        )
        with capture:
            try:
                capture.start_capture()
            except AppError as e:
                raise click.ClickException(ErrorHandler.handle_capture_error(e))

            click.echo(f"Recording... press Enter to stop (max {capture.max_seconds:.0f}s)")
            threading.Thread(target=_stop_on_enter, args=(capture,), daemon=True).start()
            for level in capture.amplitude_samples():
                sys.stdout.write('\r' + render_level(level))
                sys.stdout.flush()
            click.echo()

            try:
                payload, media_type = capture.stop_capture()
            except AppError as e:
                raise click.ClickException(ErrorHandler.handle_capture_error(e))

        click.echo("Analyzing...")
        try:
            outcome = asyncio.run(service.run(
                f"anonymous:{browser_id}",
                ledger,
                AnonymousReportStore(local_storage),
                payload,
                media_type,
            ))
        except AppError as e:
            raise click.ClickException(ErrorHandler.handle_analysis_error(e))

        analysis = outcome.report.stress_analysis
        click.echo(f"Stress level: {analysis.display_level()}/100")
        click.echo(analysis.analysis_details)
        click.echo(f"Checks remaining: {outcome.quota.remaining}")

def _stop_on_enter(capture: AudioCapture) -> None:
    try:
        sys.stdin.readline()
    except (OSError, ValueError):
        return
    if capture.is_active:
        try:
            capture.stop_capture()
        except AppError as e:
            logger.error(f"Stopping recording failed: {e.message}")
