"""Screen Recall Daemon Module.

This module wires the capture pipeline together and runs it as a background
process. It builds the collaborators from configuration, starts the capture
scheduler, optionally serves the query API, and shuts down gracefully on
SIGTERM/SIGINT.

The daemon provides:
- Periodic screen sampling with privacy exclusion before persistence
- OCR of every retained sample
- A searchable event history and recall context for text generation
- Optional Flask query API in a background thread
- Status logging for every scheduler transition

Dependencies:
- recall.scheduler: Capture lifecycle and tick pipeline
- recall.storage: SQLite event store and screenshot files
- recall.stream: MSS-based capture stream
- recall.foreground: xdotool/xprop foreground window lookup
- recall.ocr: Tesseract OCR

Example:
    # Run daemon programmatically
    >>> from recall.daemon import RecallDaemon
    >>> daemon = RecallDaemon()
    >>> daemon.run()  # Runs until interrupted

    # Or via command line
    $ python -m recall.daemon --web
"""

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

from .config import ConfigManager
from .context import ContextAssembler
from .errors import PermissionDenied
from .foreground import XdotoolForeground
from .models import StatusEvent
from .ocr import TextExtractor
from .scheduler import CaptureScheduler
from .storage import EventStore
from .stream import DisplayPermission, MssCaptureStream

logger = logging.getLogger(__name__)


class RecallDaemon:
    """Main process for continuous screen recall.

    Attributes:
        config_manager (ConfigManager): Live configuration
        store (EventStore): Event store
        assembler (ContextAssembler): Recall context builder
        scheduler (CaptureScheduler): Capture lifecycle owner
        running (bool): Controls the main loop

    Example:
        >>> daemon = RecallDaemon(enable_web=True)
        >>> daemon.run()
    """

    def __init__(self, config_manager: Optional[ConfigManager] = None, enable_web: bool = False,
                 web_port: Optional[int] = None, scheduler: Optional[CaptureScheduler] = None):
        """Initialize the daemon and its pipeline from configuration.

        Args:
            config_manager: Configuration to use (default file if None)
            enable_web: Whether to start the query API server
            web_port: Overrides web.port from configuration
            scheduler: Prebuilt scheduler, mainly for tests
        """
        self.config_manager = config_manager or ConfigManager()
        config = self.config_manager.config

        self.store = EventStore(config.storage.data_dir)
        self.assembler = ContextAssembler(self.store, ocr_char_budget=config.context.ocr_char_budget)
        self.scheduler = scheduler or CaptureScheduler(
            stream=MssCaptureStream(max_frame_rate=config.capture.max_frame_rate),
            permission=DisplayPermission(),
            foreground=XdotoolForeground(),
            extractor=self._build_extractor(),
            store=self.store,
            rules_provider=self.config_manager.rule_set,
            interval_seconds=self.config_manager.interval_seconds(),
        )
        self.scheduler.subscribe(self._on_status)

        self.enable_web = enable_web
        self.web_host = config.web.host
        self.web_port = web_port or config.web.port
        self.web_thread = None

        self.running = False
        self._wake = threading.Event()

    def _signal_handler(self, signum, frame):
        """Handle SIGTERM/SIGINT by ending the main loop."""
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        self.running = False
        self._wake.set()

    def _on_status(self, status: StatusEvent):
        if status.error is not None:
            logger.warning(f"Capture status: {status.state.value} ({status.error})")
        else:
            logger.info(f"Capture status: {status.state.value}, interval {status.interval_seconds:g}s")

    def start_capture(self) -> bool:
        """Start capturing, logging instead of raising on missing permission."""
        try:
            return self.scheduler.start()
        except PermissionDenied as e:
            logger.error(f"{e}. Is a display server running and reachable?")
            return False

    def _build_extractor(self) -> TextExtractor:
        extractor = TextExtractor(mode_provider=self.config_manager.ocr_mode)
        if not extractor.is_available():
            logger.warning(f"{extractor.tesseract_cmd} not found in PATH, events will be saved without text")
        return extractor

    def set_interval(self, seconds: float) -> float:
        """Apply a new sampling interval and persist it to the config file."""
        return self._persist_interval(self.scheduler.set_interval(seconds))

    def increase_frequency(self) -> float:
        """Halve the sampling interval and persist it."""
        return self._persist_interval(self.scheduler.increase_frequency())

    def decrease_frequency(self) -> float:
        """Double the sampling interval and persist it."""
        return self._persist_interval(self.scheduler.decrease_frequency())

    def _persist_interval(self, applied: float) -> float:
        try:
            self.config_manager.update('capture', 'interval_seconds', applied)
        except OSError as e:
            logger.warning(f"Interval applied but not saved: {e}")
        return applied

    def _start_web_server(self):
        from web.app import create_app

        app = create_app(self.store, self.assembler, self.scheduler, config_manager=self.config_manager)
        logger.info(f"Starting query API on http://{self.web_host}:{self.web_port}")
        app.run(host=self.web_host, port=self.web_port, debug=False, use_reloader=False)

    def run(self):
        """Start capture and block until a shutdown signal arrives.

        On shutdown the scheduler is stopped; a tick that is already running
        is allowed to finish and persist its event first.
        """
        logger.info("Screen recall daemon starting...")
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)
        self.running = True

        if self.enable_web:
            self.web_thread = threading.Thread(target=self._start_web_server, daemon=True)
            self.web_thread.start()

        self.start_capture()

        while self.running:
            self._wake.wait(1)

        logger.info("Shutting down...")
        self.scheduler.stop()
        logger.info("Screen recall daemon stopped")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Screen recall capture daemon")
    parser.add_argument("--config", type=Path, default=None,
                        help="Path to config.yaml (default: ~/.config/screen-recall/config.yaml)")
    parser.add_argument("--interval", type=float, default=None,
                        help="Sampling interval in seconds, 1-300 (overrides config)")
    parser.add_argument("--web", action="store_true", help="Enable the query API server")
    parser.add_argument("--web-port", type=int, default=None, help="Query API port (overrides config)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )

    daemon = RecallDaemon(
        config_manager=ConfigManager(args.config),
        enable_web=args.web,
        web_port=args.web_port,
    )
    if args.interval is not None:
        daemon.set_interval(args.interval)
    daemon.run()


if __name__ == "__main__":
    main()
