#!/usr/bin/env python3
"""
Fire Alarm Client - Entry Point
===============================

This script starts the fire alarm client, which:
- Keeps an MQTT session to the broker (reconnecting on loss)
- Subscribes to devices/+/status and devices/+/alarm
- Classifies messages and raises an alert on fire alarms

Usage:
    python run_fire_alarm.py --config config/fire_alarm.yaml

Lifecycle:
    1. Load configuration from YAML
    2. Setup logging (console + file)
    3. Create FireAlarmService
    4. Start service (non-blocking)
    5. Wait for stop signal (Ctrl+C or SIGTERM)
    6. Graceful shutdown

Signals:
    - SIGTERM: Graceful shutdown
    - SIGINT (Ctrl+C): Graceful shutdown
"""

import argparse
import signal
import sys
import logging
from pathlib import Path
from typing import Optional

from firealarm_service import FireAlarmService, FireAlarmConfig


# ─────────────────────────────────────────────────────────────────────────────
# Logging Setup
# ─────────────────────────────────────────────────────────────────────────────

def setup_logging(log_file: Optional[Path] = None) -> logging.Logger:
    """
    Setup logging for the fire alarm client.

    Args:
        log_file: Optional path to log file

    Returns:
        Logger instance for the entry point
    """
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            *(
                [logging.FileHandler(log_file)]
                if log_file
                else []
            )
        ]
    )

    return logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Main Service
# ─────────────────────────────────────────────────────────────────────────────

class FireAlarmApp:
    """
    Application wrapper for FireAlarmService.

    Handles:
    - Configuration loading
    - Signal handling (SIGTERM, SIGINT)
    - Graceful shutdown
    """

    def __init__(self, config_path: Path, log_file: Optional[Path] = None):
        self.config_path = config_path
        self.log_file = log_file
        self.logger = setup_logging(log_file)

        self.config: Optional[FireAlarmConfig] = None
        self.service: Optional[FireAlarmService] = None

        self._shutdown_requested = False

    def setup(self):
        """Load configuration and create the service."""
        self.logger.info("=" * 80)
        self.logger.info("🔥 Fire Alarm Client - Starting")
        self.logger.info("=" * 80)

        self.logger.info(f"📄 Loading configuration: {self.config_path}")
        self.config = FireAlarmConfig.from_yaml(self.config_path)
        self.logger.info(
            f"✅ Configuration loaded (broker={self.config.broker.broker}, "
            f"client_id={self.config.broker.client_id})"
        )

        for topic_filter in self.config.plan.filters():
            self.logger.info(f"  - Subscription: {topic_filter}")

        self.service = FireAlarmService(config=self.config)
        self.logger.info("✅ Service created")
        self.logger.info("=" * 80)

    def run(self):
        """
        Run the client.

        Blocks until shutdown is requested (via signal or exception).
        """
        if not self.service:
            raise RuntimeError("Service not initialized. Call setup() first.")

        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

        try:
            self.service.start()

            self.logger.info("✅ Service started")
            self.logger.info("Press Ctrl+C to stop")

            # Short waits keep the main thread responsive to signals
            while not self.service.wait(timeout=1.0):
                pass

        except KeyboardInterrupt:
            self.logger.info("⚠️  KeyboardInterrupt received")
            self.shutdown()

        except Exception as e:
            self.logger.error(f"❌ Service error: {e}", exc_info=True)
            self.shutdown()
            sys.exit(1)

    def shutdown(self):
        """Graceful shutdown of the service."""
        if self._shutdown_requested:
            self.logger.warning("⚠️  Shutdown already in progress")
            return

        self._shutdown_requested = True

        self.logger.info("=" * 80)
        self.logger.info("🛑 Shutting down fire alarm client")

        if self.service and self.service.is_running():
            try:
                self.service.stop()
                self.logger.info(f"✅ Service stopped ({self.service.get_stats()})")
            except Exception as e:
                self.logger.error(f"❌ Error stopping service: {e}")

        self.logger.info("✅ Shutdown complete")
        self.logger.info("=" * 80)

    def _signal_handler(self, signum, frame):
        signal_name = signal.Signals(signum).name
        self.logger.info(f"⚠️  Received signal {signal_name} ({signum})")
        self.shutdown()
        sys.exit(0)


# ─────────────────────────────────────────────────────────────────────────────
# CLI
# ─────────────────────────────────────────────────────────────────────────────

def parse_args(argv=None):
    """
    Parse command-line arguments.

    Returns:
        argparse.Namespace with parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="Fire Alarm Client - MQTT device monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start with default config
  python run_fire_alarm.py --config config/fire_alarm.yaml

  # Start without file logging (console only)
  python run_fire_alarm.py --config config/fire_alarm.yaml --no-log-file
        """
    )

    parser.add_argument(
        '--config',
        type=Path,
        required=True,
        help='Path to configuration YAML file'
    )

    parser.add_argument(
        '--log-file',
        type=Path,
        default=Path('logs/fire_alarm.log'),
        help='Path to log file (default: logs/fire_alarm.log)'
    )

    parser.add_argument(
        '--no-log-file',
        action='store_true',
        help='Disable file logging (console only)'
    )

    return parser.parse_args(argv)


def main():
    """Main entry point."""
    args = parse_args()

    log_file = None if args.no_log_file else args.log_file

    if not args.config.exists():
        print(f"❌ Error: Configuration file not found: {args.config}", file=sys.stderr)
        sys.exit(1)

    app = FireAlarmApp(
        config_path=args.config,
        log_file=log_file
    )

    try:
        app.setup()
        app.run()
    except Exception as e:
        print(f"❌ Fatal error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
