#!/usr/bin/env python3
"""
PLC Telemetry Collector - Main Entry Point

Usage:
    plc-collector                      # Use default config.yaml
    plc-collector --config my.yaml     # Use custom config file
    plc-collector --dry-run            # Validate, print config and exit

The collector will:
1. Load and validate configuration from a YAML file
2. Poll all configured PLCs over Modbus TCP
3. Calibrate readings, store raw samples and raise debounced alarms
4. Aggregate history windows and clean up old raw samples
"""

import argparse
import asyncio
import sys

from .common.config import CollectorConfig
from .common.exceptions import ConfigError
from .common.logging_setup import get_service_logger, set_log_level
from .services.calibration import CalibrationEngine
from .services.collector import CollectorService
from .services.config import load_config_file

logger = get_service_logger("main")


def print_config_summary(config: CollectorConfig) -> None:
    """Print a summary of the configuration."""
    print("\n" + "=" * 60)
    print("  PLC TELEMETRY COLLECTOR")
    print("=" * 60)

    print(f"\n  Site: {config.site_name or 'Unknown'}")
    print(f"  Database: {config.storage.db_path}")

    print(f"\n  Polling:")
    print(f"    - Interval: {config.poll.interval_s}s")
    print(f"    - Default timeout: {config.poll.default_timeout_s}s")

    print(f"\n  Devices:")
    for device in config.devices:
        print(
            f"    - {device.name} ({device.host}:{device.port}, unit {device.unit_id}): "
            f"{len(device.points)} points, registers "
            f"{device.block_start}-{device.block_start + device.block_count - 1}"
        )

    calibration = config.calibration
    print(f"\n  Calibration: {len(calibration.rules)} sensor types, {len(calibration.mappings)} sensors")

    alarms = config.alarms
    if alarms.enabled:
        print(
            f"  Alarms: activate after {alarms.activation_delay_s:g}s, "
            f"resolve after {alarms.resolution_delay_s:g}s"
        )
    else:
        print("  Alarms: Disabled")

    history = config.history
    print(
        f"  History: {history.window_minutes} min windows, "
        f"cleanup at {history.cleanup_time.strftime('%H:%M')} {history.timezone}"
    )

    print("=" * 60 + "\n")


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="PLC Telemetry Collector"
    )
    parser.add_argument(
        "--config", "-c",
        type=str,
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print configuration and exit without starting the collector"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (debug) logging"
    )

    args = parser.parse_args()

    # Load configuration (formulas are compiled here too)
    try:
        config = load_config_file(args.config)
        CalibrationEngine(config.calibration)
    except ConfigError as e:
        logger.error(e.message)
        for error in e.errors:
            logger.error(f"Configuration error: {error}")
        sys.exit(1)

    # Set log level
    set_log_level("DEBUG" if args.verbose else config.log_level)

    # Print summary
    print_config_summary(config)

    # Dry run mode
    if args.dry_run:
        print("Dry run mode - exiting without starting collector")
        sys.exit(0)

    service = CollectorService(config)
    logger.info("Starting collector...")
    print("Press Ctrl+C to stop\n")

    try:
        asyncio.run(service.run())
    except KeyboardInterrupt:
        print("\nStopped by user")


if __name__ == "__main__":
    main()
