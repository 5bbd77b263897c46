#!/usr/bin/env python3
"""
CLI tool for the CDC change applier

Runs the change application pipeline, or validates a configuration file
without touching the warehouse.
"""

import argparse
import json
import signal
import sys
from typing import Optional, List

from . import __version__
from .applier_service import ApplierService
from .exceptions import ApplierException, ConfigurationError
from .models.config import RunDescriptor, MINIMUM_UPDATE_FREQUENCY_SECONDS
from .services import ConfigService
from .utils.logger import LOG_LEVELS, setup_logging, get_logger


class ChangeApplierCLI:
    """Command line front end for ApplierService"""

    def __init__(self, applier_service: Optional[ApplierService] = None):
        self.logger = get_logger()
        self.applier_service = applier_service or ApplierService()

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown"""
        def signal_handler(signum, frame):
            signal_name = signal.Signals(signum).name
            self.logger.info("Received signal, initiating graceful shutdown", signal=signal_name)
            self.applier_service.request_shutdown()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def run(self, config_path: str, input_path: Optional[str] = None) -> None:
        """Run the pipeline until SIGINT or SIGTERM"""
        self.applier_service.initialize(config_path)
        self._setup_signal_handlers()
        self.applier_service.run(input_path=input_path)

    def validate(self, config_path: str) -> dict:
        """Validate configuration and describe what a run would use"""
        config = ConfigService().load_config(config_path)
        descriptor = RunDescriptor.create(config, __version__)
        example = config.binding_for('<table>')
        return {
            'valid': True,
            'channel_kind': config.channel_kind,
            'channels': config.input_channels,
            'use_single_topic': config.use_single_topic,
            'changelog_table': example.qualified_changelog_table,
            'replica_table': example.qualified_replica_table,
            'update_frequency_secs': config.update_frequency_secs,
            'minimum_update_frequency_secs': MINIMUM_UPDATE_FREQUENCY_SECONDS,
            'warehouse': config.warehouse.type,
            'labels': descriptor.labels_dict(),
        }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='cdcapplier', description='CDC change applier CLI')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    run_parser = subparsers.add_parser('run', help='Run the change application pipeline')
    run_parser.add_argument('config', help='Path to configuration file')
    run_parser.add_argument('--input', help="Newline-delimited JSON messages to feed ('-' for stdin)")
    run_parser.add_argument('--log-level', default='INFO', type=str.upper, choices=LOG_LEVELS, help='Logging level')
    run_parser.add_argument('--log-format', default='json', choices=['json', 'console'], help='Logging format')

    validate_parser = subparsers.add_parser('validate', help='Validate a configuration file')
    validate_parser.add_argument('config', help='Path to configuration file')
    validate_parser.add_argument('--log-level', default='WARNING', type=str.upper, choices=LOG_LEVELS, help='Logging level')
    validate_parser.add_argument('--log-format', default='console', choices=['json', 'console'], help='Logging format')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI function"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    setup_logging(level=args.log_level, format_type=args.log_format)
    logger = get_logger()

    try:
        if args.command == 'run':
            ChangeApplierCLI().run(args.config, input_path=args.input)
        elif args.command == 'validate':
            summary = ChangeApplierCLI().validate(args.config)
            print(json.dumps(summary, indent=2))
    except ConfigurationError as e:
        logger.error("Invalid configuration", error=str(e))
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("Application interrupted by user")
        return 0
    except ApplierException as e:
        logger.error("Applier error", error=str(e))
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
