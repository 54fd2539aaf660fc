"""
Main orchestrator for OU Group Sync.

This module contains the synchronization loop that reads organizational units
from the directory, plans one dynamic device group per unit and creates the
groups that do not exist yet, plus the command line entry point.
"""

import sys
import json
import hashlib
import logging
from datetime import datetime
from typing import Dict, Any, Optional, Set

from ou_group_sync.config import SyncSettings, load_settings
from ou_group_sync.credentials import create_secret_provider
from ou_group_sync.directory import DirectoryClient
from ou_group_sync.errors import (
    ConfigurationError,
    CreationFailed,
    QueryFailed,
    SetupError,
    SourceUnavailable,
)
from ou_group_sync.graph_client import GraphClient
from ou_group_sync.logging_setup import SyncLog, setup_logging
from ou_group_sync.models import GroupSpec, OrganizationalUnit, SyncReport
from ou_group_sync.notifications import (
    format_runtime,
    send_failure_notification,
    send_run_summary,
    send_test_notification,
)
from ou_group_sync.planner import SyncPlanner
from ou_group_sync.writer import GroupWriter

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_PARTIAL_FAILURE = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_SETUP_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4


def nickname_suffix(unit: OrganizationalUnit) -> str:
    """Short stable disambiguator derived from the unit's distinguished name."""
    return hashlib.sha1(unit.distinguished_name.lower().encode('utf-8')).hexdigest()[:6]


class SyncOrchestrator:
    """
    Drives one sync pass: source reader, planner, existence check, writer.

    Units are processed one at a time. Lookup and creation failures are
    recorded against the unit and never stop the run.
    """

    def __init__(self, directory, planner: SyncPlanner, writer: GroupWriter,
                 log: Optional[SyncLog] = None, dry_run: bool = False):
        self.directory = directory
        self.planner = planner
        self.writer = writer
        self.log = log or SyncLog(logger)
        self.dry_run = dry_run

    def run(self) -> SyncReport:
        """
        Run a single sync pass.

        Returns:
            Report of what was created, skipped and failed

        Raises:
            SourceUnavailable: If organizational units cannot be enumerated
        """
        report = SyncReport(dry_run=self.dry_run, start_time=datetime.now())

        units = self.directory.list_organizational_units()
        report.units_found = len(units)
        self.log.info(f"Retrieved {len(units)} organizational units from directory")

        handled_names: Set[str] = set()
        nicknames: Dict[str, str] = {}

        for unit in units:
            self._process_unit(unit, report, handled_names, nicknames)

        report.end_time = datetime.now()
        self._log_summary(report)
        return report

    def _process_unit(self, unit: OrganizationalUnit, report: SyncReport,
                      handled_names: Set[str], nicknames: Dict[str, str]):
        spec = self.planner.plan(unit)

        if spec.display_name in handled_names:
            self.log.info(f"Skipping {unit.distinguished_name}: group '{spec.display_name}' "
                          f"already handled in this run")
            report.skipped_existing += 1
            return

        try:
            exists = self.planner.exists(spec.display_name)
        except QueryFailed as e:
            self.log.warning(f"Skipping {unit.distinguished_name}: {e}")
            report.query_failed += 1
            report.errors.append(str(e))
            return

        if exists:
            self.log.info(f"Group '{spec.display_name}' already exists, skipping")
            report.skipped_existing += 1
            handled_names.add(spec.display_name)
            nicknames.setdefault(spec.mail_nickname, spec.display_name)
            return

        spec = self._unique_nickname(spec, unit, report, nicknames)

        if self.dry_run:
            self.log.info(f"Dry run: would create group '{spec.display_name}' "
                          f"with rule {spec.membership_rule}")
            report.planned += 1
            handled_names.add(spec.display_name)
            return

        try:
            group_id = self.writer.create_group(spec)
        except CreationFailed as e:
            self.log.error(f"CreationFailed for {unit.distinguished_name}: {e}")
            report.creation_failed += 1
            report.errors.append(str(e))
            return

        self.log.info(f"Created group '{spec.display_name}' ({group_id})")
        report.created += 1
        report.created_group_ids.append(group_id)
        handled_names.add(spec.display_name)

    def _unique_nickname(self, spec: GroupSpec, unit: OrganizationalUnit, report: SyncReport,
                         nicknames: Dict[str, str]) -> GroupSpec:
        owner = nicknames.get(spec.mail_nickname)
        if owner is not None and owner != spec.display_name:
            nickname = f"{spec.mail_nickname}-{nickname_suffix(unit)}"
            self.log.warning(f"Mail nickname '{spec.mail_nickname}' already used by '{owner}', "
                             f"using '{nickname}' for '{spec.display_name}'")
            report.nickname_collisions += 1
            spec = spec.with_mail_nickname(nickname)
        nicknames[spec.mail_nickname] = spec.display_name
        return spec

    def _log_summary(self, report: SyncReport):
        self.log.info("=== Sync Summary ===")
        self.log.info(f"Total runtime: {format_runtime(report.runtime_seconds)}")
        self.log.info(f"Organizational units found: {report.units_found}")
        if report.dry_run:
            self.log.info(f"Groups that would be created: {report.planned}")
        else:
            self.log.info(f"Groups created: {report.created}")
        self.log.info(f"Groups already present: {report.skipped_existing}")
        self.log.info(f"Lookup failures: {report.query_failed}")
        self.log.info(f"Creation failures: {report.creation_failed}")
        if report.has_failures:
            self.log.warning(f"Sync run complete with {report.query_failed + report.creation_failed} "
                             f"failed organizational units")
        else:
            self.log.info("Sync run complete")


class SyncApplication:
    """
    Wires configuration, logging, secret provider and clients around the
    orchestrator and maps outcomes to exit codes.
    """

    def __init__(self, config_path: Optional[str] = None, dry_run: bool = False):
        self.config_path = config_path
        self.dry_run = dry_run
        self.settings: Optional[SyncSettings] = None
        self.directory: Optional[DirectoryClient] = None
        self.graph: Optional[GraphClient] = None
        self.report: Optional[SyncReport] = None

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 success, 1 per-unit failures, 2 configuration error,
            3 setup error or source unavailable, 4 unexpected error)
        """
        try:
            self.settings = load_settings(self.config_path)
            setup_logging(dict(self.settings.logging))

            logger.info("Starting OU Group Sync" + (" (dry run)" if self.dry_run else ""))

            self._connect()

            log = SyncLog(logger)
            orchestrator = SyncOrchestrator(
                directory=self.directory,
                planner=SyncPlanner(self.settings.groups, self.graph, log),
                writer=GroupWriter(self.graph, log),
                log=log,
                dry_run=self.dry_run
            )
            self.report = orchestrator.run()

            self._notify(lambda config: send_run_summary(self.report, config))

            if self.report.has_failures:
                return EXIT_PARTIAL_FAILURE
            return EXIT_SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except SetupError as e:
            logger.error(f"Setup error: {e}")
            self._notify(lambda config: send_failure_notification("Setup Failed", str(e), config))
            return EXIT_SETUP_ERROR
        except SourceUnavailable as e:
            logger.error(f"Organizational units unavailable: {e}")
            self._notify(lambda config: send_failure_notification(
                "Directory Query Failed", str(e), config,
                {'Component': 'Directory', 'Impact': 'No organizational units processed'}
            ))
            return EXIT_SETUP_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._notify(lambda config: send_failure_notification("Sync Failed", f"Unexpected error: {e}", config))
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _create_clients(self):
        log = SyncLog(logger)
        self.directory = DirectoryClient(self.settings.directory, log)
        self.graph = GraphClient(
            self.settings.identity_provider,
            create_secret_provider(self.settings.identity_provider),
            log
        )

    def _connect(self):
        """Connect to both services; any failure is fatal."""
        self._create_clients()
        self.directory.connect()
        self.graph.authenticate()

    def _notify(self, send):
        if not self.settings:
            return
        try:
            send(self.settings.notifications)
        except Exception as e:
            logger.error(f"Failed to send notification: {e}")

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration, directory bind and token acquisition.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self.settings = load_settings(self.config_path)
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            self._create_clients()
        except SetupError as e:
            health_status['checks']['identity_provider'] = {
                'status': 'fail',
                'message': f'Client setup failed: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            self.directory.connect()
            health_status['checks']['directory'] = {
                'status': 'pass',
                'message': 'Directory bind successful'
            }
        except SetupError as e:
            health_status['checks']['directory'] = {
                'status': 'fail',
                'message': f'Directory connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        try:
            self.graph.authenticate()
            health_status['checks']['identity_provider'] = {
                'status': 'pass',
                'message': 'Access token obtained'
            }
        except SetupError as e:
            health_status['checks']['identity_provider'] = {
                'status': 'fail',
                'message': f'Token acquisition failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        self._cleanup()
        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.directory:
            self.directory.disconnect()
        if self.graph:
            self.graph.close_connection()


def main():
    """Main entry point for the application."""
    import argparse

    parser = argparse.ArgumentParser(
        description='Create dynamic device groups in Entra ID for directory organizational units'
    )
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--dry-run', action='store_true',
                        help='Plan groups and check for existing ones without creating anything')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')

    args = parser.parse_args()

    application = SyncApplication(config_path=args.config, dry_run=args.dry_run)

    if args.health_check:
        health_status = application.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        try:
            settings = load_settings(args.config)
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(EXIT_CONFIGURATION_ERROR)

        if send_test_notification(settings.notifications):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    else:
        sys.exit(application.run())


if __name__ == "__main__":
    main()
