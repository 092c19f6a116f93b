"""
Main orchestrator for Gitea LDAP Sync.

Loads and validates the configuration, then runs sync cycles either once or on
the configured schedule. A cycle reads the directory snapshot from LDAP and
hands it to the reconciler together with the Gitea API client.
"""

import sys
import json
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, Optional

from gitea_ldap_sync import __version__
from gitea_ldap_sync.api.base import PlatformAPIError
from gitea_ldap_sync.api.gitea import GiteaAPI
from gitea_ldap_sync.config import load_config, ConfigurationError
from gitea_ldap_sync.directory import DirectoryBuilder, DirectoryDataError
from gitea_ldap_sync.exclusion import ExclusionFilter
from gitea_ldap_sync.ldap_client import LDAPClient, LDAPConnectionError, LDAPQueryError
from gitea_ldap_sync.logging_setup import setup_logging
from gitea_ldap_sync.reconciler import Reconciler
from gitea_ldap_sync.scheduler import SyncScheduler, parse_schedule

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CYCLE_FAILED = 1
EXIT_CONFIG_ERROR = 2


class SyncOrchestrator:
    """
    Drives sync cycles.

    Failures inside a cycle are logged and counted; they never stop the
    scheduler. Configuration problems are reported before any network call.
    """

    def __init__(self, config_path: Optional[str] = None, api_factory=GiteaAPI,
                 builder_factory=DirectoryBuilder):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            api_factory: Callable building the platform API from the gitea section
            builder_factory: Callable building the directory reader from the ldap section
        """
        self.config = None
        self.config_path = config_path
        self.api_factory = api_factory
        self.builder_factory = builder_factory
        self.exclusion = None
        self.api = None

        self.cycle_stats = {
            'cycles_run': 0,
            'cycles_failed': 0,
            'last_start_time': None,
            'last_runtime_seconds': 0,
            'last_result': None,
        }

    def initialize(self):
        """
        Load configuration, configure logging and validate everything that can
        be checked offline.

        Raises:
            ConfigurationError: If anything is missing or invalid
        """
        self.config = load_config(self.config_path)
        setup_logging(self.config.get('logging'))

        self.exclusion = ExclusionFilter(self.config['ldap'])

        try:
            self.api = self.api_factory(self.config['gitea'])
        except PlatformAPIError as e:
            raise ConfigurationError(f"Invalid Gitea settings: {e}")

        if self.config.get('cron_enabled'):
            try:
                parse_schedule(self.config['cron_timer'])
            except ValueError as e:
                raise ConfigurationError(f"Invalid cron_timer '{self.config['cron_timer']}': {e}")

        logger.info(f"Gitea LDAP Sync {__version__} initialized")

    def run_cycle(self) -> bool:
        """
        Run one complete sync cycle.

        Returns:
            True if the cycle succeeded
        """
        start_time = datetime.now()
        self.cycle_stats['cycles_run'] += 1
        self.cycle_stats['last_start_time'] = start_time
        logger.info("Starting sync cycle")

        try:
            snapshot = self.builder_factory(self.config['ldap']).build()
            stats = Reconciler(self.config, self.api, self.exclusion).run(snapshot)
        except (LDAPConnectionError, LDAPQueryError) as e:
            return self._cycle_failed(start_time, f"LDAP error: {e}")
        except DirectoryDataError as e:
            return self._cycle_failed(start_time, f"Directory data error: {e}")
        except PlatformAPIError as e:
            return self._cycle_failed(start_time, f"Gitea API error: {e}")
        except Exception as e:
            return self._cycle_failed(start_time, f"Unexpected error: {e}")

        runtime = (datetime.now() - start_time).total_seconds()
        self.cycle_stats['last_runtime_seconds'] = runtime
        self.cycle_stats['last_result'] = 'success'

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {runtime:.2f} seconds")
        logger.info(f"Changes: {stats.summary()}")
        logger.info("Sync cycle completed successfully")
        return True

    def _cycle_failed(self, start_time: datetime, message: str) -> bool:
        self.cycle_stats['cycles_failed'] += 1
        self.cycle_stats['last_runtime_seconds'] = (datetime.now() - start_time).total_seconds()
        self.cycle_stats['last_result'] = 'failed'
        logger.error(f"Sync cycle failed: {message}", exc_info=True)
        return False

    def run(self, once: bool = False) -> int:
        """
        Run the application.

        Args:
            once: Run a single cycle even when the schedule is enabled

        Returns:
            Exit code (0 ok, 1 failed one-shot cycle, 2 configuration error)
        """
        try:
            self.initialize()
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR

        if once or not self.config.get('cron_enabled'):
            return EXIT_OK if self.run_cycle() else EXIT_CYCLE_FAILED

        scheduler = SyncScheduler(
            self.run_cycle,
            self.config['cron_timer'],
            shutdown_timeout=self.config.get('shutdown_timeout', 60),
        )
        scheduler.run_forever()
        logger.info(f"Exiting after {self.cycle_stats['cycles_run']} cycles "
                    f"({self.cycle_stats['cycles_failed']} failed)")
        return EXIT_OK

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'version': __version__,
            'checks': {}
        }
        checks = health_status['checks']

        try:
            self.initialize()
            checks['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            checks['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            with LDAPClient(self.config['ldap']):
                pass
            checks['ldap'] = {
                'status': 'pass',
                'message': 'LDAP bind successful'
            }
        except LDAPConnectionError as e:
            checks['ldap'] = {
                'status': 'fail',
                'message': f'LDAP connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        try:
            version = self.api.get_version()
            login = self.api.current_user()
            checks['gitea'] = {
                'status': 'pass',
                'message': f'Gitea {version} reachable, authenticated as {login}'
            }
        except PlatformAPIError as e:
            checks['gitea'] = {
                'status': 'fail',
                'message': f'Gitea check failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        return health_status


def main(argv=None):
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='Synchronize LDAP users and groups into Gitea')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--once', action='store_true',
                        help='Run a single sync cycle and exit')
    parser.add_argument('--health-check', action='store_true',
                        help='Check configuration, LDAP and Gitea connectivity instead of syncing')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    args = parser.parse_args(argv)

    orchestrator = SyncOrchestrator(config_path=args.config)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    sys.exit(orchestrator.run(once=args.once))


if __name__ == "__main__":
    main()
