"""Command line entry point: run the harness once and print the JSON report.

Exit codes: 0 success, 1 invariant violated, 2 harness failure,
3 provisioning or configuration error.
"""

import argparse
import sys
from typing import List, Optional

import structlog

from config import get_settings_for_environment
from errors import ConfigurationError, ProvisioningError
from logging_config import configure_logging
from models import RunStatus
from services import get_harness_coordinator

logger = structlog.get_logger()

EXIT_CODES = {
    RunStatus.success: 0,
    RunStatus.invariant_violated: 1,
    RunStatus.failed: 2,
}
EXIT_SETUP_ERROR = 3


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Concurrent ledger isolation harness")
    parser.add_argument("--env", default="production",
                        help="settings profile: development, production or testing")
    parser.add_argument("-a", "--accounts", type=int, dest="n_accounts", help="number of accounts")
    parser.add_argument("-w", "--workers", type=int, dest="transfer_connections",
                        help="number of transfer workers")
    parser.add_argument("-n", "--iterations", type=int, dest="n_iterations",
                        help="iterations per worker")
    parser.add_argument("--initial-amount", type=int, dest="initial_amount")
    parser.add_argument("--pool-size", type=int, dest="pool_size")
    parser.add_argument("--poll-interval", type=float, dest="poll_interval")
    parser.add_argument("-c", "--database", dest="database_path", help="SQLite ledger file")
    parser.add_argument("--backend", dest="ledger_backend", choices=["sqlite", "memory"])
    parser.add_argument("--seed", type=int)
    parser.add_argument("-i", "--init", action="store_true",
                        help="only provision the accounts, then exit")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    overrides = {
        key: value for key, value in vars(args).items()
        if key not in ("env", "init") and value is not None
    }
    settings = get_settings_for_environment(args.env).copy(update=overrides)
    configure_logging(settings)

    try:
        coordinator = get_harness_coordinator(settings)
        if args.init:
            coordinator.provision()
            print(f"{settings.n_accounts} accounts inserted")
            return 0
        report = coordinator.run()
    except (ConfigurationError, ProvisioningError) as e:
        logger.error("Harness setup failed", error=str(e))
        return EXIT_SETUP_ERROR

    print(report.json())
    return EXIT_CODES[report.status]


if __name__ == "__main__":
    sys.exit(main())
