#!/usr/bin/env python3
"""
stakecanary - Aztec staking provider monitor.

Usage:
  export RPC_URL="http://127.0.0.1:8545"
  export TARGETS="0x123...,0x456..."
  export PROVIDER_ID=3
  python -m stakecanary                     # Real-time monitoring
  python -m stakecanary -scan incremental   # Update the coinbase cache and exit
  python -m stakecanary -scan full          # Rescan from the registry deployment block
  python -m stakecanary -status             # Print on-chain status per attester
"""

import argparse
import logging
import sys
from typing import List, Optional

from .errors import ReconciliationConflict, StakeCanaryError
from .log import setup_logging
from .monitor import StakeCanary


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="StakeCanary Monitor")
    parser.add_argument("-scan", choices=["incremental", "full"], default=None,
                        help="Scrape coinbase mappings once and exit")
    parser.add_argument("-status", action="store_true", help="Print attester on-chain status and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logger = setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        canary = StakeCanary.from_env()
        if args.scan:
            canary.run_scan(args.scan)
        elif args.status:
            canary.report_status()
        else:
            canary.run_realtime()
            if canary.failed_networks:
                return 1
    except ReconciliationConflict:
        # Already logged with both conflicting values by the reconciler
        return 2
    except StakeCanaryError as e:
        logger.error(str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
