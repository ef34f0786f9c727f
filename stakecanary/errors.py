"""Exception taxonomy shared by the reconciler, cache and chain client."""

from typing import Optional


class StakeCanaryError(Exception):
    pass


class ConfigError(StakeCanaryError):
    """Missing or invalid configuration detected at startup."""


class UpstreamUnavailable(StakeCanaryError):
    """
    RPC/transport failure while fetching logs or on-chain state.
    Retrying the identical range is always safe; nothing was applied.
    """

    def __init__(self, message: str, from_block: Optional[int] = None, to_block: Optional[int] = None):
        super().__init__(message)
        self.from_block = from_block
        self.to_block = to_block


class CacheCorrupt(StakeCanaryError):
    """Persisted snapshot failed JSON or schema validation."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Coinbase cache at {path} is corrupt: {reason}")
        self.path = path
        self.reason = reason


class ReconciliationConflict(StakeCanaryError):
    """Two different non-zero coinbases were observed for one attester."""

    def __init__(self, attester: str, existing_coinbase: str, existing_block: int,
                 incoming_coinbase: str, incoming_block: int):
        self.attester = attester
        self.existing_coinbase = existing_coinbase
        self.existing_block = existing_block
        self.incoming_coinbase = incoming_coinbase
        self.incoming_block = incoming_block
        super().__init__(
            f"Coinbase conflict for attester {attester}: "
            f"cached {existing_coinbase} (block {existing_block}) vs "
            f"scraped {incoming_coinbase} (block {incoming_block}). "
            "Coinbase addresses must never change; investigate manually before proceeding."
        )
