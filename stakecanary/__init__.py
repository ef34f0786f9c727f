"""
stakecanary - Aztec staking provider coinbase & attester lifecycle monitor.
"""

__version__ = "0.1.0"
