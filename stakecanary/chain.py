"""
web3-backed chain access: historical log reads (archive node when configured)
and view calls against the StakingRegistry and Rollup contracts.
"""

from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from eth_abi import decode
from eth_utils import to_checksum_address
from web3 import Web3
from web3.exceptions import ContractLogicError

from .abi import ROLLUP_ABI, STAKING_REGISTRY_ABI, EventDescriptor
from .config import NetworkConfig
from .errors import ConfigError, StakeCanaryError, UpstreamUnavailable
from .log import get_logger
from .models import AttesterView, ExitInfo, OnChainStatus

logger = get_logger("chain")

IndexedValue = Optional[Union[int, str]]


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return bytes.fromhex(str(value).removeprefix("0x"))


def _to_hex(value: Any) -> str:
    return "0x" + _to_bytes(value).hex()


def encode_topic(value: Union[int, str]) -> str:
    """32-byte topic encoding for uint256 and address indexed params."""
    if isinstance(value, int):
        return "0x" + value.to_bytes(32, "big").hex()
    return "0x" + _to_bytes(value).rjust(32, b"\x00").hex()


def decode_topic(abi_type: str, topic: Any) -> Any:
    raw = _to_bytes(topic)
    if abi_type == "address":
        return to_checksum_address("0x" + raw[-20:].hex())
    if abi_type.startswith("uint"):
        return int.from_bytes(raw, "big")
    return "0x" + raw.hex()


def decode_log(event: EventDescriptor, log: Dict[str, Any]) -> Dict[str, Any]:
    topics = log["topics"]
    args: Dict[str, Any] = {}
    for (name, abi_type), topic in zip(event.indexed, topics[1:]):
        args[name] = decode_topic(abi_type, topic)
    values = decode(event.data_types, _to_bytes(log["data"]))
    for (name, abi_type), value in zip(event.data, values):
        args[name] = to_checksum_address(value) if abi_type == "address" else value
    return {
        "args": args,
        "blockNumber": int(log["blockNumber"]),
        "blockHash": _to_hex(log["blockHash"]),
        "logIndex": int(log.get("logIndex", 0)),
    }


class ChainClient:
    def __init__(self, config: NetworkConfig, w3: Optional[Web3] = None, archive_w3: Optional[Web3] = None):
        self.config = config
        self.network = config.name
        self.w3 = w3 or Web3(Web3.HTTPProvider(config.rpc_url))
        if archive_w3 is not None:
            self.archive_w3 = archive_w3
        elif config.archive_rpc_url:
            self.archive_w3 = Web3(Web3.HTTPProvider(config.archive_rpc_url))
        else:
            self.archive_w3 = self.w3

        self.registry = self.w3.eth.contract(address=config.staking_registry_address, abi=STAKING_REGISTRY_ABI)
        self.rollup = None
        if config.rollup_address:
            self.use_rollup(config.rollup_address)

    def use_rollup(self, address: str):
        """Points rollup view calls at `address`, e.g. once it has been discovered from logs."""
        self.rollup = self.w3.eth.contract(address=to_checksum_address(address), abi=ROLLUP_ABI)

    def _call(self, what: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except StakeCanaryError:
            raise
        except Exception as e:
            raise UpstreamUnavailable(f"[{self.network}] {what} failed: {e}") from e

    def verify_connection(self):
        """Fails fast on an unreachable RPC or one pointed at the wrong chain."""
        if not self._call("is_connected", self.w3.is_connected):
            raise UpstreamUnavailable(f"[{self.network}] Could not connect to RPC {self.config.rpc_url}")
        chain_id = self._call("eth_chainId", lambda: self.w3.eth.chain_id)
        if chain_id != self.config.chain_id:
            raise ConfigError(f"[{self.network}] Chain ID mismatch: expected {self.config.chain_id}, got {chain_id}")
        if self.archive_w3 is self.w3:
            logger.warning(f"[{self.network}] No ARCHIVE_RPC_URL configured; historical log scans use RPC_URL")

    # --- Log reader ---

    def get_block_number(self) -> int:
        return int(self._call("eth_blockNumber", lambda: self.archive_w3.eth.block_number))

    def get_block_timestamp(self, block_number: int) -> int:
        block = self._call(f"eth_getBlockByNumber({block_number})", lambda: self.archive_w3.eth.get_block(block_number))
        return int(block["timestamp"])

    def get_logs(self, address: str, event: EventDescriptor, indexed_filter: Sequence[IndexedValue],
                 from_block: int, to_block: int) -> List[Dict[str, Any]]:
        """
        Fetches and decodes `event` logs emitted by `address` in [from_block, to_block].
        `indexed_filter` lines up with the event's indexed params; None matches anything.
        """
        topics: List[Optional[str]] = [event.topic] + [
            encode_topic(v) if v is not None else None for v in indexed_filter
        ]
        while topics and topics[-1] is None:
            topics.pop()

        params = {
            "address": to_checksum_address(address),
            "topics": topics,
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        try:
            raw_logs = self.archive_w3.eth.get_logs(params)
        except Exception as e:
            raise UpstreamUnavailable(
                f"[{self.network}] eth_getLogs {from_block}-{to_block} failed: {e}",
                from_block=from_block, to_block=to_block,
            ) from e
        return [decode_log(event, log) for log in raw_logs]

    # --- On-chain state reader ---

    def find_provider_id(self, admin_address: str) -> Optional[int]:
        """Walks registered provider configurations until one matches the admin address."""
        admin = to_checksum_address(admin_address)
        next_id = self._call("nextProviderIdentifier", self.registry.functions.nextProviderIdentifier().call)
        for provider_id in range(next_id):
            provider_admin, _, _ = self._call(
                f"providerConfigurations({provider_id})",
                self.registry.functions.providerConfigurations(provider_id).call,
            )
            if to_checksum_address(provider_admin) == admin:
                return provider_id
        return None

    def get_provider_queue(self, provider_id: int) -> List[str]:
        first = self._call("getFirstIndexInQueue", self.registry.functions.getFirstIndexInQueue(provider_id).call)
        last = self._call("getLastIndexInQueue", self.registry.functions.getLastIndexInQueue(provider_id).call)

        queue: List[str] = []
        for i in range(first, last):
            entry = self._call(
                f"getValueAtIndexInQueue({provider_id}, {i})",
                self.registry.functions.getValueAtIndexInQueue(provider_id, i).call,
            )
            queue.append(to_checksum_address(entry[0]))
        return queue

    def _require_rollup(self):
        if self.rollup is None:
            raise ConfigError(f"[{self.network}] ROLLUP_ADDRESS is not configured")
        return self.rollup

    def get_all_queued_attesters(self) -> List[str]:
        rollup = self._require_rollup()
        length = self._call("getEntryQueueLength", rollup.functions.getEntryQueueLength().call)
        attesters: List[str] = []
        for i in range(length):
            entry = self._call(f"getEntryQueueAt({i})", rollup.functions.getEntryQueueAt(i).call)
            attesters.append(to_checksum_address(entry[0]))
        return attesters

    def get_attester_view(self, address: str) -> Optional[AttesterView]:
        """Returns None when the rollup reverts for an unknown attester."""
        rollup = self._require_rollup()
        try:
            view = rollup.functions.getAttesterView(to_checksum_address(address)).call()
        except ContractLogicError as e:
            logger.debug(f"[{self.network}] getAttesterView({address}) reverted: {e}")
            return None
        except Exception as e:
            raise UpstreamUnavailable(f"[{self.network}] getAttesterView({address}) failed: {e}") from e

        status_code, balance, exit_data, attester_config = view
        try:
            status = OnChainStatus(status_code)
        except ValueError:
            logger.warning(f"[{self.network}] Unknown on-chain status {status_code} for {address}")
            status = OnChainStatus.NONE
        return AttesterView(
            status=status,
            effective_balance=balance,
            exit=ExitInfo(
                withdrawal_id=exit_data[0],
                amount=exit_data[1],
                exitable_at=exit_data[2],
                recipient_or_withdrawer=to_checksum_address(exit_data[3]),
                is_recipient=exit_data[4],
                exists=exit_data[5],
            ),
            withdrawer=to_checksum_address(attester_config[1]),
        )

    def get_epoch_duration(self) -> int:
        rollup = self._require_rollup()
        return int(self._call("getEpochDuration", rollup.functions.getEpochDuration().call))

    def get_entry_queue_flush_size(self) -> int:
        rollup = self._require_rollup()
        return int(self._call("getEntryQueueFlushSize", rollup.functions.getEntryQueueFlushSize().call))

    def get_balance(self, address: str) -> int:
        """ETH balance in wei at the latest block."""
        checksum = to_checksum_address(address)
        return int(self._call(f"eth_getBalance({checksum})", lambda: self.w3.eth.get_balance(checksum)))
