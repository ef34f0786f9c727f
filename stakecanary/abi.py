"""
Minimal ABIs and event descriptors for the StakingRegistry and Rollup contracts.
"""

from dataclasses import dataclass
from typing import List, Tuple

from web3 import Web3

_G1 = {"components": [{"internalType": "uint256", "name": "x", "type": "uint256"}, {"internalType": "uint256", "name": "y", "type": "uint256"}], "internalType": "struct G1Point", "type": "tuple"}
_G2 = {"components": [{"internalType": "uint256", "name": "x0", "type": "uint256"}, {"internalType": "uint256", "name": "x1", "type": "uint256"}, {"internalType": "uint256", "name": "y0", "type": "uint256"}, {"internalType": "uint256", "name": "y1", "type": "uint256"}], "internalType": "struct G2Point", "type": "tuple"}

STAKING_REGISTRY_ABI = [
    {"inputs": [{"internalType": "uint256", "name": "_providerIdentifier", "type": "uint256"}], "name": "getFirstIndexInQueue", "outputs": [{"internalType": "uint128", "name": "", "type": "uint128"}], "stateMutability": "view", "type": "function"},
    {"inputs": [{"internalType": "uint256", "name": "_providerIdentifier", "type": "uint256"}], "name": "getLastIndexInQueue", "outputs": [{"internalType": "uint128", "name": "", "type": "uint128"}], "stateMutability": "view", "type": "function"},
    {"inputs": [{"internalType": "uint256", "name": "_providerIdentifier", "type": "uint256"}, {"internalType": "uint128", "name": "_index", "type": "uint128"}], "name": "getValueAtIndexInQueue", "outputs": [{"components": [{"internalType": "address", "name": "attester", "type": "address"}, dict(_G1, name="publicKeyG1"), dict(_G2, name="publicKeyG2"), dict(_G1, name="proofOfPossession")], "internalType": "struct IStakingRegistry.KeyStore", "name": "", "type": "tuple"}], "stateMutability": "view", "type": "function"},
    {"inputs": [{"internalType": "uint256", "name": "providerIdentifier", "type": "uint256"}], "name": "providerConfigurations", "outputs": [{"internalType": "address", "name": "providerAdmin", "type": "address"}, {"internalType": "uint16", "name": "providerTakeRate", "type": "uint16"}, {"internalType": "address", "name": "providerRewardsRecipient", "type": "address"}], "stateMutability": "view", "type": "function"},
    {"inputs": [], "name": "nextProviderIdentifier", "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}], "stateMutability": "view", "type": "function"},
]

ROLLUP_ABI = [
    {"inputs": [{"internalType": "address", "name": "_attester", "type": "address"}], "name": "getAttesterView", "outputs": [{"components": [{"internalType": "uint8", "name": "status", "type": "uint8"}, {"internalType": "uint256", "name": "effectiveBalance", "type": "uint256"}, {"components": [{"internalType": "uint256", "name": "withdrawalId", "type": "uint256"}, {"internalType": "uint256", "name": "amount", "type": "uint256"}, {"internalType": "uint256", "name": "exitableAt", "type": "uint256"}, {"internalType": "address", "name": "recipientOrWithdrawer", "type": "address"}, {"internalType": "bool", "name": "isRecipient", "type": "bool"}, {"internalType": "bool", "name": "exists", "type": "bool"}], "internalType": "struct Exit", "name": "exit", "type": "tuple"}, {"components": [dict(_G1, name="publicKey"), {"internalType": "address", "name": "withdrawer", "type": "address"}], "internalType": "struct AttesterConfig", "name": "config", "type": "tuple"}], "internalType": "struct AttesterView", "name": "", "type": "tuple"}], "stateMutability": "view", "type": "function"},
    {"inputs": [], "name": "getEntryQueueLength", "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}], "stateMutability": "view", "type": "function"},
    {"inputs": [], "name": "getEntryQueueFlushSize", "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}], "stateMutability": "view", "type": "function"},
    {"inputs": [], "name": "getEpochDuration", "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}], "stateMutability": "view", "type": "function"},
    {"inputs": [{"internalType": "uint256", "name": "_index", "type": "uint256"}], "name": "getEntryQueueAt", "outputs": [{"components": [{"internalType": "address", "name": "attester", "type": "address"}, {"internalType": "address", "name": "withdrawer", "type": "address"}, dict(_G1, name="publicKeyInG1"), dict(_G2, name="publicKeyInG2"), dict(_G1, name="proofOfPossession"), {"internalType": "bool", "name": "moveWithLatestRollup", "type": "bool"}], "internalType": "struct DepositArgs", "name": "", "type": "tuple"}], "stateMutability": "view", "type": "function"},
]


@dataclass(frozen=True)
class EventDescriptor:
    """Decoding recipe for a non-anonymous event: indexed params live in topics[1:], the rest in data."""
    name: str
    indexed: Tuple[Tuple[str, str], ...]
    data: Tuple[Tuple[str, str], ...]

    @property
    def signature(self) -> str:
        # Declaration order here matches the Solidity declaration (indexed params first)
        types = [t for _, t in self.indexed] + [t for _, t in self.data]
        return f"{self.name}({','.join(types)})"

    @property
    def topic(self) -> str:
        return "0x" + Web3.keccak(text=self.signature).hex().removeprefix("0x")

    @property
    def data_types(self) -> List[str]:
        return [t for _, t in self.data]


STAKED_WITH_PROVIDER = EventDescriptor(
    name="StakedWithProvider",
    indexed=(("providerIdentifier", "uint256"), ("rollupAddress", "address"), ("attester", "address")),
    data=(("coinbaseSplitContractAddress", "address"), ("stakerImplementation", "address")),
)
