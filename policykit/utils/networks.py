"""Supported payment networks and CAIP-2 identifier helpers."""
from __future__ import annotations

import re
from dataclasses import dataclass

from policykit.utils.errors import ProtocolError

_CAIP2_RE = re.compile(r"^(?P<namespace>[-a-z0-9]{3,8}):(?P<reference>[-_a-zA-Z0-9]{1,32})$")
_EIP155_RE = re.compile(r"^[1-9][0-9]*$")


@dataclass(frozen=True)
class Network:
    caip2: str
    chain_id: int | None
    name: str
    usdc: str
    explorer: str
    testnet: bool
    facilitator_supported: bool = False


NETWORKS: dict[str, Network] = {
    network.caip2: network
    for network in (
        Network(
            caip2="eip155:84532",
            chain_id=84532,
            name="Base Sepolia",
            usdc="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
            explorer="https://sepolia.basescan.org",
            testnet=True,
            facilitator_supported=True,
        ),
        Network(
            caip2="eip155:8453",
            chain_id=8453,
            name="Base",
            usdc="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
            explorer="https://basescan.org",
            testnet=False,
            facilitator_supported=True,
        ),
        Network(
            caip2="eip155:25",
            chain_id=25,
            name="Cronos",
            usdc="0xc21223249CA28397B4B6541dfFaEcC539BfF0c59",
            explorer="https://cronoscan.com",
            testnet=False,
        ),
        Network(
            caip2="eip155:338",
            chain_id=338,
            name="Cronos Testnet",
            usdc="0x6a3173618859C7cd40fAF6921b5E9eB6A76f1fD4",
            explorer="https://testnet.cronoscan.com",
            testnet=True,
        ),
        Network(
            caip2="eip155:1",
            chain_id=1,
            name="Ethereum",
            usdc="0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
            explorer="https://etherscan.io",
            testnet=False,
        ),
        Network(
            caip2="solana:EtWTRABZaYq6iMfeYKouRu166VU2xqa1",
            chain_id=None,
            name="Solana Devnet",
            usdc="Gh9ZwEmdLJ8DscKNTkTqPbNwLNNBjuSzaG9Vp2KGtKJr",
            explorer="https://explorer.solana.com",
            testnet=True,
            facilitator_supported=True,
        ),
    )
}


def chain_id_to_network(chain_id: int) -> str:
    """Return the CAIP-2 identifier for an EVM chain id."""

    if chain_id <= 0:
        raise ProtocolError(f"Invalid chain id: {chain_id}")
    return f"eip155:{chain_id}"


def network_to_chain_id(network: str) -> int | None:
    """Return the EVM chain id of a CAIP-2 identifier.

    Well-formed identifiers from other namespaces yield ``None`` and are passed
    through untouched by callers. Malformed identifiers raise ``ProtocolError``.
    """

    match = _CAIP2_RE.match(network or "")
    if match is None:
        raise ProtocolError(f"Invalid CAIP-2 network identifier: {network!r}")
    if match.group("namespace") != "eip155":
        return None
    reference = match.group("reference")
    if not _EIP155_RE.match(reference):
        raise ProtocolError(f"Invalid EVM CAIP-2 identifier: {network!r}")
    return int(reference)


def get_network(network: str) -> Network | None:
    return NETWORKS.get(network)


def get_network_by_chain_id(chain_id: int) -> Network | None:
    for network in NETWORKS.values():
        if network.chain_id == chain_id:
            return network
    return None


def get_usdc_address(chain_id: int) -> str | None:
    network = get_network_by_chain_id(chain_id)
    return network.usdc if network else None


def is_facilitator_supported(chain_id: int) -> bool:
    network = get_network_by_chain_id(chain_id)
    return bool(network and network.facilitator_supported)


def explorer_tx_url(chain_id: int, tx_hash: str) -> str | None:
    network = get_network_by_chain_id(chain_id)
    if network is None:
        return None
    return f"{network.explorer}/tx/{tx_hash}"


def explorer_address_url(chain_id: int, address: str) -> str | None:
    network = get_network_by_chain_id(chain_id)
    if network is None:
        return None
    return f"{network.explorer}/address/{address}"


__all__ = [
    "Network",
    "NETWORKS",
    "chain_id_to_network",
    "network_to_chain_id",
    "get_network",
    "get_network_by_chain_id",
    "get_usdc_address",
    "is_facilitator_supported",
    "explorer_tx_url",
    "explorer_address_url",
]
