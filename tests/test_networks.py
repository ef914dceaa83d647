import pytest

from policykit.utils.errors import ProtocolError
from policykit.utils.networks import (
    chain_id_to_network,
    explorer_address_url,
    explorer_tx_url,
    get_network,
    get_usdc_address,
    is_facilitator_supported,
    network_to_chain_id,
)


def test_chain_id_round_trip():
    assert chain_id_to_network(84532) == "eip155:84532"
    assert network_to_chain_id("eip155:84532") == 84532


def test_non_evm_networks_pass_through():
    assert network_to_chain_id("solana:EtWTRABZaYq6iMfeYKouRu166VU2xqa1") is None


@pytest.mark.parametrize("value", ["", "84532", "eip155:", "eip155:abc", "eip155:0", "EIP155:1"])
def test_malformed_networks_raise(value):
    with pytest.raises(ProtocolError):
        network_to_chain_id(value)


def test_invalid_chain_id_raises():
    with pytest.raises(ProtocolError):
        chain_id_to_network(0)


def test_known_network_lookups():
    assert get_network("eip155:8453").name == "Base"
    assert get_usdc_address(84532) == "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
    assert is_facilitator_supported(84532)
    assert not is_facilitator_supported(25)
    assert explorer_tx_url(8453, "0xabc") == "https://basescan.org/tx/0xabc"
    assert explorer_address_url(1, "0xdef") == "https://etherscan.io/address/0xdef"
    assert get_usdc_address(999999) is None
    assert explorer_tx_url(999999, "0x") is None
