"""
Tests for the in-process and eth_getLogs event sources.
"""

from unittest.mock import MagicMock

import pytest
from web3 import Web3
from web3.exceptions import MismatchedABI

from launchpad_sync.events import QueueEventSource, Web3EventSource
from launchpad_sync.models import TokenPurchase

from conftest import ORIGIN, TRADER

EMITTER = "0x" + "0e" * 20
PURCHASE_TOPIC = Web3.keccak(text="TokenPurchase(bytes32,address,uint256,uint256,uint256,uint64)")


class TestQueueEventSource:

    def test_poll_drains_everything_published(self, launch_id):
        source = QueueEventSource(ORIGIN)
        events = [TokenPurchase(launch_id, TRADER, 1, seq=seq) for seq in (1, 2, 3)]
        for event in events:
            source.publish(event)
        assert len(source) == 3
        assert source.poll(timeout=0.01) == events
        assert len(source) == 0

    def test_empty_poll_returns_nothing(self):
        assert QueueEventSource(ORIGIN).poll(timeout=0.01) == []


@pytest.fixture
def w3():
    mock = MagicMock()
    mock.eth.block_number = 120
    mock.eth.get_logs.return_value = []
    return mock


@pytest.fixture
def source(w3):
    chain = {"chain_id": ORIGIN, "rpc_url": "http://x", "emitter": EMITTER, "start_block": 100}
    return Web3EventSource(chain, w3=w3, max_block_range=10)


def purchase_log():
    return {
        "address": EMITTER,
        "topics": [PURCHASE_TOPIC],
        "transactionHash": b"\x01" * 32,
    }


class TestWeb3EventSource:

    def test_decodes_a_purchase(self, source, w3, launch_id):
        w3.eth.get_logs.return_value = [purchase_log()]
        process_log = w3.eth.contract.return_value.events.TokenPurchase.return_value.process_log
        process_log.return_value = {"args": {
            "launchId": Web3.to_bytes(hexstr=launch_id),
            "buyer": TRADER,
            "ethIn": 10 ** 16,
            "tokensOut": 5,
            "price": 7,
            "seq": 3,
        }}

        events = source.poll(timeout=0)
        assert events == [TokenPurchase(
            launch_id=launch_id, buyer=TRADER, eth_in=10 ** 16, tokens_out=5, price=7,
            seq=3, chain_id=ORIGIN, caller=Web3.to_checksum_address(EMITTER),
        )]

    def test_cursor_walks_block_ranges(self, source, w3):
        source.poll(timeout=0)
        source.poll(timeout=0)
        ranges = [(c[0][0]["fromBlock"], c[0][0]["toBlock"]) for c in w3.eth.get_logs.call_args_list]
        assert ranges == [(100, 109), (110, 119)]

    def test_caught_up_cursor_waits(self, source, w3):
        w3.eth.block_number = 99
        assert source.poll(timeout=0) == []
        w3.eth.get_logs.assert_not_called()

    def test_unknown_topics_are_skipped(self, source, w3):
        w3.eth.get_logs.return_value = [
            {"address": EMITTER, "topics": [b"\x00" * 32]},
            {"address": EMITTER, "topics": []},
        ]
        assert source.poll(timeout=0) == []

    def test_undecodable_log_is_skipped(self, source, w3):
        w3.eth.get_logs.return_value = [purchase_log()]
        process_log = w3.eth.contract.return_value.events.TokenPurchase.return_value.process_log
        process_log.side_effect = MismatchedABI("wrong layout")
        assert source.poll(timeout=0) == []
