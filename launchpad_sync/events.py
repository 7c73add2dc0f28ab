#!/usr/bin/env python3
"""
Event Source Module for Multichain Launchpad Sync
Delivers emitter events (TokenCreated, TokenPurchase, TokenSale,
CurveMigrationTriggered, CurvePauseChanged) to the coordinator

Delivery is at-least-once and unordered across chains; the coordinator
tolerates duplicates through its sequence gates.

Version: 1.0.0
"""

import logging
import queue
import time
from abc import ABC, abstractmethod

from web3 import Web3
from web3.exceptions import MismatchedABI

from .constants import EMITTER_ABI
from .models import (
    CurveMigrationTriggered, CurvePauseChanged, TokenCreated, TokenPurchase, TokenSale
)
from .utils import chain_name

logger = logging.getLogger(__name__)


class EventSource(ABC):
    """One event stream, normally one per chain"""

    chain_id = 0

    @abstractmethod
    def poll(self, timeout=1.0):
        """Block up to timeout seconds; return the events available (possibly none)"""

    def close(self):
        pass


class QueueEventSource(EventSource):
    """In-process feed used by the simulator and tests"""

    def __init__(self, chain_id=0):
        self.chain_id = chain_id
        self._queue = queue.Queue()

    def publish(self, event):
        self._queue.put(event)

    def poll(self, timeout=1.0):
        events = []
        try:
            events.append(self._queue.get(timeout=timeout))
        except queue.Empty:
            return events
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def __len__(self):
        return self._queue.qsize()


def _event_signature(abi_entry):
    types = ",".join(i["type"] for i in abi_entry["inputs"])
    return f"{abi_entry['name']}({types})"


class Web3EventSource(EventSource):
    """Polls eth_getLogs on a chain's emitter contract from a block cursor.

    The emitter address is the caller identity of every event it produces.
    """

    def __init__(self, chain_config, w3=None, max_block_range=2000, rl_call=None):
        self.chain_id = int(chain_config["chain_id"])
        self.name = chain_config.get("name") or chain_name(self.chain_id)
        self.w3 = w3 or Web3(Web3.HTTPProvider(chain_config["rpc_url"]))
        self.emitter_address = Web3.to_checksum_address(chain_config["emitter"])
        self.contract = self.w3.eth.contract(address=self.emitter_address, abi=EMITTER_ABI)
        self.max_block_range = max_block_range
        self._rl_call = rl_call or (lambda fn, *args, **kwargs: fn(*args, **kwargs))
        self._next_block = chain_config.get("start_block")

        # topic0 -> event name
        self._topics = {
            bytes(Web3.keccak(text=_event_signature(entry))): entry["name"]
            for entry in EMITTER_ABI if entry["type"] == "event"
        }

    def poll(self, timeout=1.0):
        latest_block = int(self._rl_call(lambda: self.w3.eth.block_number))
        if self._next_block is None:
            self._next_block = latest_block
        if self._next_block > latest_block:
            time.sleep(timeout)
            return []

        from_block = self._next_block
        to_block = min(latest_block, from_block + self.max_block_range - 1)
        logs = self._rl_call(self.w3.eth.get_logs, {
            'fromBlock': from_block,
            'toBlock': to_block,
            'address': self.emitter_address
        })
        events = []
        for lg in logs or []:
            event = self.decode_log(lg)
            if event is not None:
                events.append(event)

        # Advance the cursor only after the range was read
        self._next_block = to_block + 1
        if events:
            logger.debug(
                "%s: %d events in blocks %d-%d", self.name, len(events), from_block, to_block
            )
        return events

    def decode_log(self, lg):
        topics = lg.get('topics') or []
        if not topics:
            return None
        name = self._topics.get(bytes(topics[0]))
        if name is None:
            return None
        try:
            decoded = getattr(self.contract.events, name)().process_log(lg)
        except MismatchedABI:
            logger.debug("%s: undecodable %s log in tx %s", self.name, name, lg.get('transactionHash'))
            return None
        return self._to_event(name, decoded['args'], Web3.to_checksum_address(lg['address']))

    def _to_event(self, name, args, caller):
        launch_id = Web3.to_hex(args['launchId'])
        if name == "TokenCreated":
            return TokenCreated(
                launch_id=launch_id,
                name=args['name'],
                symbol=args['symbol'],
                creator=args['creator'],
                origin_chain_id=int(args['originChainId']),
                target_chain_ids=tuple(int(c) for c in args['targetChainIds']),
                origin_token=args['originToken'],
                creator_fee_bps=int(args['creatorFeeBps']),
                chain_id=self.chain_id,
                caller=caller,
            )
        if name == "TokenPurchase":
            return TokenPurchase(
                launch_id=launch_id,
                buyer=args['buyer'],
                eth_in=int(args['ethIn']),
                tokens_out=int(args['tokensOut']),
                price=int(args['price']),
                seq=int(args['seq']),
                chain_id=self.chain_id,
                caller=caller,
            )
        if name == "TokenSale":
            return TokenSale(
                launch_id=launch_id,
                seller=args['seller'],
                tokens_in=int(args['tokensIn']),
                eth_out=int(args['ethOut']),
                price=int(args['price']),
                seq=int(args['seq']),
                chain_id=self.chain_id,
                caller=caller,
            )
        if name == "CurveMigrationTriggered":
            return CurveMigrationTriggered(
                launch_id=launch_id,
                final_price=int(args['finalPrice']),
                liquidity_eth=int(args['liquidityEth']),
                liquidity_tokens=int(args['liquidityTokens']),
                chain_id=self.chain_id,
                caller=caller,
            )
        return CurvePauseChanged(
            launch_id=launch_id,
            paused=bool(args['paused']),
            seq=int(args['seq']),
            chain_id=self.chain_id,
            caller=caller,
        )
