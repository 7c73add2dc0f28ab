#!/usr/bin/env python3
"""
Price Engine Module for Multichain Launchpad Sync
Pure bonding-curve math over CurveState snapshots

The curve is constant-product over virtual reserves:
    tokens_out = ceil(virtual_tokens * eth_in / (virtual_eth + eth_in))
    eth_out    = ceil(virtual_eth * tokens_in / (virtual_tokens + tokens_in))
    price      = virtual_eth * 1e18 / virtual_tokens

Fees are carved out of the ETH side before it reaches the formula, so only
the curve-side amount ever moves the reserves. Every function here returns a
new value and never mutates its input.

Version: 1.0.0
"""

from .constants import BPS, CURVE_SUPPLY, DEFAULT_PLATFORM_FEE_BPS, WAD
from .errors import CurveArithmeticError, CurvePaused, CurveMigrated, SlippageExceeded, ValidationError
from .models import BuyResult, FeeSplit, SellResult
from .utils import bps_of, ceil_div, check_u128


def quote_buy(state, eth_in):
    """Tokens received for eth_in of curve-side ETH"""
    if eth_in < 0:
        raise ValidationError("eth_in must not be negative")
    denominator = state.virtual_eth + eth_in
    if denominator == 0:
        raise CurveArithmeticError("virtual ETH reserve is zero")
    check_u128(denominator, "virtual ETH reserve")
    return ceil_div(state.virtual_tokens * eth_in, denominator)


def quote_sell(state, tokens_in):
    """ETH released for tokens_in, never more than the virtual ETH reserve"""
    if tokens_in < 0:
        raise ValidationError("tokens_in must not be negative")
    denominator = state.virtual_tokens + tokens_in
    if denominator == 0:
        raise CurveArithmeticError("virtual token reserve is zero")
    check_u128(denominator, "virtual token reserve")
    eth_out = ceil_div(state.virtual_eth * tokens_in, denominator)
    return min(eth_out, state.virtual_eth)


def current_price(state):
    """Spot price in wei per whole token (WAD-scaled)"""
    if state.virtual_tokens == 0:
        raise CurveArithmeticError("virtual token reserve is zero")
    return state.virtual_eth * WAD // state.virtual_tokens


def calculate_eth_in(state, tokens_out):
    """Inverse quote: curve-side ETH needed to receive exactly tokens_out"""
    remaining = state.virtual_tokens - tokens_out
    if remaining <= 0:
        raise CurveArithmeticError("tokens_out exhausts the virtual token reserve")
    return ceil_div(state.virtual_eth * tokens_out, remaining)


def split_buy_fees(eth_in, creator_fee_bps, platform_fee_bps=DEFAULT_PLATFORM_FEE_BPS):
    return FeeSplit(
        platform_fee=bps_of(eth_in, platform_fee_bps),
        creator_fee=bps_of(eth_in, creator_fee_bps),
    )


def slippage_bps(expected, actual):
    """Shortfall of actual against expected, in basis points"""
    if expected <= 0 or actual >= expected:
        return 0
    return (expected - actual) * BPS // expected


def _check_tradeable(state):
    if state.paused:
        raise CurvePaused(state.launch_id, state.chain_id)


def apply_buy(state, eth_in, min_tokens_out=0, max_slippage_bps=None,
              platform_fee_bps=DEFAULT_PLATFORM_FEE_BPS):
    """Apply a buy and return a BuyResult holding the new state.

    When the quote would push total_supply past CURVE_SUPPLY the output is
    clamped to the remaining headroom, the exact ETH for that amount is
    charged, the rest is reported as eth_refund and migration_triggered is set.
    """
    if eth_in <= 0:
        raise ValidationError("eth_in must be positive")
    if min_tokens_out < 0:
        raise ValidationError("min_tokens_out must not be negative")
    fee_bps = platform_fee_bps + state.creator_fee_bps
    if fee_bps >= BPS:
        raise ValidationError(f"combined fees of {fee_bps} bps leave nothing for the curve")
    _check_tradeable(state)

    headroom = CURVE_SUPPLY - state.total_supply
    if headroom <= 0:
        raise CurveMigrated(state.launch_id, state.chain_id)

    fees = split_buy_fees(eth_in, state.creator_fee_bps, platform_fee_bps)
    eth_for_curve = eth_in - fees.total
    if eth_for_curve <= 0:
        raise ValidationError("eth_in is too small to cover fees")

    tokens_out = quote_buy(state, eth_for_curve)
    eth_refund = 0
    migration_triggered = tokens_out >= headroom

    if tokens_out > headroom:
        tokens_out = headroom
        required = min(calculate_eth_in(state, tokens_out), eth_for_curve)
        gross = min(eth_in, ceil_div(required * BPS, BPS - fee_bps))
        fees = split_buy_fees(gross, state.creator_fee_bps, platform_fee_bps)
        eth_for_curve = gross - fees.total
        eth_refund = eth_in - gross

    if tokens_out < min_tokens_out:
        raise SlippageExceeded(
            f"tokens out {tokens_out} below minimum {min_tokens_out}",
            expected=min_tokens_out, actual=tokens_out
        )
    if max_slippage_bps is not None:
        if state.virtual_eth == 0:
            raise CurveArithmeticError("virtual ETH reserve is zero")
        expected = eth_for_curve * state.virtual_tokens // state.virtual_eth
        realized = slippage_bps(expected, tokens_out)
        if realized > max_slippage_bps:
            raise SlippageExceeded(
                f"realized slippage {realized} bps exceeds {max_slippage_bps} bps",
                expected=expected, actual=tokens_out
            )

    new_virtual_tokens = state.virtual_tokens - tokens_out
    if new_virtual_tokens <= 0:
        raise CurveArithmeticError("virtual token reserve underflow")

    new_state = state.evolve(
        virtual_eth=check_u128(state.virtual_eth + eth_for_curve, "virtual ETH reserve"),
        virtual_tokens=new_virtual_tokens,
        total_supply=check_u128(state.total_supply + tokens_out, "total supply"),
    )
    return BuyResult(
        state=new_state,
        tokens_out=tokens_out,
        eth_for_curve=eth_for_curve,
        fees=fees,
        eth_refund=eth_refund,
        migration_triggered=migration_triggered,
    )


def apply_sell(state, tokens_in, min_eth_out=0, max_slippage_bps=None,
               platform_fee_bps=DEFAULT_PLATFORM_FEE_BPS):
    """Apply a sell. Only the platform fee is charged; there is no creator fee on sells."""
    if tokens_in <= 0:
        raise ValidationError("tokens_in must be positive")
    if min_eth_out < 0:
        raise ValidationError("min_eth_out must not be negative")
    if tokens_in > state.total_supply:
        raise ValidationError(
            f"cannot sell {tokens_in} tokens, only {state.total_supply} issued"
        )
    _check_tradeable(state)

    gross_eth_out = quote_sell(state, tokens_in)
    fee = bps_of(gross_eth_out, platform_fee_bps)
    eth_out = gross_eth_out - fee

    if eth_out < min_eth_out:
        raise SlippageExceeded(
            f"ETH out {eth_out} below minimum {min_eth_out}",
            expected=min_eth_out, actual=eth_out
        )
    if max_slippage_bps is not None:
        if state.virtual_tokens == 0:
            raise CurveArithmeticError("virtual token reserve is zero")
        expected = tokens_in * state.virtual_eth // state.virtual_tokens
        realized = slippage_bps(expected, gross_eth_out)
        if realized > max_slippage_bps:
            raise SlippageExceeded(
                f"realized slippage {realized} bps exceeds {max_slippage_bps} bps",
                expected=expected, actual=gross_eth_out
            )

    new_state = state.evolve(
        virtual_eth=state.virtual_eth - gross_eth_out,
        virtual_tokens=check_u128(state.virtual_tokens + tokens_in, "virtual token reserve"),
        total_supply=state.total_supply - tokens_in,
    )
    return SellResult(state=new_state, eth_out=eth_out, gross_eth_out=gross_eth_out, fee=fee)


def unified_price(states):
    """Aggregate chain-local curves into one market.

    Reserves are summed across chains and the price derived from the
    combined reserves; total supply is the sum of chain-local supplies.
    Returns (price, total_supply).
    """
    states = list(states)
    if not states:
        raise ValidationError("no curve states to aggregate")
    virtual_eth = sum(s.virtual_eth for s in states)
    virtual_tokens = sum(s.virtual_tokens for s in states)
    if virtual_tokens == 0:
        raise CurveArithmeticError("combined virtual token reserve is zero")
    total_supply = sum(s.total_supply for s in states)
    return virtual_eth * WAD // virtual_tokens, total_supply


def progress_bps(state):
    """Share of CURVE_SUPPLY already sold, capped at 100%"""
    if state.total_supply >= CURVE_SUPPLY:
        return BPS
    return state.total_supply * BPS // CURVE_SUPPLY


def market_cap(state):
    """Issued supply valued at the spot price, in wei"""
    return state.total_supply * current_price(state) // WAD
