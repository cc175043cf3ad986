"""Decode Uniswap V2/V3 Swap logs into trader-side events and price them in USD."""

from __future__ import annotations

import logging
from datetime import datetime

import duckdb
from tqdm import tqdm

from whaletrace.models.schema import ActivityEvent, PriceSummary
from whaletrace.tokens.transfers import to_hex, to_int, topic_to_address

logger = logging.getLogger(__name__)

WORD = 64  # hex chars per 32-byte ABI word


def _words(data) -> list[str]:
    if isinstance(data, (bytes, bytearray)):
        data = data.hex()
    elif hasattr(data, "hex") and not isinstance(data, str):
        data = data.hex()
    data = str(data)
    if data.startswith("0x"):
        data = data[2:]
    return [data[i:i + WORD] for i in range(0, len(data), WORD)]


def _int256(word: str) -> int:
    value = int(word, 16)
    return value - (1 << 256) if value >= 1 << 255 else value


def decode_swap_log(
    log: dict,
    dex: str,
    pool_tokens: tuple[str, str],
    tx: dict,
    timestamp: datetime,
    chain_id: int,
) -> ActivityEvent | None:
    """Decode one Swap log. ``asset_in`` is what the trader paid into the pool.

    V2 Swap(sender, amount0In, amount1In, amount0Out, amount1Out, to):
    the nonzero ``*In`` side is the sold token, the nonzero ``*Out`` side the bought one.
    V3 Swap(sender, recipient, amount0, amount1, sqrtPriceX96, liquidity, tick):
    positive amounts flow into the pool, negative amounts out of it.
    """
    words = _words(log.get("data", "0x"))
    token0, token1 = pool_tokens
    pool = str(log["address"]).lower()
    trader = str(tx.get("from") or "").lower()
    router = str(tx["to"]).lower() if tx.get("to") else None
    via_aggregator = router is not None and router != pool

    if dex == "univ2":
        if len(words) < 4:
            return None
        amount0_in, amount1_in, amount0_out, amount1_out = (int(w, 16) for w in words[:4])
        asset_in = token0 if amount0_in > 0 else token1
        amount_in = amount0_in if amount0_in > 0 else amount1_in
        asset_out = token0 if amount0_out > 0 else token1
        amount_out = amount0_out if amount0_out > 0 else amount1_out
    elif dex == "univ3":
        if len(words) < 2:
            return None
        amount0, amount1 = _int256(words[0]), _int256(words[1])
        asset_in, asset_out, amount_in, amount_out = "", "", 0, 0
        for token, amount in ((token0, amount0), (token1, amount1)):
            if amount > 0:
                asset_in, amount_in = token, amount
            elif amount < 0:
                asset_out, amount_out = token, -amount
        topics = log.get("topics", [])
        if len(topics) >= 3 and topic_to_address(topics[2]) != trader:
            via_aggregator = True
    else:
        raise ValueError(f"Unknown dex '{dex}'")

    if not asset_in or not asset_out or amount_in <= 0 or amount_out <= 0:
        return None

    return ActivityEvent(
        chain_id=chain_id,
        tx_hash=to_hex(log["transactionHash"]),
        log_index=to_int(log.get("logIndex", 0)),
        block_number=to_int(log["blockNumber"]),
        timestamp=timestamp,
        kind="swap",
        dex=dex,
        trader=trader,
        counterparty=pool,
        router=router,
        asset_in=asset_in,
        amount_in_raw=amount_in,
        asset_out=asset_out,
        amount_out_raw=amount_out,
        via_aggregator=via_aggregator,
    )


async def _usd_value(gateway, asset: str, amount_raw: int, timestamp: datetime) -> float | None:
    if amount_raw <= 0:
        return None
    metadata = await gateway.token_metadata(asset)
    decimals = metadata.decimals if metadata is not None and metadata.decimals else 18
    symbol = metadata.symbol if metadata is not None else None
    price = await gateway.price_at(asset, timestamp, symbol=symbol)
    if price <= 0:
        return None
    return amount_raw / 10 ** decimals * price


async def price_events(
    events: list[ActivityEvent],
    gateway,
    usd_min: float,
    progress: bool = True,
) -> tuple[PriceSummary, list[ActivityEvent], list[ActivityEvent]]:
    """Price each event's two legs. Returns (summary, enriched, below_threshold).

    Events with no priceable leg are counted missing and left as they are.
    """
    enriched: list[ActivityEvent] = []
    filtered: list[ActivityEvent] = []
    missing = 0

    for event in tqdm(events, desc="Pricing events", disable=not progress):
        usd_in = await _usd_value(gateway, event.asset_in, event.amount_in_raw, event.timestamp)
        usd_out = await _usd_value(gateway, event.asset_out, event.amount_out_raw, event.timestamp)
        notional = max(usd_in or 0.0, usd_out or 0.0)

        if notional == 0:
            missing += 1
            continue
        if notional < usd_min:
            filtered.append(event)
            continue
        enriched.append(event.model_copy(update={
            "usd_in": usd_in,
            "usd_out": usd_out,
            "usd_notional": notional,
        }))

    summary = PriceSummary(priced=len(enriched), missing=missing, filtered=len(filtered))
    return summary, enriched, filtered


async def price_stored_events(
    conn: duckdb.DuckDBPyConnection,
    gateway,
    usd_min: float,
    from_block: int | None = None,
    to_block: int | None = None,
    progress: bool = True,
) -> PriceSummary:
    """Price unpriced stored swaps, write USD fields back and delete sub-threshold ones."""
    from whaletrace.storage.database import delete_events, get_unpriced_events, update_event_prices

    events = get_unpriced_events(conn, gateway.chain_id, from_block=from_block, to_block=to_block)
    if not events:
        return PriceSummary()

    summary, enriched, filtered = await price_events(events, gateway, usd_min, progress=progress)
    update_event_prices(conn, enriched)
    deleted = delete_events(conn, [e.key for e in filtered])
    logger.info("Priced %d swaps, %d missing prices, %d below $%.0f", summary.priced, summary.missing, deleted, usd_min)
    return summary.model_copy(update={"filtered": deleted})
