"""Address labels that exclude activity from candidate mining: CEX wallets, bridges, LP contracts."""

from __future__ import annotations

import logging
from typing import Iterable

import duckdb

from whaletrace.models.schema import ActivityEvent

logger = logging.getLogger(__name__)

EXCLUDED_CATEGORIES: frozenset[str] = frozenset({"cex", "bridge", "lp"})

# address -> (label, category)
KNOWN_LABELS: dict[int, dict[str, tuple[str, str]]] = {
    1: {
        # CEX hot wallets
        "0x28c6c06298d514db089934071355e5743bf21d60": ("Binance 14", "cex"),
        "0x21a31ee1afc51d94c2efccaa2092ad1028285549": ("Binance 15", "cex"),
        "0xdfd5293d8e347dfe59e90efd55b2956a1343963d": ("Binance 16", "cex"),
        "0x56eddb7aa87536c09ccc2793473599fd21a8b17f": ("Binance 17", "cex"),
        "0x71660c4005ba85c37ccec55d0c4493e66fe775d3": ("Coinbase Commerce", "cex"),
        "0x503828976d22510aad0201ac7ec88293211d23da": ("Coinbase 1", "cex"),
        "0xddfabcdc4d8ffc6d5beaf154f18b778f892a0740": ("Coinbase 2", "cex"),
        "0x3cd751e6b0078be393132286c442345e68ff0aaa": ("Coinbase 4", "cex"),
        "0xb5d85cbf7cb3ee0d56b3bb207d5fc4b82f43f511": ("Coinbase 5", "cex"),
        "0x267be1c1d684f78cb4f6a176c4911b741e4ffdc0": ("Kraken 4", "cex"),
        "0x6cc5f688a315f3dc28a7781717a9a798a59fda7b": ("OKX", "cex"),
        # Bridges
        "0x40ec5b33f54e0e8a33a975908c5ba1c14e5bbbdf": ("Polygon ERC20 Bridge", "bridge"),
        "0xa3a7b6f88361f48403514059f1f16c8e78d60eec": ("Arbitrum L1 ERC20 Gateway", "bridge"),
        "0x4dbd4fc535ac27206064b68ffcf827b0a60bab3f": ("Arbitrum Delayed Inbox", "bridge"),
        "0x99c9fc46f92e8a1c0dec1b1747d010903e884be1": ("Optimism Gateway", "bridge"),
        "0x49048044d57e1c92a77f79988d21fa8faf74e97e": ("Base Portal", "bridge"),
        "0x5c7bcd6e7de5423a257d81b442095a1a6ced35c5": ("Across SpokePool", "bridge"),
    },
    42161: {},
    8453: {},
}


def get_label(chain_id: int, address: str) -> tuple[str, str] | None:
    """Get (label, category) for a statically known address, or None."""
    return KNOWN_LABELS.get(chain_id, {}).get(address.lower())


def get_label_map(
    conn: duckdb.DuckDBPyConnection | None,
    addresses: Iterable[str],
    chain_id: int = 1,
    categories: Iterable[str] = EXCLUDED_CATEGORIES,
) -> dict[str, list[tuple[str, str]]]:
    """address -> [(label, category), ...] for the given addresses, restricted to ``categories``.

    Static labels are merged with rows from the ``labels`` table when a connection is given.
    """
    wanted = {a.lower() for a in addresses if a}
    categories = set(categories)
    label_map: dict[str, list[tuple[str, str]]] = {}
    if not wanted:
        return label_map

    for address in wanted:
        entry = get_label(chain_id, address)
        if entry is not None and entry[1] in categories:
            label_map[address] = [entry]

    if conn is not None:
        rows = conn.execute("""
            SELECT address, label, category FROM labels
            WHERE chain_id = ?
              AND address IN (SELECT UNNEST(?::VARCHAR[]))
              AND category IN (SELECT UNNEST(?::VARCHAR[]))
        """, [chain_id, sorted(wanted), sorted(categories)]).fetchall()
        for address, label, category in rows:
            entries = label_map.setdefault(address.lower(), [])
            if (label, category) not in entries:
                entries.append((label, category))

    return label_map


def has_exclusion_label(address: str | None, label_map: dict[str, list[tuple[str, str]]]) -> bool:
    if not address:
        return False
    return bool(label_map.get(address.lower()))


def drop_excluded(
    events: list[ActivityEvent],
    conn: duckdb.DuckDBPyConnection | None = None,
    chain_id: int = 1,
) -> list[ActivityEvent]:
    """Remove events whose trader, router or counterparty carries an exclusion label."""
    addresses: set[str] = set()
    for event in events:
        addresses.update(a for a in (event.trader, event.router, event.counterparty) if a)
    label_map = get_label_map(conn, addresses, chain_id=chain_id)
    if not label_map:
        return events

    kept = [
        e for e in events
        if not any(has_exclusion_label(a, label_map) for a in (e.trader, e.router, e.counterparty))
    ]
    if len(kept) < len(events):
        logger.info("Dropped %d events touching labelled addresses", len(events) - len(kept))
    return kept
