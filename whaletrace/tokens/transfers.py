"""Parse ERC-20 Transfer logs and provider asset-transfer records."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

from whaletrace.models.schema import ActivityEvent, AssetTransfer

logger = logging.getLogger(__name__)

DEFAULT_DECIMALS = 18


def parse_transfer_logs(
    logs: list[dict],
    chain_id: int,
    timestamps: dict[int, datetime],
) -> list[ActivityEvent]:
    """Parse raw eth_getLogs results for Transfer events.

    Transfer event: Transfer(address indexed from, address indexed to, uint256 value)
    - topics[0] = event signature (0xddf252ad...)
    - topics[1] = from address (padded to 32 bytes)
    - topics[2] = to address (padded to 32 bytes)
    - data = value (uint256)

    Zero-value transfers are dropped.
    """
    events: list[ActivityEvent] = []
    for log in logs:
        topics = log.get("topics", [])
        if len(topics) < 3:
            continue  # Not a standard ERC-20 Transfer (ERC-721 puts the id in topics[3])

        value = hex_to_int(log.get("data", "0x0"))
        if value <= 0:
            continue

        block_number = to_int(log["blockNumber"])
        token_address = str(log["address"]).lower()
        from_addr = topic_to_address(topics[1])
        to_addr = topic_to_address(topics[2])

        events.append(ActivityEvent(
            chain_id=chain_id,
            tx_hash=to_hex(log["transactionHash"]),
            log_index=to_int(log.get("logIndex", 0)),
            block_number=block_number,
            timestamp=timestamps.get(block_number) or datetime.fromtimestamp(0, tz=timezone.utc),
            kind="transfer",
            trader=from_addr,
            counterparty=to_addr,
            asset_in=token_address,
            amount_in_raw=value,
            asset_out=token_address,
            amount_out_raw=value,
        ))

    return sort_events(events)


def topic_to_address(topic) -> str:
    """Convert a 32-byte padded topic to a 20-byte hex address."""
    if hasattr(topic, "hex"):
        hex_str = topic.hex()
    else:
        hex_str = str(topic)
    if hex_str.startswith("0x"):
        hex_str = hex_str[2:]
    return "0x" + hex_str[-40:].lower()


def to_hex(value) -> str:
    if isinstance(value, (bytes, bytearray)) or (hasattr(value, "hex") and not isinstance(value, str)):
        hex_str = value.hex()
        return hex_str if hex_str.startswith("0x") else "0x" + hex_str
    return str(value).lower()


def to_int(value) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


def hex_to_int(data) -> int:
    if isinstance(data, (bytes, bytearray)):
        return int.from_bytes(data, "big") if data else 0
    if hasattr(data, "hex") and not isinstance(data, str):
        data = data.hex()
    data = str(data or "")
    if data in ("", "0x"):
        return 0
    return int(data, 16)


def resolve_transfer_amount(value: Any, raw_value: Any, decimals: int | None) -> float:
    """Prefer the provider's decimal value; fall back to the hex raw value scaled by decimals."""
    if value is not None and value != "":
        try:
            return float(Decimal(str(value)))
        except (InvalidOperation, ValueError):
            logger.debug("Unparseable transfer value %r, using raw value", value)

    if raw_value:
        try:
            raw = hex_to_int(raw_value) if str(raw_value).startswith("0x") else int(str(raw_value), 16)
        except ValueError:
            return 0.0
        scale = DEFAULT_DECIMALS if decimals is None else decimals
        return float(Decimal(raw) / (Decimal(10) ** scale))

    return 0.0


def _parse_optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return to_int(value)
    except (TypeError, ValueError):
        return None


def _parse_timestamp(raw: dict) -> datetime | None:
    stamp = (raw.get("metadata") or {}).get("blockTimestamp")
    if not stamp:
        return None
    try:
        parsed = datetime.fromisoformat(str(stamp).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_asset_transfer(raw: dict) -> AssetTransfer | None:
    """Parse one ``alchemy_getAssetTransfers`` record. Returns None for zero/unparseable amounts."""
    raw_contract = raw.get("rawContract") or {}
    decimals = _parse_optional_int(raw_contract.get("decimal", raw_contract.get("decimals")))
    if decimals is None:
        decimals = DEFAULT_DECIMALS
    amount = resolve_transfer_amount(raw.get("value"), raw_contract.get("value"), decimals)
    if amount <= 0:
        return None

    token_address = raw_contract.get("address")
    if raw.get("category") in ("external", "internal"):
        token_address = None

    unique_id = raw.get("uniqueId")
    log_index = None
    if unique_id and ":log:" in unique_id:
        log_index = _parse_optional_int(unique_id.rsplit(":", 1)[-1])

    return AssetTransfer(
        unique_id=unique_id,
        tx_hash=raw.get("hash"),
        block_number=_parse_optional_int(raw.get("blockNum")) or 0,
        log_index=log_index,
        from_address=(raw.get("from") or "").lower(),
        to_address=(raw.get("to") or "").lower(),
        token_address=token_address.lower() if token_address else None,
        symbol=raw.get("asset"),
        decimals=decimals,
        amount=amount,
        timestamp=_parse_timestamp(raw),
    )


def dedupe_transfers(transfers: Iterable[AssetTransfer]) -> list[AssetTransfer]:
    """Deduplicate by provider unique id, else by (hash, block, log index); sort by (block, log index)."""
    seen: set = set()
    result: list[AssetTransfer] = []
    for transfer in transfers:
        if transfer.unique_id:
            key = ("id", transfer.unique_id.lower())
        elif transfer.log_index is not None:
            key = ("pos", (transfer.tx_hash or "").lower(), transfer.block_number, transfer.log_index)
        else:
            key = None
        if key is not None:
            if key in seen:
                continue
            seen.add(key)
        result.append(transfer)
    result.sort(key=lambda t: (t.block_number, t.log_index if t.log_index is not None else -1))
    return result


def sort_events(events: Iterable[ActivityEvent]) -> list[ActivityEvent]:
    """Deduplicate on (chain_id, tx_hash, log_index) and order by (block, log_index)."""
    unique: dict[tuple[int, str, int], ActivityEvent] = {}
    for event in events:
        unique.setdefault(event.key, event)
    return sorted(unique.values(), key=lambda e: (e.block_number, e.log_index))
