"""Supported chains: RPC endpoint slugs, PoA middleware flag and eth_getLogs span."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_LOG_SPAN = 100


@dataclass(frozen=True)
class ChainConfig:
    chain_id: int
    name: str
    alchemy_slug: str
    infura_slug: str
    is_poa: bool = False
    log_span: int = DEFAULT_LOG_SPAN  # widest block range a single getLogs call may cover
    aliases: tuple[str, ...] = ()


CHAINS: dict[int, ChainConfig] = {
    1: ChainConfig(1, "ethereum", "eth-mainnet", "mainnet", log_span=10, aliases=("eth", "mainnet")),
    42161: ChainConfig(42161, "arbitrum", "arb-mainnet", "arbitrum-mainnet", is_poa=True, log_span=1000, aliases=("arb",)),
    8453: ChainConfig(8453, "base", "base-mainnet", "base-mainnet", is_poa=True, log_span=1000),
}

_BY_NAME: dict[str, int] = {
    name: chain.chain_id
    for chain in CHAINS.values()
    for name in (chain.name, *chain.aliases)
}


def get_chain_config(chain_id: int) -> ChainConfig:
    try:
        return CHAINS[chain_id]
    except KeyError:
        raise ValueError(f"Unsupported chain_id={chain_id} (known: {sorted(CHAINS)})") from None


def resolve_chain(name_or_id: str | int) -> ChainConfig:
    """Accept a chain id, its decimal string, a name or an alias."""
    if isinstance(name_or_id, int):
        return get_chain_config(name_or_id)
    key = str(name_or_id).strip().lower()
    if key.isdigit():
        return get_chain_config(int(key))
    if key not in _BY_NAME:
        raise ValueError(f"Unknown chain '{name_or_id}' (known: {', '.join(sorted(_BY_NAME))})")
    return CHAINS[_BY_NAME[key]]
