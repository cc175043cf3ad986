"""Event signatures, ABIs, WETH/stablecoin addresses and price-source prefixes."""

ZERO_ADDRESS = "0x" + "0" * 40

# ERC-20 Transfer(address indexed from, address indexed to, uint256 value)
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

# Uniswap V2 Swap(address,uint256,uint256,uint256,uint256,address)
UNISWAP_V2_SWAP_TOPIC = (
    "0xd78ad95fa46c994b6551d0da85fc275fe613ce37657fb8d5e3d130840159d822"
)

# Uniswap V3 Swap(address,address,int256,int256,uint160,uint128,int24)
UNISWAP_V3_SWAP_TOPIC = (
    "0xc42079f94a6350d7e6235f29174924f928cc2ac818eb64fed8004e115fbcca67"
)

SWAP_TOPICS: dict[str, str] = {
    "univ2": UNISWAP_V2_SWAP_TOPIC,
    "univ3": UNISWAP_V3_SWAP_TOPIC,
}

# Minimal ERC-20 ABI for balance and metadata calls
ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "name",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function",
    },
]

# token0()/token1() are shared by Uniswap V2 pairs and V3 pools
POOL_ABI = [
    {
        "constant": True,
        "inputs": [],
        "name": "token0",
        "outputs": [{"name": "", "type": "address"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "token1",
        "outputs": [{"name": "", "type": "address"}],
        "type": "function",
    },
]

# WETH (or wrapped native token) per chain
WETH_ADDRESSES: dict[int, str] = {
    1: "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2",
    42161: "0x82af49447d8a07e3bd95bd0d56f35241523fbab1",
    8453: "0x4200000000000000000000000000000000000006",
}

# Stablecoins priced at exactly 1.00 USD: address -> (symbol, decimals)
STABLECOINS: dict[int, dict[str, tuple[str, int]]] = {
    1: {
        "0xdac17f958d2ee523a2206206994597c13d831ec7": ("USDT", 6),
        "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48": ("USDC", 6),
        "0x6b175474e89094c44da98b954eedeac495271d0f": ("DAI", 18),
        "0x853d955acef822db058eb8505911ed77f175b99e": ("FRAX", 18),
        "0x5f98805a4e8be255a32880fdec7f6728c6568ba0": ("LUSD", 18),
        "0x0000000000085d4780b73119b644ae5ecd22b376": ("TUSD", 18),
    },
    42161: {
        "0xfd086bc7cd5c481dcc9c85ebe478a1c0b69fcbb9": ("USDT", 6),
        "0xaf88d065e77c8cc2239327c5edb3a432268e5831": ("USDC", 6),
        "0xda10009cbd5d07dd0cecc66161fc93d7c9000da1": ("DAI", 18),
    },
    8453: {
        "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913": ("USDC", 6),
        "0x50c5725949a6f0c72e6c4a641f24049a917db0cb": ("DAI", 18),
    },
}

STABLE_SYMBOLS = frozenset({"USDT", "USDC"})

# Token contracts and sinks never treated as candidate wallets
IGNORED_ADDRESSES: frozenset[str] = frozenset({
    ZERO_ADDRESS,
    "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2",  # WETH
    "0xdac17f958d2ee523a2206206994597c13d831ec7",  # USDT
    "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48",  # USDC
    "0x6b175474e89094c44da98b954eedeac495271d0f",  # DAI
    "0x2260fac5e5542a773aa44fbcfedf7c193bc2c599",  # WBTC
    "0x514910771af9ca656af840dff83e8264ecf986ca",  # LINK
    "0x1f9840a85d5af5bf1d1762f925bdaddc4201f984",  # UNI
    "0x95ad61b0a150d79219dcf64e1e6cc01f0b64c4ce",  # SHIB
})

# DeFiLlama chain prefixes for price API
DEFILLAMA_CHAIN_PREFIX: dict[int, str] = {
    1: "ethereum",
    42161: "arbitrum",
    8453: "base",
}

# CoinGecko asset platforms
COINGECKO_PLATFORM: dict[int, str] = {
    1: "ethereum",
    42161: "arbitrum-one",
    8453: "base",
}

# CoinGecko coin id of each chain's native token
COINGECKO_NATIVE_ID: dict[int, str] = {
    1: "ethereum",
    42161: "ethereum",
    8453: "ethereum",
}


def is_stablecoin(chain_id: int, token_address: str | None, symbol: str | None = None) -> bool:
    """Allow-list match, or the symbol heuristic (ends with USD, or USDT/USDC)."""
    if token_address and token_address.lower() in STABLECOINS.get(chain_id, {}):
        return True
    if symbol:
        sym = symbol.strip().upper()
        return sym.endswith("USD") or sym in STABLE_SYMBOLS
    return False
