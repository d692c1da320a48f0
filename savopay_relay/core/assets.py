"""Supported crypto assets advertised to the point-of-sale client."""
from typing import Dict, List, Union

DEFAULT_ASSETS: List[Dict[str, Union[str, List[str]]]] = [
    {"currency": "USDT", "networks": ["ERC20", "TRON"]},
    {"currency": "USDC", "networks": ["ERC20"]},
    {"currency": "BTC", "networks": ["BTC"]},
    {"currency": "ETH", "networks": ["ERC20"]},
]


def parse_supported_assets(value: str) -> List[Dict[str, Union[str, List[str]]]]:
    """
    Parse ``SYMBOL:NET|NET,SYMBOL:NET`` into asset entries.

    Symbols and networks are upper-cased; entries without a symbol are skipped.

    Example:
        >>> parse_supported_assets("usdt:erc20|tron,BTC:BTC")
        [{'currency': 'USDT', 'networks': ['ERC20', 'TRON']}, {'currency': 'BTC', 'networks': ['BTC']}]
    """
    assets: List[Dict[str, Union[str, List[str]]]] = []
    for part in (value or "").split(","):
        part = part.strip()
        if not part:
            continue
        symbol, _, networks = part.partition(":")
        symbol = symbol.strip().upper()
        if not symbol:
            continue
        assets.append(
            {
                "currency": symbol,
                "networks": [net.strip().upper() for net in networks.split("|") if net.strip()],
            }
        )
    return assets


def supported_assets(value: str) -> List[Dict[str, Union[str, List[str]]]]:
    """Configured assets, or the defaults when nothing parses."""
    return parse_supported_assets(value) or [dict(asset) for asset in DEFAULT_ASSETS]
