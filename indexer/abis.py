"""
Contract ABIs

Minimal ABI fragments for the MToken market contracts and the
Comptroller, covering only the calls and events the indexer uses.
"""

from typing import Any, Dict, List

from .types import ConfigurationError


def _view(name: str, inputs: List[Dict[str, str]], output_type: str) -> Dict[str, Any]:
    return {
        "inputs": inputs,
        "name": name,
        "outputs": [{"name": "", "type": output_type}],
        "stateMutability": "view",
        "type": "function",
    }


def _event(name: str, inputs: List[tuple]) -> Dict[str, Any]:
    return {
        "anonymous": False,
        "inputs": [
            {"indexed": False, "name": arg_name, "type": arg_type}
            for arg_name, arg_type in inputs
        ],
        "name": name,
        "type": "event",
    }


_ACCOUNT = [{"name": "account", "type": "address"}]
_MTOKEN = [{"name": "mToken", "type": "address"}]


MTOKEN_ABI: List[Dict[str, Any]] = [
    # Market-wide reads
    _view("totalBorrows", [], "uint256"),
    _view("getCash", [], "uint256"),
    _view("totalReserves", [], "uint256"),
    _view("reserveFactorMantissa", [], "uint256"),
    # Per-account reads
    _view("borrowBalanceStored", _ACCOUNT, "uint256"),
    _view("balanceOf", [{"name": "owner", "type": "address"}], "uint256"),
    # Events
    _event("Borrow", [
        ("borrower", "address"),
        ("borrowAmount", "uint256"),
        ("accountBorrows", "uint256"),
        ("totalBorrows", "uint256"),
    ]),
    _event("RepayBorrow", [
        ("payer", "address"),
        ("borrower", "address"),
        ("repayAmount", "uint256"),
        ("accountBorrows", "uint256"),
        ("totalBorrows", "uint256"),
    ]),
    _event("Mint", [
        ("minter", "address"),
        ("mintAmount", "uint256"),
        ("mintTokens", "uint256"),
    ]),
    _event("Redeem", [
        ("redeemer", "address"),
        ("redeemAmount", "uint256"),
        ("redeemTokens", "uint256"),
    ]),
    _event("LiquidateBorrow", [
        ("liquidator", "address"),
        ("borrower", "address"),
        ("repayAmount", "uint256"),
        ("mTokenCollateral", "address"),
        ("seizeTokens", "uint256"),
    ]),
]


COMPTROLLER_ABI: List[Dict[str, Any]] = [
    {
        "inputs": _MTOKEN,
        "name": "markets",
        "outputs": [
            {"name": "isListed", "type": "bool"},
            {"name": "collateralFactorMantissa", "type": "uint256"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    _view("supplyCaps", _MTOKEN, "uint256"),
    _view("borrowCaps", _MTOKEN, "uint256"),
    _view("liquidationIncentiveMantissa", [], "uint256"),
    _view("borrowGuardianPaused", _MTOKEN, "bool"),
]


ABIS: Dict[str, List[Dict[str, Any]]] = {
    "MToken": MTOKEN_ABI,
    "Comptroller": COMPTROLLER_ABI,
}


def get_abi(handle: str) -> List[Dict[str, Any]]:
    """Resolve an ABI handle from configuration"""
    try:
        return ABIS[handle]
    except KeyError:
        raise ConfigurationError(f"Unknown ABI handle: {handle}")


def event_abis(handle: str) -> List[Dict[str, Any]]:
    """Event entries of an ABI"""
    return [entry for entry in get_abi(handle) if entry.get("type") == "event"]
