"""
Contract Reader

Point-in-time contract reads over web3, plus the attempt-with-default
combinator every reconciliation read goes through: each call runs in a
worker thread under its own timeout and degrades to a default value on
failure instead of raising.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from web3 import Web3
from web3.contract import Contract

from .abis import get_abi
from .types import ReadResult, ContractReadError
from .logging_config import get_logger, log_read_failure
from .metrics_server import MetricsServer

logger = logging.getLogger(__name__)


class ContractReader:
    """Synchronous contract reader bound to a web3 provider"""

    def __init__(self, web3: Web3):
        self.web3 = web3
        # Contract handles only, never call results
        self._contracts: Dict[Tuple[str, str], Contract] = {}

    def _contract(self, address: str, abi: str) -> Contract:
        key = (address.lower(), abi)
        contract = self._contracts.get(key)
        if contract is None:
            contract = self.web3.eth.contract(
                address=Web3.to_checksum_address(address),
                abi=get_abi(abi)
            )
            self._contracts[key] = contract
        return contract

    def read(self, address: str, abi: str, function_name: str, args: Sequence[Any] = ()) -> Any:
        """
        Call a view function against current chain state.

        Raises:
            ContractReadError: on any provider, ABI or revert failure
        """
        try:
            contract = self._contract(address, abi)
            function = getattr(contract.functions, function_name)
            return function(*args).call()
        except Exception as e:
            raise ContractReadError(f"{function_name}{tuple(args)} on {address} failed: {e}") from e

    def switch_provider(self, web3: Web3):
        """Rebind to another provider (e.g. after RPC failover)"""
        self.web3 = web3
        self._contracts.clear()


async def attempt_with_default(
    operation: Callable[[], Any],
    default: Any,
    timeout: float,
    label: str,
    context: Optional[Dict[str, Any]] = None,
) -> ReadResult:
    """
    Run a blocking read in a worker thread and never raise.

    Args:
        operation: Zero-argument callable performing the read
        default: Value used when the read fails or times out
        timeout: Seconds before the read is abandoned
        label: Read name for logs and metrics
        context: Extra log context (addresses, block, event source)

    Returns:
        ReadResult with succeeded=False and the default on failure
    """
    try:
        value = await asyncio.wait_for(asyncio.to_thread(operation), timeout)
        return ReadResult(value=value, succeeded=True)
    except asyncio.TimeoutError:
        error = f"timed out after {timeout}s"
    except Exception as e:
        error = str(e)

    log_read_failure(get_logger("reconciliation"), label, error, default, context)
    MetricsServer.increment_read_failure(label)
    return ReadResult(value=default, succeeded=False, error=error)


async def read_with_default(
    reader: ContractReader,
    address: str,
    abi: str,
    function_name: str,
    args: Sequence[Any] = (),
    default: Any = 0,
    timeout: float = 10.0,
    context: Optional[Dict[str, Any]] = None,
) -> ReadResult:
    """attempt_with_default applied to a single contract call"""
    return await attempt_with_default(
        lambda: reader.read(address, abi, function_name, args),
        default=default,
        timeout=timeout,
        label=function_name,
        context={"contract": address, "args": [str(a) for a in args], **(context or {})},
    )
