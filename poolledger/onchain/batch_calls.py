"""
Smart wallet batch calls.

Swaps execute as one `executeBatch(targets, values, datas)` call on the
investor's smart wallet, so redeem, approve and invest either all land or
none do. Encoding only needs the ABIs; no provider connection is made.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import List

from django.conf import settings
from web3 import Web3

from .base_contract import load_abi


@dataclass(frozen=True)
class BatchCall:
    target: str
    value: int
    data: str


@dataclass(frozen=True)
class BatchPayload:
    calls: List[BatchCall]
    call_data: str  # executeBatch calldata

    @property
    def targets(self) -> List[str]:
        return [c.target for c in self.calls]

    @property
    def values(self) -> List[int]:
        return [c.value for c in self.calls]

    @property
    def datas(self) -> List[str]:
        return [c.data for c in self.calls]


@lru_cache(maxsize=None)
def _contract(abi_path):
    return Web3().eth.contract(abi=load_abi(abi_path))


def _hex(data) -> str:
    data = data if isinstance(data, str) else Web3.to_hex(data)
    return data if data.startswith("0x") else f"0x{data}"


def encode_swap_batch(
    pool_address: str,
    usdc_address: str,
    source_chain_pool_id: int,
    target_chain_pool_id: int,
    shares: int,
    invest_amount: int,
) -> BatchPayload:
    """
    Encode redeem(source) -> approve(pool, amount) -> invest(target).

    The pool contract is both the redeem/invest target and the USDC spender.
    """
    pool_address = Web3.to_checksum_address(pool_address)
    usdc_address = Web3.to_checksum_address(usdc_address)

    pool = _contract(str(settings.POOL_ABI_PATH))
    erc20 = _contract(str(settings.ERC20_ABI_PATH))
    wallet = _contract(str(settings.SMART_WALLET_ABI_PATH))

    calls = [
        BatchCall(pool_address, 0, _hex(pool.encode_abi("redeem", args=[source_chain_pool_id, shares]))),
        BatchCall(usdc_address, 0, _hex(erc20.encode_abi("approve", args=[pool_address, invest_amount]))),
        BatchCall(pool_address, 0, _hex(pool.encode_abi("invest", args=[target_chain_pool_id, invest_amount]))),
    ]
    call_data = wallet.encode_abi(
        "executeBatch",
        args=[[c.target for c in calls], [c.value for c in calls], [Web3.to_bytes(hexstr=c.data) for c in calls]],
    )
    return BatchPayload(calls=calls, call_data=_hex(call_data))
