"""
Settlement executor capability.

The redemption queue hands each claimed entry to exactly one `execute`
call. Any exception means the settlement failed; implementations must not
retry on the engine's behalf.
"""

from dataclasses import dataclass
import logging

from poolledger.core.units import Shares, Usdc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionResult:
    tx_hash: str
    amount: Usdc


class SettlementExecutor:
    def execute(self, chain_pool_id: int, investor_address: str, shares: Shares) -> ExecutionResult:
        raise NotImplementedError


class PoolContractExecutor(SettlementExecutor):
    """Settles redemptions through the AssetPool contract."""

    def __init__(self, service=None):
        if service is None:
            from .pool_contract import PoolContractService

            service = PoolContractService()
        self.service = service

    def execute(self, chain_pool_id: int, investor_address: str, shares: Shares) -> ExecutionResult:
        position_shares, current_value, _ = self.service.get_position_value(chain_pool_id, investor_address)
        if position_shares < shares.raw:
            raise ValueError(
                f"On-chain position holds {position_shares} shares, cannot redeem {shares.raw}"
            )

        try:
            result = self.service.redeem(chain_pool_id, shares.raw)
        except Exception as e:
            raise RuntimeError(f"On-chain redemption failed: {e}") from e

        # Value of the redeemed slice of the position, read before the redeem
        amount = current_value * shares.raw // position_shares
        return ExecutionResult(tx_hash=result["tx_hash"], amount=Usdc(amount))
