"""
AssetPool Contract Service
Handles position reads and relayer-submitted redemptions
"""

from typing import Dict, Any, Tuple
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
import logging
from .base_contract import BaseContractService

logger = logging.getLogger(__name__)


class PoolContractService(BaseContractService):
    """Service for interacting with the AssetPool contract"""

    def __init__(self):
        for name in ("POOL_CONTRACT_ADDRESS", "RELAYER_ADDRESS", "RELAYER_PRIVATE_KEY"):
            value = getattr(settings, name, "")
            if not value or value.lower() == settings.ZERO_ADDRESS:
                raise ImproperlyConfigured(f"{name} not configured")
        super().__init__(
            contract_address=settings.POOL_CONTRACT_ADDRESS,
            abi_path=settings.POOL_ABI_PATH,
        )

    # ============================================================
    # READ-ONLY FUNCTIONS
    # ============================================================

    def get_position_value(self, chain_pool_id: int, investor_address: str) -> Tuple[int, int, int]:
        """
        Get an investor's on-chain position

        Returns:
            (shares, current_value, deposited_amount) in contract base units
        """
        investor_address = self.checksum_address(investor_address)
        shares, current_value, deposited = self.call_read_function(
            'getPositionValue', chain_pool_id, investor_address
        )
        return shares, current_value, deposited

    # ============================================================
    # WRITE FUNCTIONS
    # ============================================================

    def redeem(self, chain_pool_id: int, shares: int) -> Dict[str, Any]:
        """
        Redeem pool shares via the relayer (requires the trusted relayer role)

        Args:
            chain_pool_id: On-chain pool id
            shares: Shares to redeem (base units)

        Returns:
            Transaction details
        """
        logger.info(f"Executing on-chain redeem: pool={chain_pool_id}, shares={shares}")

        function = self.contract.functions.redeem(chain_pool_id, shares)
        result = self.build_and_send_transaction(
            function=function,
            from_address=settings.RELAYER_ADDRESS,
            private_key=settings.RELAYER_PRIVATE_KEY,
        )

        logger.info(f"Redeemed {shares} shares from pool {chain_pool_id} (tx: {result['tx_hash']})")
        return result
