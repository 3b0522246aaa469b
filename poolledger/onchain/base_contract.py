"""
Web3 contract access shared by the on-chain services.

Reads go straight to the contract; writes are signed with a relayer key and
waited on until mined.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional
import json
import logging
import time

from django.conf import settings
from web3 import Web3
from web3.contract import Contract
from web3.exceptions import ContractLogicError

logger = logging.getLogger(__name__)

DEFAULT_GAS_LIMIT = 500_000
RECEIPT_TIMEOUT = 120

# Errors worth a resend with a fresh nonce
NONCE_ERRORS = ("nonce", "replacement transaction underpriced")


def load_abi(abi_path) -> List[Dict[str, Any]]:
    return json.loads(Path(abi_path).read_text())


class BaseContractService:
    """One deployed contract behind an HTTP provider."""

    def __init__(self, contract_address: str, abi_path, provider_url: Optional[str] = None):
        if not contract_address:
            raise ValueError("Contract address is not configured")

        self.provider_url = provider_url or settings.WEB3_PROVIDER_URL
        self.web3 = Web3(Web3.HTTPProvider(self.provider_url))
        if not self.web3.is_connected():
            raise ConnectionError(f"Failed to connect to Web3 provider: {self.provider_url}")

        self.contract_address = Web3.to_checksum_address(contract_address)
        self.contract: Contract = self.web3.eth.contract(
            address=self.contract_address, abi=load_abi(abi_path)
        )
        logger.info(f"Connected to contract {self.contract_address}")

    @staticmethod
    def checksum_address(address: str) -> str:
        return Web3.to_checksum_address(address)

    def call_read_function(self, function_name: str, *args) -> Any:
        try:
            return getattr(self.contract.functions, function_name)(*args).call()
        except Exception as e:
            logger.error(f"Read of {function_name} failed: {e}")
            raise

    def _gas_limit(self, function, sender: str, gas_multiplier: float) -> int:
        try:
            return int(function.estimate_gas({"from": sender}) * gas_multiplier)
        except ContractLogicError:
            # Reverts in estimation would revert on-chain
            raise
        except Exception as e:
            logger.warning(f"Gas estimation failed ({e}), using {DEFAULT_GAS_LIMIT}")
            return DEFAULT_GAS_LIMIT

    def _send_once(self, function, sender: str, private_key: str, gas_multiplier: float) -> Dict[str, Any]:
        tx = function.build_transaction({
            "from": sender,
            "nonce": self.web3.eth.get_transaction_count(sender, "pending"),
            "gas": self._gas_limit(function, sender, gas_multiplier),
            "gasPrice": self.web3.eth.gas_price,
            "chainId": self.web3.eth.chain_id,
        })
        signed = self.web3.eth.account.sign_transaction(tx, private_key)
        tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
        logger.info(f"Sent transaction {Web3.to_hex(tx_hash)}")

        receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=RECEIPT_TIMEOUT)
        if receipt["status"] == 0:
            raise RuntimeError(f"Transaction {Web3.to_hex(tx_hash)} reverted on-chain")

        logger.info(f"Transaction {Web3.to_hex(tx_hash)} mined in block {receipt['blockNumber']}")
        return {
            "tx_hash": Web3.to_hex(tx_hash),
            "receipt": receipt,
            "gas_used": receipt["gasUsed"],
            "block_number": receipt["blockNumber"],
        }

    def build_and_send_transaction(
        self,
        function,
        from_address: str,
        private_key: str,
        gas_multiplier: float = 1.2,
        max_retries: int = 3,
    ) -> Dict[str, Any]:
        """
        Sign and submit `function` from `from_address`, resending with a fresh
        nonce when the node reports a nonce conflict. Contract reverts are
        never resent.

        Returns tx_hash, receipt, gas_used and block_number.
        """
        sender = self.checksum_address(from_address)
        for attempt in range(1, max_retries + 1):
            try:
                return self._send_once(function, sender, private_key, gas_multiplier)
            except ContractLogicError as e:
                logger.error(f"Contract reverted: {e}")
                raise
            except Exception as e:
                retryable = any(marker in str(e).lower() for marker in NONCE_ERRORS)
                if not retryable or attempt == max_retries:
                    logger.error(f"Transaction failed: {e}")
                    raise
                logger.warning(f"Nonce conflict, resending (attempt {attempt + 1}/{max_retries})")
                time.sleep(1)
        raise RuntimeError("Transaction failed after maximum retries")
