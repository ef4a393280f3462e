"""CTF (Conditional Tokens Framework) client for position redemption.

After a market resolves, winning outcome tokens are redeemed for USDC
collateral by calling redeemPositions() on the Conditional Tokens contract.

Reference: https://github.com/Polymarket/conditional-token-examples-py
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional

import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

log = structlog.get_logger()


# Polygon mainnet addresses
CTF_ADDRESS = "0x4D97DCd97eC945f40cF65F87097ACe5EA0476045"
USDC_ADDRESS = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"  # USDC.e

CTF_ABI = [
    {
        "inputs": [
            {"name": "collateralToken", "type": "address"},
            {"name": "parentCollectionId", "type": "bytes32"},
            {"name": "conditionId", "type": "bytes32"},
            {"name": "indexSets", "type": "uint256[]"},
        ],
        "name": "redeemPositions",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

# Binary markets: index set 1 = outcome 0 (Up), index set 2 = outcome 1 (Down)
OUTCOME_INDEX_SETS = {"UP": [1], "DOWN": [2]}
ALL_BINARY_INDEX_SETS = [1, 2]


class CTFError(Exception):
    """Base error for CTF operations."""


class TransientCTFError(CTFError):
    """Retriable error (RPC hiccup, nonce race, timeout)."""


class RedemptionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class RedemptionResult:
    status: RedemptionStatus
    condition_id: str
    tx_hash: Optional[str] = None
    gas_used: Optional[int] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == RedemptionStatus.SUCCESS


def index_sets_for_outcome(outcome: str) -> List[int]:
    """Index sets to redeem for an outcome label; unknown labels redeem both."""
    return OUTCOME_INDEX_SETS.get(outcome.strip().upper(), ALL_BINARY_INDEX_SETS)


def condition_id_to_bytes(condition_id: str) -> bytes:
    """Validate and convert a hex condition ID to bytes32."""
    hex_part = condition_id[2:] if condition_id.startswith("0x") else condition_id
    try:
        condition_bytes = bytes.fromhex(hex_part)
    except ValueError:
        raise CTFError(f"Invalid condition_id hex: {condition_id[:20]}...")
    if len(condition_bytes) != 32:
        raise CTFError(f"Invalid condition_id length: {len(condition_bytes)}, expected 32")
    return condition_bytes


class CTFClient:
    """Redeems resolved positions on Polygon.

    web3 calls are synchronous, so each one runs in a worker thread.
    """

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        ctf_address: str = CTF_ADDRESS,
        usdc_address: str = USDC_ADDRESS,
        gas_price_multiplier: float = 1.2,
        default_gas_limit: int = 300000,
        receipt_timeout: int = 120,
    ):
        self._rpc_url = rpc_url
        self._private_key = private_key
        self._ctf_address = ctf_address
        self._usdc_address = usdc_address
        self._gas_price_multiplier = gas_price_multiplier
        self._default_gas_limit = default_gas_limit
        self._receipt_timeout = receipt_timeout
        self._log = log.bind(component="ctf_client")

        self._w3 = None
        self._account = None
        self._ctf_contract = None

    @property
    def is_connected(self) -> bool:
        return self._w3 is not None

    async def connect(self) -> None:
        """Connect to the Polygon RPC and load the CTF contract."""
        if self._w3 is not None:
            return

        from eth_account import Account
        from web3 import Web3

        w3 = Web3(Web3.HTTPProvider(self._rpc_url))
        if not await asyncio.to_thread(w3.is_connected):
            raise CTFError(f"Failed to connect to RPC: {self._rpc_url}")

        self._account = Account.from_key(self._private_key)
        self._ctf_contract = w3.eth.contract(
            address=Web3.to_checksum_address(self._ctf_address),
            abi=CTF_ABI,
        )
        self._w3 = w3
        self._log.info("ctf_client_connected", rpc=self._rpc_url, address=self._account.address)

    async def redeem_positions(
        self,
        condition_id: str,
        index_sets: Optional[List[int]] = None,
    ) -> RedemptionResult:
        """Send one redeemPositions() transaction for a resolved condition.

        Only the steps before broadcast are retried. Once the transaction has
        been sent, any failure comes back as a FAILED result carrying its hash.

        Raises:
            TransientCTFError: If the transaction could not be prepared after retries
            CTFError: For invalid input or a failed preparation
        """
        await self.connect()

        condition_bytes = condition_id_to_bytes(condition_id)
        index_sets = index_sets or ALL_BINARY_INDEX_SETS
        self._log.info(
            "redeeming_positions",
            condition_id=condition_id[:16] + "...",
            index_sets=index_sets,
        )

        signed = await self._prepare_transaction(condition_bytes, index_sets)
        w3 = self._w3

        try:
            tx_hash = await asyncio.to_thread(w3.eth.send_raw_transaction, signed.raw_transaction)
        except Exception as e:
            self._log.error("redemption_send_failed", condition_id=condition_id[:16] + "...", error=str(e))
            return RedemptionResult(RedemptionStatus.FAILED, condition_id, error=str(e))

        tx_hash_hex = tx_hash.hex()
        try:
            receipt = await asyncio.to_thread(
                w3.eth.wait_for_transaction_receipt, tx_hash, self._receipt_timeout
            )
        except Exception as e:
            # Already broadcast: never resend, the hash is enough to follow up
            self._log.warning("redemption_receipt_unavailable", tx_hash=tx_hash_hex, error=str(e))
            return RedemptionResult(
                RedemptionStatus.FAILED,
                condition_id,
                tx_hash=tx_hash_hex,
                error=f"Receipt unavailable: {e}",
            )

        if receipt["status"] == 1:
            self._log.info("redemption_successful", tx_hash=tx_hash_hex, gas_used=receipt["gasUsed"])
            return RedemptionResult(
                RedemptionStatus.SUCCESS, condition_id, tx_hash=tx_hash_hex, gas_used=receipt["gasUsed"]
            )
        self._log.error("redemption_tx_reverted", tx_hash=tx_hash_hex)
        return RedemptionResult(
            RedemptionStatus.FAILED, condition_id, tx_hash=tx_hash_hex, error="Transaction reverted"
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(TransientCTFError),
        reraise=True,
    )
    async def _prepare_transaction(self, condition_bytes: bytes, index_sets: List[int]) -> Any:
        """Build and sign the transaction with a fresh nonce and gas price."""
        from web3 import Web3

        w3 = self._w3
        address = self._account.address
        try:
            nonce = await asyncio.to_thread(w3.eth.get_transaction_count, address)
            gas_price = await asyncio.to_thread(lambda: w3.eth.gas_price)
            tx = await asyncio.to_thread(
                self._ctf_contract.functions.redeemPositions(
                    Web3.to_checksum_address(self._usdc_address),
                    bytes(32),  # Root collection
                    condition_bytes,
                    index_sets,
                ).build_transaction,
                {
                    "from": address,
                    "nonce": nonce,
                    "gasPrice": int(gas_price * self._gas_price_multiplier),
                    "gas": self._default_gas_limit,
                },
            )
            return w3.eth.account.sign_transaction(tx, self._private_key)
        except Exception as e:
            error_str = str(e)
            if "nonce" in error_str.lower() or "timeout" in error_str.lower():
                raise TransientCTFError(error_str) from e
            raise CTFError(f"Failed to prepare redemption: {error_str}") from e
