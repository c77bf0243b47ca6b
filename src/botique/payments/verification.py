"""USDC payment verification on Base.

Buyers pay agents directly with an ERC-20 `transfer` on the USDC contract.
Verification:
1. Fetch the transaction and its receipt via JSON-RPC
2. Check the receipt succeeded and the call targets the USDC contract
3. Decode `transfer(address,uint256)` calldata
4. Check recipient and amount (6 decimals, 0.1% tolerance)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
import httpx
import structlog

from ..config import Settings

logger = structlog.get_logger()

# keccak256("transfer(address,uint256)")[:4]
TRANSFER_SELECTOR = "0xa9059cbb"


@dataclass
class VerificationResult:
    """Outcome of checking one transaction hash."""
    valid: bool
    tx_hash: str
    error: Optional[str] = None
    amount: Optional[float] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    block_number: Optional[int] = None


class PaymentVerifier(ABC):
    """Confirms that a transaction settled the expected amount to the expected wallet."""

    @abstractmethod
    async def verify(
        self,
        tx_hash: str,
        expected_amount: float,
        recipient: str,
    ) -> VerificationResult:
        ...


class RPCError(Exception):
    """JSON-RPC node returned an error or an unusable response."""


def _normalize_address(address: Optional[str]) -> str:
    """Lowercase with 0x prefix; accepts 32-byte left-padded words."""
    if not address:
        return ""
    address = address.lower()
    if not address.startswith("0x"):
        address = "0x" + address
    if len(address) == 66:
        address = "0x" + address[-40:]
    return address


def decode_transfer_input(data: str) -> Optional[tuple[str, int]]:
    """Decode ERC-20 `transfer(address to, uint256 amount)` calldata.

    Returns:
        (recipient, raw amount) or None if the calldata is not a transfer
    """
    if not data:
        return None
    data = data.lower()
    if not data.startswith(TRANSFER_SELECTOR):
        return None
    args = data[len(TRANSFER_SELECTOR):]
    if len(args) < 128:
        return None
    try:
        to_word = args[:64]
        amount_raw = int(args[64:128], 16)
    except ValueError:
        return None
    return _normalize_address("0x" + to_word), amount_raw


class OnChainUSDCVerifier(PaymentVerifier):
    """Verifies USDC transfers against a Base JSON-RPC node."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.rpc_url = settings.base_rpc_url
        self.usdc_address = _normalize_address(settings.usdc_address)
        self.decimals = settings.usdc_decimals
        self.tolerance = settings.payment_tolerance
        self.timeout = settings.rpc_timeout_seconds
        self._transport = transport

    async def _rpc_call(self, client: httpx.AsyncClient, method: str, params: list):
        response = await client.post(
            self.rpc_url,
            json={"jsonrpc": "2.0", "method": method, "params": params, "id": 1},
            headers={"Content-Type": "application/json"},
        )
        response.raise_for_status()
        result = response.json()
        if "error" in result:
            raise RPCError(f"RPC error: {result['error']}")
        return result.get("result")

    async def verify(
        self,
        tx_hash: str,
        expected_amount: float,
        recipient: str,
    ) -> VerificationResult:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                tx = await self._rpc_call(client, "eth_getTransactionByHash", [tx_hash])
                if not tx:
                    return VerificationResult(False, tx_hash, error="Transaction not found on blockchain")
                receipt = await self._rpc_call(client, "eth_getTransactionReceipt", [tx_hash])
        except (httpx.HTTPError, RPCError, ValueError) as e:
            logger.warning("payment_rpc_failed", tx_hash=tx_hash[:12] + "...", error=str(e))
            return VerificationResult(False, tx_hash, error="Could not reach the payment network")

        if not receipt:
            return VerificationResult(False, tx_hash, error="Transaction is not yet confirmed")

        try:
            succeeded = int(receipt.get("status") or "0x0", 16) == 1
        except ValueError:
            succeeded = False
        if not succeeded:
            return VerificationResult(False, tx_hash, error="Transaction failed (reverted on-chain)")

        to_contract = _normalize_address(tx.get("to"))
        if to_contract != self.usdc_address:
            return VerificationResult(
                False, tx_hash, error=f"Transaction not to USDC contract (sent to {tx.get('to')})"
            )

        decoded = decode_transfer_input(tx.get("input") or tx.get("data") or "")
        if decoded is None:
            return VerificationResult(False, tx_hash, error="Transaction is not a USDC transfer")

        to_address, amount_raw = decoded
        if to_address != _normalize_address(recipient):
            return VerificationResult(
                False,
                tx_hash,
                error=f"Payment sent to wrong address: expected {recipient}, got {to_address}",
            )

        amount = amount_raw / (10 ** self.decimals)
        expected = float(expected_amount)
        if abs(amount - expected) > expected * self.tolerance:
            return VerificationResult(
                False,
                tx_hash,
                error=f"Amount mismatch: expected {expected} USDC, got {amount} USDC",
            )

        block = receipt.get("blockNumber")
        return VerificationResult(
            valid=True,
            tx_hash=tx_hash,
            amount=amount,
            from_address=_normalize_address(tx.get("from")),
            to_address=to_address,
            block_number=int(block, 16) if block else None,
        )


class StaticVerifier(PaymentVerifier):
    """Accepts every transaction, or rejects every one with a fixed error.

    For local runs with payments disabled, and for tests.
    """

    def __init__(self, valid: bool = True, error: str = "Payment not found"):
        self.valid = valid
        self.error = error
        self.calls: list[tuple[str, float, str]] = []

    async def verify(
        self,
        tx_hash: str,
        expected_amount: float,
        recipient: str,
    ) -> VerificationResult:
        self.calls.append((tx_hash, expected_amount, recipient))
        if not self.valid:
            return VerificationResult(False, tx_hash, error=self.error)
        return VerificationResult(
            valid=True,
            tx_hash=tx_hash,
            amount=float(expected_amount),
            to_address=_normalize_address(recipient),
        )
