"""Chain access — the ``ChainClient`` Protocol and its web3 implementation.

Transactions are built and signed before they are broadcast so the hash is
known (and can be recorded) before anything leaves the process.  Network
failures are raised as ``TransientChainError``; everything else propagates
unchanged and is treated as permanent by the deployer.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

import requests
from eth_account import Account
from pydantic import BaseModel, ConfigDict
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3RPCError

from bootstrapper.core.forge import CompiledContract
from bootstrapper.errors import TransientChainError

logger = logging.getLogger(__name__)


class SignedTransaction(BaseModel):
    """A signed, not yet broadcast, transaction."""

    model_config = ConfigDict(frozen=True)

    tx_hash: str
    raw: bytes
    nonce: int


class TxReceipt(BaseModel):
    model_config = ConfigDict(frozen=True)

    tx_hash: str
    status: int
    block_number: int | None = None
    contract_address: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class ChainClient(Protocol):
    """Minimal signing chain client used by the deployer."""

    @property
    def address(self) -> str:
        """The deployer account."""
        ...

    def get_nonce(self) -> int:
        """Next nonce of the deployer account, counting pending transactions."""
        ...

    def build_deploy(
        self, contract: CompiledContract, args: Sequence[Any], nonce: int
    ) -> SignedTransaction:
        ...

    def build_call(
        self,
        to: str,
        abi: list[dict[str, Any]],
        function: str,
        args: Sequence[Any],
        nonce: int,
    ) -> SignedTransaction:
        ...

    def encode_call(
        self, abi: list[dict[str, Any]], function: str, args: Sequence[Any]
    ) -> str:
        """Hex calldata for *function*, e.g. a proxy initializer."""
        ...

    def send(self, tx: SignedTransaction) -> str:
        """Broadcast *tx* and return its hash.  Re-sending is harmless."""
        ...

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt:
        ...

    def get_receipt(self, tx_hash: str) -> TxReceipt | None:
        """Receipt of a mined transaction, or ``None`` if not mined."""
        ...


# ---------------------------------------------------------------------------
# web3 implementation
# ---------------------------------------------------------------------------

_TRANSIENT = (requests.RequestException, ConnectionError, TimeoutError, TimeExhausted)

_ALREADY_KNOWN = ("already known", "known transaction", "already imported")


class Web3ChainClient:
    """Signs locally with ``eth_account`` and talks JSON-RPC over HTTP."""

    def __init__(self, rpc_url: str, private_key: str, *, request_timeout: int = 60) -> None:
        if not rpc_url:
            raise ValueError("An RPC URL is required")
        if not private_key:
            raise ValueError("A private key is required")
        self._w3 = Web3(
            Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
        )
        self._account = Account.from_key(private_key)
        self._chain_id: int | None = None

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = self._guard(lambda: self._w3.eth.chain_id)
        return self._chain_id

    def get_nonce(self) -> int:
        return self._guard(
            lambda: self._w3.eth.get_transaction_count(self._account.address, "pending")
        )

    def build_deploy(
        self, contract: CompiledContract, args: Sequence[Any], nonce: int
    ) -> SignedTransaction:
        factory = self._w3.eth.contract(abi=contract.abi, bytecode=contract.bytecode)
        tx = self._guard(
            lambda: factory.constructor(*args).build_transaction(self._tx_params(nonce))
        )
        return self._sign(tx, nonce)

    def build_call(
        self,
        to: str,
        abi: list[dict[str, Any]],
        function: str,
        args: Sequence[Any],
        nonce: int,
    ) -> SignedTransaction:
        target = self._w3.eth.contract(address=Web3.to_checksum_address(to), abi=abi)
        tx = self._guard(
            lambda: target.functions[function](*args).build_transaction(self._tx_params(nonce))
        )
        return self._sign(tx, nonce)

    def encode_call(
        self, abi: list[dict[str, Any]], function: str, args: Sequence[Any]
    ) -> str:
        return self._w3.eth.contract(abi=abi).encode_abi(function, args=list(args))

    def send(self, tx: SignedTransaction) -> str:
        try:
            return Web3.to_hex(self._guard(lambda: self._w3.eth.send_raw_transaction(tx.raw)))
        except (ValueError, Web3RPCError) as exc:
            if any(marker in str(exc).lower() for marker in _ALREADY_KNOWN):
                logger.debug("Transaction %s was already broadcast.", tx.tx_hash)
                return tx.tx_hash
            raise

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt:
        receipt = self._guard(
            lambda: self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        )
        return self._to_receipt(tx_hash, receipt)

    def get_receipt(self, tx_hash: str) -> TxReceipt | None:
        try:
            receipt = self._guard(lambda: self._w3.eth.get_transaction_receipt(tx_hash))
        except TransactionNotFound:
            return None
        return self._to_receipt(tx_hash, receipt)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _tx_params(self, nonce: int) -> dict[str, Any]:
        return {
            "from": self._account.address,
            "nonce": nonce,
            "chainId": self.chain_id,
        }

    def _sign(self, tx: dict[str, Any], nonce: int) -> SignedTransaction:
        signed = self._account.sign_transaction(tx)
        return SignedTransaction(
            tx_hash=Web3.to_hex(signed.hash),
            raw=bytes(signed.raw_transaction),
            nonce=nonce,
        )

    @staticmethod
    def _to_receipt(tx_hash: str, receipt: Any) -> TxReceipt:
        contract_address = receipt.get("contractAddress")
        return TxReceipt(
            tx_hash=tx_hash,
            status=int(receipt.get("status", 0)),
            block_number=receipt.get("blockNumber"),
            contract_address=(
                Web3.to_checksum_address(contract_address) if contract_address else None
            ),
        )

    @staticmethod
    def _guard(call):
        try:
            return call()
        except _TRANSIENT as exc:
            raise TransientChainError(f"RPC request failed: {exc}") from exc
