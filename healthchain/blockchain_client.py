# healthchain/blockchain_client.py
import asyncio
import json
import time
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted, Web3Exception

from healthchain.config import Settings
from healthchain.errors import (
    LedgerTimeoutError,
    LedgerUnavailableError,
    MissingSignerError,
    ValidationError,
)
from healthchain.log import get_logger

logger = get_logger(__name__)

DEFAULT_ABI_DIR = Path(__file__).parent / "contracts"

# contract function -> capability whose contract implements it
OPERATION_CAPABILITIES = {
    "registerPatient": "identity",
    "registerDoctor": "identity",
    "registerHospital": "identity",
    "registerRecord": "records",
    "registerReport": "records",
    "updateReport": "records",
    "removeReport": "records",
    "grantConsent": "consent",
    "revokeConsent": "consent",
    "isAllowed": "consent",
    "payout": "incentives",
}

# records share the identity registry contract
CONTRACT_FILES = {
    "identity": "IdentityRegistry.abi.json",
    "records": "IdentityRegistry.abi.json",
    "consent": "ConsentManager.abi.json",
    "incentives": "IncentiveVault.abi.json",
}


def text_id(value: str) -> bytes:
    """keccak256 of a UTF-8 string, used for scope and rule identifiers."""
    return Web3.keccak(text=value)


def to_ledger_address(value: str) -> str:
    try:
        return Web3.to_checksum_address(value)
    except (ValueError, TypeError) as e:
        raise ValidationError(f"Invalid ledger address: {value!r}") from e


class SigningContext:
    """
    Signing capability for a single ledger transaction.

    Built either from the ``x-user-private-key`` request header or from the
    server's HOSPITAL_PRIVATE_KEY. Forwarding raw keys through headers is a
    development-only convention kept for client compatibility; a deployment
    should delegate signing to a key-custody service instead.
    """

    def __init__(self, private_key: str, source: str = "header"):
        try:
            self.account = Account.from_key(private_key)
        except (ValueError, TypeError) as e:
            raise ValidationError("Invalid signing key") from e
        self.source = source

    @property
    def address(self) -> str:
        return self.account.address

    @classmethod
    def from_header(cls, value: Optional[str]) -> Optional["SigningContext"]:
        if not value:
            return None
        return cls(value.strip(), source="header")

    @classmethod
    def server(cls, settings: Settings) -> Optional["SigningContext"]:
        if not settings.hospital_private_key:
            return None
        return cls(settings.hospital_private_key, source="server")

    def __repr__(self):
        return f"SigningContext(address={self.address}, source={self.source})"


class LedgerGateway:
    """
    The single point where an operation becomes on-chain committed.

    submit() blocks until the transaction is confirmed and returns its id.
    Callers decide whether a capability is ledger-active; the gateway only
    talks to the ledger.
    """

    async def submit(
        self,
        operation: str,
        args: Sequence[Any],
        signer: Optional[SigningContext],
    ) -> str:
        raise NotImplementedError

    async def call(self, operation: str, args: Sequence[Any]) -> Any:
        raise NotImplementedError


class Web3LedgerGateway(LedgerGateway):
    def __init__(
        self,
        rpc_url: Optional[str],
        addresses: Dict[str, Optional[str]],
        abi_dir: Optional[Path] = None,
        timeout: float = 120.0,
        gas_limit: int = 500_000,
    ):
        self.rpc_url = rpc_url
        self.addresses = addresses
        self.abi_dir = Path(abi_dir) if abi_dir else DEFAULT_ABI_DIR
        self.timeout = timeout
        self.gas_limit = gas_limit
        self._w3: Optional[Web3] = None
        self._contracts: Dict[str, Any] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "Web3LedgerGateway":
        return cls(
            rpc_url=settings.rpc_url,
            addresses={
                "identity": settings.identity_registry_address,
                "records": settings.identity_registry_address,
                "consent": settings.consent_manager_address,
                "incentives": settings.incentive_vault_address,
            },
            abi_dir=settings.contract_abi_dir,
            timeout=settings.ledger_timeout_seconds,
            gas_limit=settings.ledger_gas_limit,
        )

    def _web3(self) -> Web3:
        if self._w3 is not None:
            return self._w3

        if not self.rpc_url:
            raise LedgerUnavailableError("RPC_URL not configured")

        w3 = Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.timeout}))
        if not w3.is_connected():
            logger.warning(f"[BLOCKCHAIN] Cannot connect to {self.rpc_url}")
            raise LedgerUnavailableError(f"Ledger endpoint unreachable: {self.rpc_url}")

        self._w3 = w3
        return w3

    def _contract(self, operation: str):
        capability = OPERATION_CAPABILITIES.get(operation)
        if capability is None:
            raise LedgerUnavailableError(f"Unknown ledger operation: {operation}")

        if capability in self._contracts:
            return self._contracts[capability]

        address = self.addresses.get(capability)
        if not address:
            raise LedgerUnavailableError(f"Contract address for {capability} not configured")

        abi_path = self.abi_dir / CONTRACT_FILES[capability]
        try:
            with open(abi_path, "r", encoding="utf-8") as f:
                abi = json.load(f)
        except FileNotFoundError as e:
            raise LedgerUnavailableError(f"ABI file not found at {abi_path}") from e

        w3 = self._web3()
        contract = w3.eth.contract(address=w3.to_checksum_address(address), abi=abi)
        self._contracts[capability] = contract
        return contract

    def _submit_sync(self, operation, args, signer):
        try:
            w3 = self._web3()
            contract = self._contract(operation)
            account = signer.account

            tx = getattr(contract.functions, operation)(*args).build_transaction(
                {
                    "from": account.address,
                    "nonce": w3.eth.get_transaction_count(account.address),
                    "gas": self.gas_limit,
                    "gasPrice": w3.eth.gas_price,
                }
            )
            signed = account.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.timeout)
        except TimeExhausted as e:
            raise LedgerTimeoutError(f"{operation} not confirmed within {self.timeout}s") from e
        except (Web3Exception, requests.RequestException, OSError) as e:
            raise LedgerUnavailableError(f"{operation} failed: {e}") from e

        if receipt.get("status") == 0:
            raise LedgerUnavailableError(f"{operation} reverted")

        return Web3.to_hex(receipt["transactionHash"])

    def _call_sync(self, operation, args):
        try:
            contract = self._contract(operation)
            return getattr(contract.functions, operation)(*args).call()
        except (Web3Exception, requests.RequestException, OSError) as e:
            raise LedgerUnavailableError(f"{operation} failed: {e}") from e

    async def submit(self, operation, args, signer):
        if signer is None:
            raise MissingSignerError(f"Missing signing key for on-chain {operation}")

        try:
            tx_id = await asyncio.wait_for(
                asyncio.to_thread(self._submit_sync, operation, list(args), signer),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise LedgerTimeoutError(f"{operation} not confirmed within {self.timeout}s") from e

        logger.info(f"[BLOCKCHAIN] {operation} tx confirmed: {tx_id}")
        return tx_id

    async def call(self, operation, args):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._call_sync, operation, list(args)),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise LedgerTimeoutError(f"{operation} timed out after {self.timeout}s") from e


class StubLedgerGateway(LedgerGateway):
    """
    Placeholder gateway for flows with no contract behind them yet
    (relationship create/end).

    Transaction ids are synthetic and labelled ``stub_``; nothing reaches a
    ledger. A signer is still required so callers behave as they would against
    a real contract.
    """

    async def submit(self, operation, args, signer):
        if signer is None:
            raise MissingSignerError(f"Missing signing key for on-chain {operation}")

        tx_id = f"stub_{operation}_{int(time.time() * 1000)}"
        logger.info(f"[BLOCKCHAIN] {operation} stubbed, tx={tx_id}")
        return tx_id

    async def call(self, operation, args):
        raise LedgerUnavailableError(f"{operation} is not readable from the stub ledger")
