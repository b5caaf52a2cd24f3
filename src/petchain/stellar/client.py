"""
Async Stellar ledger client built on stellar-sdk's ServerAsync.

Anchoring writes one account data entry ("manage_data") per record:

    name  = "MR_" + first 10 hex chars of the record hash
    value = IPFS CID of the encrypted record

Horizon's POST /transactions blocks until the transaction is included in a
ledger (or rejected), so a returned hash means the anchor is final.

The client holds one signing identity, built once from the configured secret.
Without a secret it runs read-only: anchoring raises LedgerNotConfigured while
verification can still read a configured account's data entries.
"""
import asyncio
import base64
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Union

from stellar_sdk import Keypair, ServerAsync, TransactionBuilder
from stellar_sdk.client.aiohttp_client import AiohttpClient
from stellar_sdk.client.base_async_client import BaseAsyncClient
from stellar_sdk.exceptions import (
    BadRequestError,
    BadResponseError,
    BaseHorizonError,
    ConnectionError as HorizonConnectionError,
    NotFoundError,
)

logger = logging.getLogger(__name__)

DATA_KEY_PREFIX = "MR_"
DATA_KEY_HASH_CHARS = 10
TX_VALIDITY_SECONDS = 30
BASE_FEE = 100  # stroops


class LedgerNotConfigured(RuntimeError):
    """No signing identity (or account to read) is configured."""


class LedgerUnavailable(RuntimeError):
    """Horizon could not be reached, timed out, or returned a server error."""


class LedgerSubmissionFailed(RuntimeError):
    """Horizon rejected a transaction.

    Attributes:
        result_codes: Horizon's extras.result_codes, e.g.
            {"transaction": "tx_bad_seq"} or
            {"transaction": "tx_failed", "operations": ["op_low_reserve"]}.
        status_code: HTTP status of the rejection, if any.
    """

    def __init__(
        self,
        message: str,
        result_codes: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.result_codes = result_codes
        self.status_code = status_code


def record_data_key(record_hash: str) -> str:
    """Account data entry name for a record hash. Shared by anchor and verify."""
    return f"{DATA_KEY_PREFIX}{record_hash[:DATA_KEY_HASH_CHARS]}"


class StellarLedgerClient:
    """Anchors record pointers as account data entries on Stellar."""

    def __init__(
        self,
        horizon_url: str,
        network_passphrase: str,
        secret_key: Optional[str] = None,
        account_id: Optional[str] = None,
        base_fee: int = BASE_FEE,
        timeout: float = 60.0,
        client: Optional[BaseAsyncClient] = None,
    ):
        """
        Args:
            horizon_url: Horizon base URL (e.g. https://horizon-testnet.stellar.org).
            network_passphrase: Network passphrase signatures are bound to.
            secret_key: "S..." seed of the signing identity. None or "" means
                read-only mode.
            account_id: Account to read in read-only mode. Defaults to the
                signing identity's public key.
            base_fee: Fee per operation in stroops.
            timeout: Per-request timeout in seconds.
            client: HTTP client handed to ServerAsync. Defaults to a fresh
                AiohttpClient per call.
        """
        if not horizon_url:
            raise ValueError("Horizon URL cannot be empty")
        self.horizon_url = horizon_url.rstrip("/")
        self.network_passphrase = network_passphrase
        self.base_fee = base_fee
        self.timeout = timeout
        self._client = client

        self.keypair: Optional[Keypair] = (
            Keypair.from_secret(secret_key) if secret_key else None
        )
        if self.keypair is not None:
            logger.info("Stellar initialized with account: %s", self.keypair.public_key)
        else:
            logger.warning("Stellar secret key not provided. Running in limited mode.")
        self.account_id = account_id or (
            self.keypair.public_key if self.keypair is not None else None
        )

    @property
    def read_only(self) -> bool:
        return self.keypair is None

    # ─── Anchoring ────────────────────────────────────────────────────────────

    async def anchor_record(self, record_hash: str, store_address: str) -> str:
        """Write record_data_key(record_hash) = store_address; return the tx hash.

        Raises:
            LedgerNotConfigured: in read-only mode.
            LedgerSubmissionFailed: if Horizon rejects the transaction.
            LedgerUnavailable: on transport errors or server failures.
        """
        if self.keypair is None:
            raise LedgerNotConfigured("Stellar keypair not initialized")
        return await self.manage_data(record_data_key(record_hash), store_address)

    async def verify_on_chain(self, record_hash: str) -> Optional[str]:
        """Return the store address anchored for record_hash, or None if absent.

        Raises:
            LedgerNotConfigured: if there is no account to read.
            LedgerUnavailable: if Horizon cannot be reached.
        """
        value = await self.read_data_entry(record_data_key(record_hash))
        return value.decode("utf-8") if value is not None else None

    async def manage_data(
        self,
        name: str,
        value: Union[str, bytes],
        signer: Optional[Keypair] = None,
        fee: Optional[int] = None,
    ) -> str:
        """Build, sign and submit a single manage_data transaction.

        Args:
            name: Data entry name (at most 64 bytes).
            value: Data entry value (at most 64 bytes).
            signer: Signing keypair; defaults to the configured identity.
            fee: Fee in stroops; defaults to base_fee.

        Returns:
            The transaction hash (hex).
        """
        signer = signer or self.keypair
        if signer is None or not signer.can_sign():
            raise LedgerNotConfigured("Stellar keypair not initialized")

        async with self._horizon() as server:
            try:
                account = await server.load_account(signer.public_key)
            except NotFoundError as exc:
                raise LedgerSubmissionFailed(
                    f"Account {signer.public_key} does not exist on the ledger",
                    status_code=404,
                ) from exc

            envelope = (
                TransactionBuilder(
                    source_account=account,
                    network_passphrase=self.network_passphrase,
                    base_fee=int(fee) if fee is not None else self.base_fee,
                )
                .append_manage_data_op(data_name=name, data_value=value)
                .set_timeout(TX_VALIDITY_SECONDS)
                .build()
            )
            envelope.sign(signer)

            try:
                result = await server.submit_transaction(
                    envelope, skip_memo_required_check=True
                )
            except (BadRequestError, BadResponseError) as exc:
                raise _rejection(exc) from exc

        tx_hash = result.get("hash") or envelope.hash_hex()
        logger.info("Anchored data entry %s in transaction %s", name, tx_hash)
        return tx_hash

    # ─── Reads ────────────────────────────────────────────────────────────────

    async def read_data_entry(
        self, name: str, account_id: Optional[str] = None
    ) -> Optional[bytes]:
        """Return the raw value of one account data entry, or None if absent."""
        account_id = account_id or self.account_id
        if not account_id:
            raise LedgerNotConfigured("No Stellar account configured to read from")
        async with self._horizon() as server:
            try:
                entry = await server.data(account_id, name).call()
            except NotFoundError:
                return None
        encoded = entry.get("value")
        if not encoded:
            return None
        return base64.b64decode(encoded)

    async def estimate_fee(self) -> str:
        """Most common fee charged recently, falling back to the base fee."""
        try:
            async with self._horizon() as server:
                stats = await server.fee_stats().call()
            return str(stats["fee_charged"]["mode"])
        except (LedgerUnavailable, KeyError, TypeError) as exc:
            logger.debug("Fee stats unavailable (%s); using base fee", exc)
            return str(self.base_fee)

    async def transaction_successful(self, tx_hash: str) -> bool:
        """Whether Horizon reports the transaction as successfully applied."""
        async with self._horizon() as server:
            try:
                tx = await server.transactions().transaction(tx_hash).call()
            except NotFoundError:
                return False
        return bool(tx.get("successful"))

    # ─── Internal helpers ─────────────────────────────────────────────────────

    @asynccontextmanager
    async def _horizon(self) -> AsyncIterator[ServerAsync]:
        client = self._client or AiohttpClient(
            request_timeout=self.timeout, post_timeout=self.timeout
        )
        try:
            async with ServerAsync(horizon_url=self.horizon_url, client=client) as server:
                yield server
        except (HorizonConnectionError, BaseHorizonError, asyncio.TimeoutError) as exc:
            logger.error("Horizon request failed: %s", exc)
            raise LedgerUnavailable(f"Horizon request failed: {exc}") from exc


def _rejection(exc: BaseHorizonError) -> RuntimeError:
    result_codes = (exc.extras or {}).get("result_codes")
    title = exc.title or f"HTTP {exc.status}"
    logger.error("anchoring failed: HTTP %s %s", exc.status, title)
    if result_codes:
        logger.error("Codes: %s", result_codes)

    if exc.status >= 500:
        return LedgerUnavailable(
            f"Transaction submission failed: HTTP {exc.status} {title}"
        )
    detail = f" {result_codes}" if result_codes else ""
    return LedgerSubmissionFailed(
        f"Transaction rejected: {title}{detail}",
        result_codes=result_codes,
        status_code=exc.status,
    )
