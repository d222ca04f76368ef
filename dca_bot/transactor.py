"""
Chain transaction backends.

One ChainTransactor is selected at startup (CHAIN_BACKEND) and injected
into the executor. A backend sends a single transfer per call and never
retries internally: a failed send is retried by the plan's next tick.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import base58
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TokenAccountOpts, TxOpts
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from .config import ChainBackend, ChainSettings
from .exceptions import ConfigurationError, TransactorError

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000


class AssetKind(str, Enum):
    NATIVE = "native"
    STABLE = "stable"

    @classmethod
    def parse(cls, value: Any) -> "AssetKind":
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())


class ChainTransactor(ABC):
    """Sends value on one blockchain network."""

    name: str = "base"

    @abstractmethod
    async def send_transaction(
        self,
        amount: Decimal,
        from_address: str,
        to_address: str,
    ) -> str:
        """
        Transfer ``amount`` (human units of the native asset) to ``to_address``.

        Returns:
            Transaction id / signature string

        Raises:
            TransactorError: the transfer was not submitted
        """

    @abstractmethod
    async def get_balance(self, address: str, asset_kind: AssetKind = AssetKind.NATIVE) -> float:
        """Advisory balance in human units. 0.0 when the lookup fails."""

    async def close(self) -> None:
        """Release network resources."""


class SolanaTransactor(ChainTransactor):
    """
    Native SOL transfers signed by the service wallet.

    ``from_address`` names the plan owner for the log line only; the
    configured keypair pays and signs every transfer.
    """

    name = "solana"

    def __init__(
        self,
        rpc_url: str,
        keypair: Keypair,
        stable_mint: str,
        timeout: float = 30.0,
    ):
        self.rpc_url = rpc_url
        self.keypair = keypair
        self.stable_mint = Pubkey.from_string(stable_mint)
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: ChainSettings) -> "SolanaTransactor":
        if settings.private_key is None:
            raise ConfigurationError("CHAIN_PRIVATE_KEY is not set")
        try:
            keypair = Keypair.from_bytes(base58.b58decode(settings.private_key.get_secret_value()))
        except Exception as e:
            raise ConfigurationError(f"Invalid CHAIN_PRIVATE_KEY: {e}") from e

        logger.info(f"Solana transactor wallet: {keypair.pubkey()}")
        return cls(
            rpc_url=settings.rpc_url,
            keypair=keypair,
            stable_mint=settings.stable_mint,
            timeout=settings.timeout,
        )

    @staticmethod
    def to_lamports(amount: Decimal) -> int:
        return int((Decimal(amount) * LAMPORTS_PER_SOL).to_integral_value(rounding=ROUND_DOWN))

    async def send_transaction(
        self,
        amount: Decimal,
        from_address: str,
        to_address: str,
    ) -> str:
        lamports = self.to_lamports(amount)
        if lamports <= 0:
            raise TransactorError(
                f"Amount {amount} is below one lamport",
                backend=self.name,
            )

        try:
            recipient = Pubkey.from_string(to_address)
        except Exception as e:
            raise TransactorError(
                f"Invalid destination address: {to_address}",
                backend=self.name,
            ) from e

        ix = transfer(TransferParams(
            from_pubkey=self.keypair.pubkey(),
            to_pubkey=recipient,
            lamports=lamports,
        ))

        try:
            async with AsyncClient(self.rpc_url, timeout=self.timeout) as client:
                blockhash_resp = await client.get_latest_blockhash(commitment=Confirmed)
                message = MessageV0.try_compile(
                    self.keypair.pubkey(),
                    [ix],
                    [],
                    blockhash_resp.value.blockhash,
                )
                tx = VersionedTransaction(message, [self.keypair])
                response = await client.send_transaction(
                    tx,
                    opts=TxOpts(preflight_commitment=Confirmed),
                )
        except Exception as e:
            raise TransactorError(
                f"Failed to send transaction: {e}",
                backend=self.name,
                context={"to": to_address, "lamports": lamports},
            ) from e

        signature = str(response.value)
        logger.info(
            f"Sent {amount} SOL for {from_address} -> {to_address}: {signature}"
        )
        return signature

    async def get_balance(self, address: str, asset_kind: AssetKind = AssetKind.NATIVE) -> float:
        try:
            owner = Pubkey.from_string(address)
            async with AsyncClient(self.rpc_url, timeout=self.timeout) as client:
                if asset_kind == AssetKind.NATIVE:
                    response = await client.get_balance(owner, commitment=Confirmed)
                    return response.value / LAMPORTS_PER_SOL

                response = await client.get_token_accounts_by_owner_json_parsed(
                    owner,
                    TokenAccountOpts(mint=self.stable_mint),
                    commitment=Confirmed,
                )
                total = Decimal("0")
                for account in response.value:
                    info = account.account.data.parsed.get("info", {})
                    total += Decimal(info.get("tokenAmount", {}).get("uiAmountString", "0"))
                return float(total)
        except Exception as e:
            logger.error(f"Balance lookup failed for {address} ({asset_kind.value}): {e}")
            return 0.0


class SimulatedTransactor(ChainTransactor):
    """No network. Records every transfer and hands out fake ids."""

    name = "simulated"

    def __init__(self, balances: Optional[Dict[Tuple[str, AssetKind], float]] = None):
        self.balances: Dict[Tuple[str, AssetKind], float] = dict(balances or {})
        self.sent: list = []

    def set_balance(self, address: str, asset_kind: AssetKind, balance: float) -> None:
        self.balances[(address, asset_kind)] = balance

    async def send_transaction(
        self,
        amount: Decimal,
        from_address: str,
        to_address: str,
    ) -> str:
        if amount <= 0:
            raise TransactorError(f"Amount must be positive, got {amount}", backend=self.name)
        if not to_address:
            raise TransactorError("Destination address is empty", backend=self.name)

        tx_hash = f"sim_{uuid.uuid4().hex}"
        self.sent.append((Decimal(amount), from_address, to_address, tx_hash))
        logger.info(f"[SIMULATED] {amount} from {from_address} -> {to_address}: {tx_hash}")
        return tx_hash

    async def get_balance(self, address: str, asset_kind: AssetKind = AssetKind.NATIVE) -> float:
        return float(self.balances.get((address, asset_kind), 0.0))


def create_transactor(settings: ChainSettings) -> ChainTransactor:
    """Instantiate the configured backend."""
    if settings.backend == ChainBackend.SOLANA:
        return SolanaTransactor.from_settings(settings)
    if settings.backend == ChainBackend.SIMULATED:
        logger.warning("Using simulated chain backend; no funds will move")
        return SimulatedTransactor()
    raise ConfigurationError(f"Unknown chain backend: {settings.backend}")
