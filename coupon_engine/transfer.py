import json
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional, Protocol

from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.commitment import Confirmed
from solana.rpc.core import (
    RPCException,
    TransactionExpiredBlockheightExceededError,
    UnconfirmedTxError,
)
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer as system_transfer
from solders.transaction import Transaction

from .settings import Settings

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000


class TransferError(Exception):
    pass


class TransferUnconfirmedError(TransferError):
    """The transaction was submitted but its confirmation could not be observed."""

    def __init__(self, message: str, signature: str):
        super().__init__(message)
        self.signature = signature


class TransferCapability(Protocol):
    def transfer(
        self,
        recipient: str,
        amount_sol: Decimal,
        on_submitted: Optional[Callable[[str], None]] = None,
    ) -> str:
        """
        Send ``amount_sol`` to ``recipient`` and return the confirmed signature.

        ``on_submitted`` receives the signature once the transaction is sent and
        before confirmation is awaited.
        """
        ...


def sol_to_lamports(amount_sol: Decimal) -> int:
    lamports = int((Decimal(amount_sol) * LAMPORTS_PER_SOL).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if lamports <= 0:
        raise TransferError(f"Amount {amount_sol} SOL is below one lamport")
    return lamports


def load_keypair(secret: str) -> Keypair:
    """Parse an engine secret given either as a JSON byte array or a base58 string."""
    secret = secret.strip()
    if not secret:
        raise ValueError("engine secret key is empty")
    if secret.startswith("["):
        return Keypair.from_bytes(bytes(json.loads(secret)))
    return Keypair.from_base58_string(secret)


class SolanaTransfer:
    """System-program SOL transfers signed by the engine wallet."""

    def __init__(self, client: Client, keypair: Keypair, poll_interval: float = 0.5):
        self.client = client
        self.keypair = keypair
        self.poll_interval = poll_interval

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["SolanaTransfer"]:
        if not settings.engine_secret_key.strip():
            logger.warning("ENGINE_SECRET_KEY is not configured; on-chain withdrawals are disabled")
            return None

        client = Client(
            settings.solana_rpc_url,
            commitment=Confirmed,
            timeout=settings.rpc_timeout,
            extra_headers=settings.rpc_headers,
        )
        instance = cls(client, load_keypair(settings.engine_secret_key), settings.confirm_poll_interval)
        logger.info("Solana RPC client created for %s", settings.solana_rpc_url)
        if settings.rpc_headers:
            logger.info("Using Tatum x-api-key header")
        logger.info("Engine wallet: %s", instance.source_address)
        return instance

    @property
    def source_address(self) -> str:
        return str(self.keypair.pubkey())

    def transfer(
        self,
        recipient: str,
        amount_sol: Decimal,
        on_submitted: Optional[Callable[[str], None]] = None,
    ) -> str:
        try:
            to_pubkey = Pubkey.from_string(recipient)
        except ValueError as e:
            raise TransferError(f"Invalid recipient address: {recipient}") from e
        lamports = sol_to_lamports(amount_sol)

        try:
            latest = self.client.get_latest_blockhash(Confirmed).value
            instruction = system_transfer(TransferParams(
                from_pubkey=self.keypair.pubkey(),
                to_pubkey=to_pubkey,
                lamports=lamports,
            ))
            message = Message.new_with_blockhash([instruction], self.keypair.pubkey(), latest.blockhash)
            tx = Transaction([self.keypair], message, latest.blockhash)
            signature = self.client.send_transaction(tx).value
        except (RPCException, SolanaRpcException) as e:
            logger.warning("Sending %s lamports to %s failed: %s", lamports, recipient, e)
            raise TransferError(f"Transaction could not be sent: {e}") from e

        sig = str(signature)
        logger.info("Sent %s lamports to %s, signature %s; awaiting confirmation", lamports, recipient, sig)
        if on_submitted is not None:
            on_submitted(sig)

        try:
            resp = self.client.confirm_transaction(
                signature,
                Confirmed,
                sleep_seconds=self.poll_interval,
                last_valid_block_height=latest.last_valid_block_height,
            )
        except (
            UnconfirmedTxError,
            TransactionExpiredBlockheightExceededError,
            RPCException,
            SolanaRpcException,
        ) as e:
            logger.warning("Confirmation of %s could not be observed: %s", sig, e)
            raise TransferUnconfirmedError(f"Transaction {sig} was not confirmed: {e}", sig) from e

        status = resp.value[0] if resp.value else None
        if status is None:
            raise TransferUnconfirmedError(f"Transaction {sig} has no status", sig)
        if status.err is not None:
            logger.warning("Transaction %s failed on-chain: %s", sig, status.err)
            raise TransferError(f"Transaction {sig} failed on-chain: {status.err}")

        logger.info("Transaction %s confirmed", sig)
        return sig
