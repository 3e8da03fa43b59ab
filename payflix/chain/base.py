"""
Chain client interface.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence


@dataclass
class ConfirmationResult:
    """Outcome of waiting on a submitted transaction."""
    ok: bool
    signature: str
    err: Optional[Any] = None
    slot: Optional[int] = None


class ChainClient(ABC):
    """
    Capabilities the session ledger and payment orchestrator need from a
    token chain: balances, instruction building, submission and confirmation.

    Amounts are integer token base units. Instructions and signers are opaque
    to callers; they only flow back into the same client.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the chain client.

        Args:
            config: Chain-specific configuration (RPC URL, mint, retry knobs)
        """
        self.config = config

    @property
    @abstractmethod
    def network(self) -> str:
        """Return the network name (e.g., 'solana', 'solana-devnet')."""

    @abstractmethod
    def validate_address(self, address: str) -> bool:
        """Return True when the address is well formed for this chain."""

    @abstractmethod
    def token_account_address(self, owner: str) -> str:
        """Derive the owner's associated token account for the configured mint."""

    @abstractmethod
    def get_token_balance(self, owner: str) -> int:
        """
        Read the owner's token balance.

        Args:
            owner: Wallet address

        Returns:
            Balance in base units; 0 when the token account does not exist
        """

    @abstractmethod
    def build_approval_instruction(self, owner: str, delegate: str, amount: int) -> Any:
        """Approve ``delegate`` to move up to ``amount`` from the owner's token account."""

    @abstractmethod
    def build_transfer_instruction(
        self,
        source_owner: str,
        destination_owner: str,
        authority: str,
        amount: int,
    ) -> Any:
        """Move ``amount`` between the owners' token accounts, signed by ``authority``."""

    @abstractmethod
    def build_create_token_account_instruction(self, payer: str, owner: str) -> Optional[Any]:
        """Instruction creating the owner's token account, or None if it already exists."""

    @abstractmethod
    def build_unsigned_transaction(self, instructions: Sequence[Any], fee_payer: str) -> str:
        """Serialize an unsigned transaction (base64) for an external wallet to sign."""

    @abstractmethod
    def send_raw_transaction(self, transaction_b64: str) -> str:
        """Broadcast a transaction signed elsewhere and return its signature."""

    @abstractmethod
    def submit_and_confirm(
        self,
        instructions: Sequence[Any],
        signers: Sequence[Any],
        fee_payer: Any,
    ) -> str:
        """
        Sign, submit and wait for confirmation.

        Args:
            instructions: Instructions built by this client
            signers: Keypairs that must sign besides the fee payer
            fee_payer: Keypair paying network fees

        Returns:
            Confirmed transaction signature

        Raises:
            ChainSubmissionError: on any failure; never re-submits fresh bytes
        """

    @abstractmethod
    def confirm(self, signature: str) -> ConfirmationResult:
        """Wait (bounded) for a signature to reach confirmed commitment."""

    def get_explorer_url(self, signature: str) -> str:
        return f"{self.config.get('explorer_url', 'https://solscan.io')}/tx/{signature}"
