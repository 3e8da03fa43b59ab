"""
Chain clients for session payments.
"""
from .base import ChainClient, ConfirmationResult
from .solana_client import SolanaChainClient, classify_rpc_error, load_keypair

__all__ = [
    'ChainClient',
    'ConfirmationResult',
    'SolanaChainClient',
    'classify_rpc_error',
    'load_keypair',
]
