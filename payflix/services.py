"""
Process-wide service graph, built once at startup.
"""
from dataclasses import dataclass
from typing import Optional

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from loguru import logger
from solders.keypair import Keypair

from payflix.chain import ChainClient, SolanaChainClient, load_keypair
from payflix.facilitator import FacilitatorGateway
from payflix.ledger import SessionLedger
from payflix.orchestrator import PaymentOrchestrator
from payflix.pending import CacheLease, CachePendingSessionStore
from payflix.stores import (
    CreatorProfileCache,
    DjangoAnalyticsSink,
    DjangoPaymentStore,
    DjangoSessionStore,
    DjangoUserDirectory,
    DjangoVideoRepository,
)
from payflix.vault import KeyVault


@dataclass
class Services:
    vault: KeyVault
    chain: ChainClient
    ledger: SessionLedger
    orchestrator: PaymentOrchestrator
    gateway: FacilitatorGateway


def load_facilitator_keypair(secret: str) -> Optional[Keypair]:
    if not secret:
        logger.warning('PAYFLIX_FACILITATOR_PRIVATE_KEY not set; unlocks and x402 '
                       'settlement are disabled')
        return None
    try:
        return load_keypair(secret)
    except ValueError as exc:
        raise ImproperlyConfigured(
            'PAYFLIX_FACILITATOR_PRIVATE_KEY is not a valid Solana secret key.') from exc


def build_services(chain: Optional[ChainClient] = None,
                   facilitator: Optional[Keypair] = None) -> Services:
    """
    Wire the collaborators from Django settings.

    Args:
        chain: Chain client to use instead of the Solana RPC client
        facilitator: Fee payer keypair to use instead of the configured one
    """
    vault = KeyVault.from_hex(settings.SESSION_ENCRYPTION_KEY)
    if chain is None:
        chain = SolanaChainClient({
            'rpc_url': settings.PAYFLIX_SOLANA_RPC_URL,
            'usdc_mint': settings.PAYFLIX_USDC_MINT,
            'network': settings.PAYFLIX_SOLANA_NETWORK,
            'confirm_timeout_seconds': settings.PAYFLIX_CONFIRM_TIMEOUT_SECONDS,
            'confirm_poll_seconds': settings.PAYFLIX_CONFIRM_POLL_SECONDS,
            'rpc_max_retries': settings.PAYFLIX_RPC_MAX_RETRIES,
        })
    if facilitator is None:
        facilitator = load_facilitator_keypair(settings.PAYFLIX_FACILITATOR_PRIVATE_KEY)

    cache_alias = settings.PAYFLIX_PENDING_SESSION_CACHE
    users = DjangoUserDirectory()
    ledger = SessionLedger(
        store=DjangoSessionStore(),
        pending=CachePendingSessionStore(
            cache_alias, settings.PAYFLIX_PENDING_SESSION_TTL_SECONDS),
        vault=vault,
        chain=chain,
        session_ttl_hours=settings.PAYFLIX_SESSION_TTL_HOURS,
        drift_tolerance=settings.PAYFLIX_LEDGER_DRIFT_TOLERANCE,
        users=users,
    )
    orchestrator = PaymentOrchestrator(
        ledger=ledger,
        chain=chain,
        videos=DjangoVideoRepository(),
        users=users,
        payments=DjangoPaymentStore(),
        analytics=DjangoAnalyticsSink(),
        profile_cache=CreatorProfileCache(),
        lease=CacheLease(cache_alias, settings.PAYFLIX_UNLOCK_LEASE_SECONDS),
        facilitator=facilitator,
        platform_fee_wallet=settings.PAYFLIX_PLATFORM_FEE_WALLET,
        platform_fee_percent=settings.PAYFLIX_PLATFORM_FEE_PERCENT,
    )
    gateway = FacilitatorGateway(
        chain=chain,
        facilitator=facilitator,
        network=settings.PAYFLIX_SOLANA_NETWORK,
        usdc_mint=settings.PAYFLIX_USDC_MINT,
    )
    logger.info('Payflix services ready on {} (fee payer {})', chain.network,
                facilitator.pubkey() if facilitator else 'unset')
    return Services(vault=vault, chain=chain, ledger=ledger,
                    orchestrator=orchestrator, gateway=gateway)
