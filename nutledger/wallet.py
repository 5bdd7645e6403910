"""Wallet session: one identity's state wired to relays and mints."""

from __future__ import annotations

import logging
from typing import Callable

from .bridge import DEFAULT_POLL_INTERVAL, Invoice, LightningBridge, Payment
from .config import Settings
from .crypto import generate_privkey
from .events import EventManager
from .ledger import PENDING_EVENT_ID
from .mint import HttpMint, MintClient, get_mints_from_env
from .reconciler import DEFAULT_QUERY_LIMIT, Reconciler, SyncReport
from .relay import DEFAULT_RELAYS, EventTransport, RelayPool, get_relays_from_env
from .selector import CoinSelector
from .signer import LocalSigner, Signer
from .state import WalletState
from .storage import JsonFileStorage, MemoryStorage, Storage
from .types import HistoryEntry, MintError, MintRecord, Proof, WalletDescriptor, WalletError

logger = logging.getLogger(__name__)


class Wallet:
    """NIP-60 wallet whose balance is rebuilt from events on relays.

    The wallet owns a single :class:`WalletState` and hands it explicitly to
    the reconciler, the coin selector and the Lightning bridge. State is read
    from ``storage`` on construction and written back after every mutation.

    Args:
        signer: Identity owning the wallet events
        transport: Relay transport
        storage: Where the state survives restarts (in memory by default)
        mint_urls: Mints to register in addition to the stored ones
        mint_factory: Builds the client for a mint URL
        poll_interval: Seconds between invoice status checks
        query_limit: Result cap per relay query
    """

    def __init__(
        self,
        signer: Signer,
        transport: EventTransport,
        *,
        storage: Storage | None = None,
        mint_urls: list[str] | None = None,
        mint_factory: Callable[[str], MintClient] = HttpMint,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        query_limit: int = DEFAULT_QUERY_LIMIT,
    ) -> None:
        self.signer = signer
        self.pubkey = signer.pubkey
        self.transport = transport
        self.storage = storage or MemoryStorage()
        self.state = WalletState.load(self.pubkey, self.storage)

        self._mint_factory = mint_factory
        self._clients: dict[str, MintClient] = {}

        self.events = EventManager(signer, transport)
        self.reconciler = Reconciler(self.state, signer, transport, limit=query_limit)
        self.selector = CoinSelector(self.state.ledger)
        self.bridge = LightningBridge(
            self.state,
            self.events,
            self.selector,
            self.mint_client,
            poll_interval=poll_interval,
        )

        with self.state.ledger.batch():
            for url in mint_urls or []:
                self.state.ledger.add_mint(url)

    @classmethod
    async def create(
        cls,
        nsec: str,
        *,
        mint_urls: list[str] | None = None,
        relay_urls: list[str] | None = None,
        storage: Storage | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        query_limit: int = DEFAULT_QUERY_LIMIT,
        sync: bool = True,
    ) -> Wallet:
        """Open the wallet of ``nsec`` over relays and optionally sync it.

        Args:
            nsec: Nostr private key
            mint_urls: Cashu mint URLs (defaults to CASHU_MINTS)
            relay_urls: Nostr relay URLs (defaults to NOSTR_RELAYS, then a public set)
            storage: State storage (in memory by default)
            poll_interval: Seconds between invoice status checks
            query_limit: Result cap per relay query
            sync: Fetch wallet events before returning
        """
        wallet = cls(
            LocalSigner(nsec),
            RelayPool(relay_urls or get_relays_from_env() or list(DEFAULT_RELAYS)),
            storage=storage,
            mint_urls=mint_urls if mint_urls is not None else get_mints_from_env(),
            poll_interval=poll_interval,
            query_limit=query_limit,
        )
        if sync:
            try:
                await wallet.sync()
            except BaseException:
                await wallet.aclose()
                raise
        return wallet

    @classmethod
    async def from_settings(cls, settings: Settings, *, sync: bool = True) -> Wallet:
        """Open the wallet described by ``settings``, stored under its state dir."""
        if not settings.nsec:
            raise WalletError("NSEC is not set")
        return await cls.create(
            settings.nsec,
            mint_urls=settings.mint_urls,
            relay_urls=settings.relays,
            storage=JsonFileStorage(settings.state_dir),
            poll_interval=settings.poll_interval,
            query_limit=settings.query_limit,
            sync=sync,
        )

    # ───────────────────────── Mints ─────────────────────────────────

    def mint_client(self, url: str) -> MintClient:
        url = url.rstrip("/")
        if url not in self._clients:
            self._clients[url] = self._mint_factory(url)
        return self._clients[url]

    @property
    def mint_urls(self) -> list[str]:
        return self.state.ledger.mints

    async def add_mint(self, url: str, *, load: bool = True) -> MintRecord:
        """Register a mint, loading its info and keysets unless ``load`` is False.

        Raises:
            MintOperationFailed: If loading the mint fails
        """
        ledger = self.state.ledger
        record = ledger.add_mint(url)
        if load:
            await self.load_mint(record.url)
        return ledger.mint(record.url)

    async def load_mint(self, url: str) -> MintRecord:
        """Refresh info, keysets and keys of a registered mint."""
        ledger = self.state.ledger
        loaded = await self.mint_client(url).load_mint()
        with ledger.batch():
            if loaded.info is not None:
                ledger.set_mint_info(url, loaded.info)
            ledger.set_keysets(url, loaded.keysets or [])
            ledger.set_keys(url, loaded.keys)
        return ledger.mint(url)

    async def remove_mint(self, url: str) -> None:
        """Forget an empty mint and republish the wallet descriptor without it.

        Raises:
            UnknownMint: If the mint is not registered
            WalletError: If it is the last mint or still holds proofs
        """
        ledger = self.state.ledger
        record = ledger.mint(url)
        if len(ledger.mints) == 1:
            raise WalletError("Cannot remove the last mint")
        ledger.remove_mint(record.url)
        client = self._clients.pop(record.url, None)
        if client is not None:
            await client.aclose()
        if self.state.active_mint == record.url:
            self.state.set_active_mint(None)
        logger.info("Removed mint %s", record.url)
        if self.state.wallet is not None:
            await self.publish_wallet()

    @property
    def active_mint(self) -> str:
        """Mint used when an operation does not name one."""
        return self._default_mint()

    def set_active_mint(self, url: str) -> None:
        """Make a registered mint the default for receiving.

        Raises:
            UnknownMint: If the mint is not registered
        """
        self.state.set_active_mint(self.state.ledger.mint(url).url)

    async def refresh_mints(self) -> dict[str, MintError]:
        """Load every registered mint. Returns the mints that failed to load."""
        failed: dict[str, MintError] = {}
        for url in self.mint_urls:
            try:
                await self.load_mint(url)
            except MintError as e:
                logger.warning("Could not load mint %s: %s", url, e)
                failed[url] = e
        return failed

    # ───────────────────────── State ─────────────────────────────────

    async def sync(self) -> SyncReport:
        """Merge wallet events published since the last sync."""
        return await self.reconciler.sync()

    def balances(self) -> dict[str, int]:
        return self.state.ledger.balances()

    def total_balance(self) -> int:
        return self.state.ledger.total_balance()

    def history(self) -> list[HistoryEntry]:
        """Spending history, newest first."""
        return self.state.history.entries()

    @property
    def proofs(self) -> list[Proof]:
        return self.state.ledger.proofs

    @property
    def pending_proofs(self) -> list[Proof]:
        return self.state.ledger.proofs_from_event(PENDING_EVENT_ID)

    async def publish_wallet(self) -> WalletDescriptor:
        """Publish the wallet descriptor (kind 17375) with the current mints.

        A wallet private key for P2PK is generated the first time.
        """
        ledger = self.state.ledger
        if not ledger.mints:
            raise WalletError("Cannot publish a wallet without mints")
        descriptor = WalletDescriptor(
            mints=ledger.mints, privkey=ledger.privkey or generate_privkey()
        )
        event = await self.events.publish_wallet_event(descriptor)
        descriptor.event_id = event["id"]
        descriptor.created_at = event["created_at"]
        self.state.set_wallet(descriptor)
        logger.info("Published wallet event %s with %d mints", event["id"], len(descriptor.mints))
        return descriptor

    # ───────────────────────── Lightning ─────────────────────────────────

    def _default_mint(self) -> str:
        if not self.mint_urls:
            raise WalletError("No mints configured")
        active = self.state.active_mint
        if active and self.state.ledger.has_mint(active):
            return active
        return self.mint_urls[0]

    async def receive_lightning(self, amount: int, mint_url: str | None = None) -> Invoice:
        """Request an invoice for ``amount``; use :meth:`wait_for_payment` next."""
        return await self.bridge.request_invoice(mint_url or self._default_mint(), amount)

    async def wait_for_payment(self) -> list[Proof] | None:
        """Poll the current invoice until paid. None if it was cancelled."""
        return await self.bridge.start_polling()

    def cancel_invoice(self) -> None:
        self.bridge.cancel()

    async def pay_lightning(self, invoice: str, mint_url: str | None = None) -> Payment:
        """Pay a BOLT11 invoice from one mint's balance."""
        return await self.bridge.pay_invoice(invoice, mint_url)

    async def flush_pending(self) -> int:
        """Publish proofs that could not be published when they were received."""
        return await self.bridge.flush_pending()

    # ───────────────────────── Lifecycle ─────────────────────────────────

    async def aclose(self) -> None:
        """Stop polling and close mint and relay connections."""
        self.bridge.cancel()
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
        await self.transport.close()

    async def __aenter__(self) -> Wallet:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
