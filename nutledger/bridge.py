"""Lightning bridge: receiving through mint quotes and paying through melts.

Receive: ``IDLE -> INVOICE_REQUESTED -> AWAITING_PAYMENT -> CONFIRMED``
Send:    ``IDLE -> INVOICE_PARSED -> MELTING -> SETTLED``

Every invoice carries the poll generation it was issued under. Cancelling
bumps the generation, so a poll that wakes up after a cancel (or after a newer
invoice replaced it) sees it is stale and stops instead of minting.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable

from . import codec
from .events import EventManager
from .invoice import parse_invoice_amount
from .ledger import PENDING_EVENT_ID
from .mint import MintClient
from .selector import CoinSelector
from .state import WalletState
from .types import (
    Direction,
    HistoryEntry,
    InvoiceNotPaidYet,
    MintOperationFailed,
    Proof,
    RelayError,
    WalletError,
)

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0

# Mint quote states that mean "try again later"
_WAITING_STATES = {"UNPAID", "PENDING"}


class BridgeState(enum.Enum):
    IDLE = "idle"
    # receive path
    INVOICE_REQUESTED = "invoice_requested"
    AWAITING_PAYMENT = "awaiting_payment"
    CONFIRMED = "confirmed"
    # send path
    INVOICE_PARSED = "invoice_parsed"
    MELTING = "melting"
    SETTLED = "settled"


@dataclass(frozen=True)
class Invoice:
    """A Lightning invoice issued by a mint for receiving ``amount``."""

    mint: str
    quote_id: str
    request: str
    amount: int
    generation: int


@dataclass
class Payment:
    """Outcome of a settled Lightning payment."""

    mint: str
    amount: int
    fee_paid: int
    preimage: str | None
    history: HistoryEntry


class LightningBridge:
    """Moves value between Lightning and the ledger through the wallet's mints.

    Args:
        state: Wallet state whose ledger and history are updated
        events: Publishes token, history and deletion events
        selector: Coin selector over ``state.ledger``
        client_for: Returns the mint client for a mint URL
        poll_interval: Seconds between quote status checks
    """

    def __init__(
        self,
        state: WalletState,
        events: EventManager,
        selector: CoinSelector,
        client_for: Callable[[str], MintClient],
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.state = state
        self.events = events
        self.selector = selector
        self.client_for = client_for
        self.poll_interval = poll_interval

        self.receive_state = BridgeState.IDLE
        self.send_state = BridgeState.IDLE
        self.invoice: Invoice | None = None
        self._generation = 0
        self._poll_task: asyncio.Task[list[Proof] | None] | None = None
        self._redeemed_quotes: set[str] = set()
        self._mint_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def generation(self) -> int:
        return self._generation

    def _lock(self, mint_url: str) -> asyncio.Lock:
        return self._mint_locks[self.state.ledger.mint(mint_url).url]

    # ───────────────────────── Receive ─────────────────────────────────

    async def request_invoice(self, mint_url: str, amount: int) -> Invoice:
        """Ask ``mint_url`` for an invoice of ``amount``.

        Any invoice still awaiting payment is abandoned first.

        Raises:
            ValueError: If amount is not positive
            UnknownMint: If the mint is not part of the wallet
            MintOperationFailed: If the mint refuses the quote
        """
        if amount <= 0:
            raise ValueError(f"Invoice amount must be positive, got {amount}")
        mint_url = self.state.ledger.mint(mint_url).url
        self.cancel()

        self.receive_state = BridgeState.INVOICE_REQUESTED
        try:
            quote = await self.client_for(mint_url).create_mint_quote(amount)
        finally:
            if self.receive_state is BridgeState.INVOICE_REQUESTED:
                self.receive_state = BridgeState.IDLE

        self._generation += 1
        self.invoice = Invoice(
            mint=mint_url,
            quote_id=quote["quote"],
            request=quote["request"],
            amount=amount,
            generation=self._generation,
        )
        self.receive_state = BridgeState.AWAITING_PAYMENT
        logger.info("Awaiting payment of %d at %s (quote %s)", amount, mint_url, quote["quote"])
        return self.invoice

    def start_polling(self) -> asyncio.Task[list[Proof] | None]:
        """Poll the current invoice until it is paid, cancelled or fails.

        The task resolves to the minted proofs, or None when the invoice was
        cancelled or replaced. Terminal mint errors are raised from the task.
        """
        if self.invoice is None or self.receive_state is not BridgeState.AWAITING_PAYMENT:
            raise WalletError("No invoice awaiting payment")
        if self._poll_task is not None and not self._poll_task.done():
            return self._poll_task
        self._poll_task = asyncio.create_task(self._poll(self.invoice))
        return self._poll_task

    def cancel(self) -> None:
        """Abandon the invoice being awaited. No further polls are scheduled."""
        self._generation += 1
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._poll_task = None
        if self.invoice is not None and self.receive_state is BridgeState.AWAITING_PAYMENT:
            logger.info("Cancelled invoice for quote %s", self.invoice.quote_id)
            self.receive_state = BridgeState.IDLE
        self.invoice = None

    def _is_current(self, invoice: Invoice) -> bool:
        return invoice.generation == self._generation

    async def _poll(self, invoice: Invoice) -> list[Proof] | None:
        while self._is_current(invoice):
            proofs = await self.poll_once(invoice)
            if proofs is not None:
                return proofs
            if not self._is_current(invoice):
                break
            await asyncio.sleep(self.poll_interval)
        return None

    async def poll_once(self, invoice: Invoice) -> list[Proof] | None:
        """Check the quote once; mint and record the proofs if it was paid.

        Returns:
            The minted proofs, or None while the invoice is unpaid or stale

        Raises:
            MintOperationFailed: Terminal mint error, the invoice is dropped
        """
        if not self._is_current(invoice):
            return None
        client = self.client_for(invoice.mint)
        try:
            quote = await client.check_mint_quote(invoice.quote_id)
            if quote["state"] in _WAITING_STATES:
                raise InvoiceNotPaidYet(f"Quote {invoice.quote_id} is {quote['state']}")
            if quote["state"] != "PAID":
                raise MintOperationFailed(
                    f"Quote {invoice.quote_id} cannot be minted in state {quote['state']}"
                )
            if not self._is_current(invoice):
                return None
            # Once minting starts it must finish, even if the caller cancels
            return await asyncio.shield(self._redeem(invoice))
        except InvoiceNotPaidYet:
            logger.debug("Quote %s not paid yet", invoice.quote_id)
            return None
        except MintOperationFailed:
            if self._is_current(invoice):
                self.receive_state = BridgeState.IDLE
                self.invoice = None
            raise

    async def _redeem(self, invoice: Invoice) -> list[Proof]:
        if invoice.quote_id in self._redeemed_quotes:
            raise MintOperationFailed(f"Quote {invoice.quote_id} was already minted")
        client = self.client_for(invoice.mint)
        proofs = await client.mint_proofs(invoice.amount, invoice.quote_id)
        self._redeemed_quotes.add(invoice.quote_id)

        minted = sum(p["amount"] for p in proofs)
        event_id = await self._publish_proofs(invoice.mint, proofs)
        self.state.ledger.add_proofs(proofs, event_id)
        await self._record_history(
            "in", minted, created=[] if event_id == PENDING_EVENT_ID else [event_id]
        )

        if self._is_current(invoice):
            self.receive_state = BridgeState.CONFIRMED
            self.invoice = None
        logger.info("Received %d at %s", minted, invoice.mint)
        return proofs

    # ───────────────────────── Publishing ─────────────────────────────────

    async def _publish_proofs(
        self, mint_url: str, proofs: list[Proof], superseded: list[str] | None = None
    ) -> str:
        """Publish a token event, falling back to the pending marker."""
        try:
            return await self.events.publish_token_event(
                mint_url, proofs, deleted_token_ids=superseded
            )
        except RelayError as e:
            logger.warning(
                "Could not publish %d proofs for %s, keeping them pending: %s",
                len(proofs),
                mint_url,
                e,
            )
            return PENDING_EVENT_ID

    async def _record_history(
        self,
        direction: Direction,
        amount: int,
        *,
        created: list[str] | None = None,
        destroyed: list[str] | None = None,
    ) -> HistoryEntry:
        try:
            entry = await self.events.publish_spending_history(
                direction=direction,
                amount=amount,
                created_token_ids=created,
                destroyed_token_ids=destroyed,
            )
        except RelayError as e:
            logger.warning("Could not publish history entry: %s", e)
            entry = codec.make_history_entry(
                direction,
                amount,
                created=created,
                destroyed=destroyed,
            )
        self.state.record_history(entry)
        return entry

    async def commit_spend(
        self, mint_url: str, spent: list[Proof], new_proofs: list[Proof]
    ) -> tuple[list[str], str | None]:
        """Replace ``spent`` by ``new_proofs`` in the ledger and on relays.

        Spent proofs are removed first. The proofs left over in the events the
        spent proofs came from are rolled over, together with ``new_proofs``,
        into one new token event that supersedes those events. When relays
        are unreachable the superseded ids are kept with the pending proofs,
        and :meth:`flush_pending` retires them on relays later.

        Returns:
            (superseded event ids, new event id or None when nothing is left)
        """
        ledger = self.state.ledger
        touched = sorted(
            {
                origin
                for origin in (ledger.origin_of(p) for p in spent)
                if origin is not None and origin != PENDING_EVENT_ID
            }
        )
        ledger.remove_proofs(spent)

        carried = [p for event_id in touched for p in ledger.proofs_from_event(event_id)]
        carried += [
            p for p in ledger.proofs_from_event(PENDING_EVENT_ID) if p["mint"] == mint_url
        ]
        keep = carried + list(new_proofs)
        superseded = sorted(set(touched) | ledger.deferred_deletions(mint_url))

        new_id: str | None = None
        if keep:
            new_id = await self._publish_proofs(mint_url, keep, superseded=superseded)
        with ledger.batch():
            if new_id is not None:
                ledger.add_proofs(new_proofs, new_id)
                ledger.rebind(carried, new_id)
            for event_id in touched:
                ledger.tombstone(event_id)
            if new_id == PENDING_EVENT_ID:
                ledger.defer_deletions(mint_url, touched)
            elif new_id is not None:
                # The new event's del tags retire everything superseded
                ledger.clear_deferred(mint_url, superseded)

        if superseded and new_id != PENDING_EVENT_ID:
            await self._delete_superseded(mint_url, superseded, retire_on_failure=new_id is None)
        return touched, new_id

    async def _delete_superseded(
        self, mint_url: str, event_ids: list[str], *, retire_on_failure: bool
    ) -> None:
        """Publish a deletion, keeping the ids deferred when no del tag covers them."""
        ledger = self.state.ledger
        try:
            await self.events.delete_token_event(event_ids)
        except RelayError as e:
            logger.warning("Could not publish deletion of %s: %s", event_ids, e)
            if retire_on_failure:
                ledger.defer_deletions(mint_url, event_ids)
            return
        ledger.clear_deferred(mint_url, event_ids)

    # ───────────────────────── Send ─────────────────────────────────

    def _pick_mint(self, amount: int | None) -> str:
        balances = self.state.ledger.balances()
        if not balances:
            raise WalletError("No mints available")
        funded = [(bal, url) for url, bal in balances.items() if amount is None or bal >= amount]
        candidates = funded or [(bal, url) for url, bal in balances.items()]
        return max(candidates)[1]

    async def pay_invoice(self, invoice: str, mint_url: str | None = None) -> Payment:
        """Pay a BOLT11 invoice with proofs of one mint.

        Spent proofs are only removed after the mint confirms the payment.

        Raises:
            InsufficientFunds: The mint's spendable balance does not cover
                amount plus fee reserve
            MintOperationFailed: The mint refused or failed the payment
        """
        amount = parse_invoice_amount(invoice)
        self.send_state = BridgeState.INVOICE_PARSED
        try:
            mint_url = (
                self.state.ledger.mint(mint_url).url if mint_url else self._pick_mint(amount)
            )
            async with self._lock(mint_url):
                return await self._melt(invoice, amount, mint_url)
        finally:
            if self.send_state is not BridgeState.SETTLED:
                self.send_state = BridgeState.IDLE

    async def _melt(self, invoice: str, amount: int | None, mint_url: str) -> Payment:
        client = self.client_for(mint_url)
        quote = await client.create_melt_quote(invoice)
        if amount is not None and amount != quote["amount"]:
            logger.warning(
                "Invoice amount %d differs from quoted amount %d", amount, quote["amount"]
            )

        selection = self.selector.select_with_fees(
            mint_url, quote["amount"], quote["fee_reserve"]
        )
        async with self.selector.reserve(selection):
            self.send_state = BridgeState.MELTING
            inputs = selection.spend
            kept: list[Proof] = []
            destroyed: list[str] = []
            swap_id: str | None = None
            if selection.change_needed > 0:
                # Swap to exact inputs so the overshoot is not left to fee change
                split = await client.send(
                    quote["amount"] + quote["fee_reserve"], inputs, include_fees=True
                )
                destroyed, swap_id = await self.commit_spend(
                    mint_url, inputs, split["keep"] + split["send"]
                )
                kept, inputs = split["keep"], split["send"]

            result = await client.melt_proofs(quote, inputs)
            touched, new_id = await self.commit_spend(mint_url, inputs, result["change"])

        destroyed = sorted(set(destroyed) | (set(touched) - {swap_id}))
        spent = (
            selection.total
            - sum(p["amount"] for p in kept)
            - sum(p["amount"] for p in result["change"])
        )
        entry = await self._record_history(
            "out",
            spent,
            created=[new_id] if new_id and new_id != PENDING_EVENT_ID else [],
            destroyed=destroyed,
        )
        self.send_state = BridgeState.SETTLED
        logger.info("Paid %d (+%d fee) from %s", quote["amount"], spent - quote["amount"], mint_url)
        return Payment(
            mint=mint_url,
            amount=quote["amount"],
            fee_paid=spent - quote["amount"],
            preimage=result["preimage"],
            history=entry,
        )

    # ───────────────────────── Pending ─────────────────────────────────

    async def flush_pending(self) -> int:
        """Publish proofs held under the pending marker. Returns how many went out.

        Token events superseded while relays were unreachable are listed in
        the new event's ``del`` and deleted, so no other device replays them.

        Raises:
            RelayError: If no relay accepts the pending proofs
        """
        ledger = self.state.ledger
        by_mint: dict[str, list[Proof]] = defaultdict(list)
        for proof in ledger.proofs_from_event(PENDING_EVENT_ID):
            by_mint[proof["mint"]].append(proof)

        published = 0
        for mint_url in sorted(set(by_mint) | set(ledger.deferred_mints)):
            proofs = by_mint.get(mint_url, [])
            superseded = sorted(ledger.deferred_deletions(mint_url))
            if proofs:
                event_id = await self.events.publish_token_event(
                    mint_url, proofs, deleted_token_ids=superseded
                )
                with ledger.batch():
                    ledger.rebind(proofs, event_id)
                    ledger.clear_deferred(mint_url, superseded)
                published += len(proofs)
            if superseded:
                await self._delete_superseded(mint_url, superseded, retire_on_failure=not proofs)
        if published:
            logger.info("Published %d pending proofs", published)
        return published
