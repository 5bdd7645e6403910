"""nutledger - NIP-60 Cashu wallet.

The wallet's balance is rebuilt from encrypted token, history and deletion
events stored on Nostr relays.
"""

__version__ = "0.1.0"

from .ledger import ProofLedger
from .reconciler import Reconciler, SyncReport
from .selector import CoinSelector, Selection
from .bridge import BridgeState, Invoice, LightningBridge
from .invoice import parse_invoice_amount
from .wallet import Wallet

__all__ = [
    # Main wallet class
    "Wallet",
    # Building blocks
    "ProofLedger",
    "Reconciler",
    "SyncReport",
    "CoinSelector",
    "Selection",
    "LightningBridge",
    "BridgeState",
    "Invoice",
    "parse_invoice_amount",
]
