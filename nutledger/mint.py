"""Cashu mint client: the interface the wallet consumes and its HTTP implementation."""

from __future__ import annotations

import logging
import math
import os
from typing import Any

import httpx
from coincurve import PublicKey

from .crypto import create_blinded_messages, split_amount, unblind_signature
from .types import (
    BlindedMessage,
    BlindedSignature,
    InsufficientFunds,
    InvoiceNotPaidYet,
    KeysetInfo,
    MeltQuote,
    MeltResult,
    MintOperationFailed,
    MintQuote,
    MintRecord,
    Proof,
    SendResult,
)

logger = logging.getLogger(__name__)

MINTS_ENV_VAR = "CASHU_MINTS"

# NUT error code returned when minting against an unpaid quote
QUOTE_NOT_PAID_CODE = 20001


# ──────────────────────────────────────────────────────────────────────────────
# Mint client port
# ──────────────────────────────────────────────────────────────────────────────


class MintClient:
    """Operations the wallet needs from one mint."""

    url: str

    async def load_mint(self) -> MintRecord:
        """Fetch mint info, keysets and active keys."""
        raise NotImplementedError

    async def create_mint_quote(self, amount: int) -> MintQuote:
        raise NotImplementedError

    async def check_mint_quote(self, quote_id: str) -> MintQuote:
        raise NotImplementedError

    async def mint_proofs(self, amount: int, quote_id: str) -> list[Proof]:
        """Mint proofs for a paid quote.

        Raises:
            InvoiceNotPaidYet: The quote's invoice has not been paid
            MintOperationFailed: Any other mint failure
        """
        raise NotImplementedError

    async def create_melt_quote(self, invoice: str) -> MeltQuote:
        raise NotImplementedError

    async def send(
        self, amount: int, proofs: list[Proof], *, include_fees: bool = False
    ) -> SendResult:
        """Split ``proofs`` into proofs worth exactly ``amount`` and change."""
        raise NotImplementedError

    async def melt_proofs(self, quote: MeltQuote, proofs: list[Proof]) -> MeltResult:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


# ──────────────────────────────────────────────────────────────────────────────
# HTTP mint
# ──────────────────────────────────────────────────────────────────────────────


def _wire_proof(proof: Proof) -> dict[str, Any]:
    """NUT-00 proof as sent to the mint (without the wallet's mint field)."""
    return {
        "id": proof["id"],
        "amount": proof["amount"],
        "secret": proof["secret"],
        "C": proof["C"],
    }


def blank_output_count(fee_reserve: int) -> int:
    """Number of NUT-08 blank outputs needed to return up to ``fee_reserve``."""
    if fee_reserve <= 0:
        return 0
    return max(math.ceil(math.log2(fee_reserve)), 1)


class HttpMint(MintClient):
    """Cashu mint over its HTTP API (NUT-01 to NUT-05, NUT-08)."""

    def __init__(
        self, url: str, *, client: httpx.AsyncClient | None = None, unit: str = "sat"
    ) -> None:
        # Normalize URL by removing trailing slashes
        self.url = url.rstrip("/")
        self.unit = unit
        self.client = client or httpx.AsyncClient(timeout=30.0)
        self.record: MintRecord | None = None

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make HTTP request to mint."""
        logger.debug("%s %s%s", method, self.url, path)
        try:
            response = await self.client.request(method, f"{self.url}{path}", json=json)
        except httpx.HTTPError as e:
            raise MintOperationFailed(f"Request to {self.url}{path} failed: {e}") from e

        if response.status_code >= 400:
            detail = self._error_detail(response)
            if detail.get("code") == QUOTE_NOT_PAID_CODE:
                raise InvoiceNotPaidYet(detail.get("detail") or "Quote not paid")
            raise MintOperationFailed(
                f"Mint returned {response.status_code}: {detail.get('detail') or response.text}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise MintOperationFailed(f"Mint returned invalid JSON for {path}") from e
        if not isinstance(data, dict):
            raise MintOperationFailed(f"Unexpected response for {path}: {data!r}")
        return data

    @staticmethod
    def _error_detail(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    # ───────────────────────── Info & Keys ─────────────────────────────────

    @staticmethod
    def _is_valid_compressed_pubkey(pubkey: Any) -> bool:
        # Compressed secp256k1 pubkeys are 33 bytes (66 hex chars) starting 02/03
        if not isinstance(pubkey, str) or len(pubkey) != 66:
            return False
        if not pubkey.startswith(("02", "03")):
            return False
        try:
            bytes.fromhex(pubkey)
        except ValueError:
            return False
        return True

    async def load_mint(self) -> MintRecord:
        info = await self._request("GET", "/v1/info")
        response = await self._request("GET", "/v1/keysets")
        try:
            keysets = [KeysetInfo.from_dict(ks) for ks in response["keysets"]]
        except (KeyError, TypeError, ValueError) as e:
            raise MintOperationFailed(f"Invalid keyset list from {self.url}") from e

        record = MintRecord(url=self.url, info=info, keysets=keysets)
        for keyset in keysets:
            if keyset.active and keyset.unit == self.unit:
                record.keys[keyset.id] = await self._fetch_keys(keyset.id)
        self.record = record
        logger.info(
            "Loaded mint %s: %d keysets, %d active",
            self.url,
            len(keysets),
            len(record.active_keyset_ids),
        )
        return record

    async def _fetch_keys(self, keyset_id: str) -> dict[str, str]:
        response = await self._request("GET", f"/v1/keys/{keyset_id}")
        try:
            keyset = response["keysets"][0]
            keys = {str(amount): pubkey for amount, pubkey in keyset["keys"].items()}
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise MintOperationFailed(f"Invalid keys for keyset {keyset_id}") from e
        if not all(self._is_valid_compressed_pubkey(k) for k in keys.values()):
            raise MintOperationFailed(f"Invalid public key in keyset {keyset_id}")
        return keys

    async def _ensure_loaded(self) -> MintRecord:
        if self.record is None:
            return await self.load_mint()
        return self.record

    async def _active_keyset(self) -> KeysetInfo:
        record = await self._ensure_loaded()
        candidates = [
            ks for ks in record.keysets or [] if ks.active and ks.unit == self.unit
        ]
        if not candidates:
            raise MintOperationFailed(f"No active '{self.unit}' keyset at {self.url}")
        return min(candidates, key=lambda ks: ks.input_fee_ppk)

    async def _keys(self, keyset_id: str) -> dict[str, str]:
        record = await self._ensure_loaded()
        if keyset_id not in record.keys:
            record.keys[keyset_id] = await self._fetch_keys(keyset_id)
        return record.keys[keyset_id]

    async def input_fees(self, proofs: list[Proof]) -> int:
        record = await self._ensure_loaded()
        total_ppk = 0
        for proof in proofs:
            keyset = record.keyset(proof["id"])
            if keyset is not None:
                total_ppk += keyset.input_fee_ppk
        return (total_ppk + 999) // 1000

    # ───────────────────────── Blinding ─────────────────────────────────

    async def _unblind(
        self,
        signatures: list[BlindedSignature],
        secrets: list[str],
        factors: list[bytes],
    ) -> list[Proof]:
        if len(signatures) > len(secrets):
            raise MintOperationFailed("Mint returned more signatures than outputs")
        proofs: list[Proof] = []
        for sig, secret, r in zip(signatures, secrets, factors):
            keys = await self._keys(sig["id"])
            mint_pubkey = keys.get(str(sig["amount"]))
            if mint_pubkey is None:
                raise MintOperationFailed(
                    f"Could not find mint public key for amount {sig['amount']}"
                )
            C = unblind_signature(
                PublicKey(bytes.fromhex(sig["C_"])), r, PublicKey(bytes.fromhex(mint_pubkey))
            )
            proofs.append(
                Proof(
                    id=sig["id"],
                    amount=int(sig["amount"]),
                    secret=secret,
                    C=C.format(compressed=True).hex(),
                    mint=self.url,
                )
            )
        return proofs

    async def _outputs(
        self, amounts: list[int]
    ) -> tuple[list[BlindedMessage], list[str], list[bytes]]:
        keyset = await self._active_keyset()
        return create_blinded_messages(amounts, keyset.id)

    # ───────────────────────── Minting (receive) ─────────────────────────────────

    async def create_mint_quote(self, amount: int) -> MintQuote:
        """Request a Lightning invoice for minting ``amount``."""
        response = await self._request(
            "POST", "/v1/mint/quote/bolt11", json={"unit": self.unit, "amount": amount}
        )
        return self._mint_quote(response)

    async def check_mint_quote(self, quote_id: str) -> MintQuote:
        return self._mint_quote(await self._request("GET", f"/v1/mint/quote/bolt11/{quote_id}"))

    @staticmethod
    def _mint_quote(response: dict[str, Any]) -> MintQuote:
        state = response.get("state")
        if state is None:
            # Pre NUT-04 v1 mints only report a paid flag
            state = "PAID" if response.get("paid") else "UNPAID"
        try:
            return MintQuote(quote=response["quote"], request=response["request"], state=state)
        except KeyError as e:
            raise MintOperationFailed(f"Mint quote response missing {e}") from e

    async def mint_proofs(self, amount: int, quote_id: str) -> list[Proof]:
        outputs, secrets, factors = await self._outputs(split_amount(amount))
        response = await self._request(
            "POST", "/v1/mint/bolt11", json={"quote": quote_id, "outputs": outputs}
        )
        return await self._unblind(response.get("signatures", []), secrets, factors)

    # ───────────────────────── Melting (send) ─────────────────────────────────

    async def create_melt_quote(self, invoice: str) -> MeltQuote:
        """Get a quote for paying a Lightning invoice."""
        response = await self._request(
            "POST", "/v1/melt/quote/bolt11", json={"unit": self.unit, "request": invoice}
        )
        try:
            return MeltQuote(
                quote=response["quote"],
                amount=int(response["amount"]),
                fee_reserve=int(response.get("fee_reserve", 0)),
                state=response.get("state", "UNPAID"),
            )
        except (KeyError, ValueError) as e:
            raise MintOperationFailed(f"Invalid melt quote response: {e}") from e

    async def melt_proofs(self, quote: MeltQuote, proofs: list[Proof]) -> MeltResult:
        """Pay the quoted invoice with ``proofs``.

        Blank outputs (NUT-08) let the mint return the unused fee reserve as
        change.
        """
        outputs, secrets, factors = await self._outputs(
            [1] * blank_output_count(quote["fee_reserve"])
        )
        body: dict[str, Any] = {
            "quote": quote["quote"],
            "inputs": [_wire_proof(p) for p in proofs],
        }
        if outputs:
            body["outputs"] = outputs
        response = await self._request("POST", "/v1/melt/bolt11", json=body)

        paid = response.get("state") == "PAID" or response.get("paid") is True
        if not paid:
            raise MintOperationFailed(
                f"Lightning payment failed for quote {quote['quote']}: "
                f"state {response.get('state')}"
            )
        change = await self._unblind(response.get("change") or [], secrets, factors)
        return MeltResult(
            paid=True, change=change, preimage=response.get("payment_preimage")
        )

    # ───────────────────────── Swap ─────────────────────────────────

    async def send(
        self, amount: int, proofs: list[Proof], *, include_fees: bool = False
    ) -> SendResult:
        """Swap ``proofs`` into a ``send`` set worth ``amount`` and ``keep`` change.

        With ``include_fees`` the send set also covers the input fee its
        receiver will pay to redeem it.
        """
        keyset = await self._active_keyset()
        total = sum(p["amount"] for p in proofs)
        fee = await self.input_fees(proofs)

        send_amounts = split_amount(amount)
        if include_fees and keyset.input_fee_ppk:
            receiver_fee = (len(send_amounts) * keyset.input_fee_ppk + 999) // 1000
            send_amounts = split_amount(amount + receiver_fee)
        keep_total = total - fee - sum(send_amounts)
        if keep_total < 0:
            raise InsufficientFunds(total - fee, sum(send_amounts), mint_url=self.url)

        keep_amounts = split_amount(keep_total) if keep_total else []
        outputs, secrets, factors = create_blinded_messages(keep_amounts + send_amounts, keyset.id)
        response = await self._request(
            "POST",
            "/v1/swap",
            json={"inputs": [_wire_proof(p) for p in proofs], "outputs": outputs},
        )
        new_proofs = await self._unblind(response.get("signatures", []), secrets, factors)
        if len(new_proofs) != len(outputs):
            raise MintOperationFailed(
                f"Swap returned {len(new_proofs)} signatures for {len(outputs)} outputs"
            )
        return SendResult(
            keep=new_proofs[: len(keep_amounts)], send=new_proofs[len(keep_amounts) :]
        )


def get_mints_from_env() -> list[str]:
    """Mint URLs from the CASHU_MINTS environment variable (comma separated)."""
    value = os.getenv(MINTS_ENV_VAR, "")
    mints = [url.strip().rstrip("/") for url in value.split(",")]
    return list(dict.fromkeys(url for url in mints if url))
