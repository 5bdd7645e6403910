"""Signing and NIP-44 capability of the wallet owner."""

from __future__ import annotations

from coincurve import PrivateKey

from .crypto import decode_nsec, get_pubkey, nip44_decrypt, nip44_encrypt, sign_event
from .types import NostrEvent, UnsignedEvent, UnsupportedEncryption


class Signer:
    """Identity that signs events and encrypts wallet payloads.

    Remote signers (NIP-07/NIP-46) may not support NIP-44; such signers set
    ``supports_nip44`` to False and the codec refuses to touch encrypted
    wallet events with them.
    """

    pubkey: str
    supports_nip44: bool = True

    async def sign_event(self, template: UnsignedEvent) -> NostrEvent:
        raise NotImplementedError

    async def nip44_encrypt(self, pubkey: str, plaintext: str) -> str:
        raise UnsupportedEncryption("NIP-44 encryption not supported by signer")

    async def nip44_decrypt(self, pubkey: str, ciphertext: str) -> str:
        raise UnsupportedEncryption("NIP-44 encryption not supported by signer")


class LocalSigner(Signer):
    """Signer holding the private key in process."""

    def __init__(self, nsec: str | PrivateKey) -> None:
        self._privkey = nsec if isinstance(nsec, PrivateKey) else decode_nsec(nsec)
        self.pubkey = get_pubkey(self._privkey)

    async def sign_event(self, template: UnsignedEvent) -> NostrEvent:
        return sign_event(template, self._privkey)

    async def nip44_encrypt(self, pubkey: str, plaintext: str) -> str:
        return nip44_encrypt(plaintext, self._privkey, pubkey)

    async def nip44_decrypt(self, pubkey: str, ciphertext: str) -> str:
        return nip44_decrypt(ciphertext, self._privkey, pubkey)
