"""Cryptographic primitives: Nostr keys and event signing, NIP-44 encryption, Cashu BDHKE."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import secrets
import struct
from typing import Tuple

from coincurve import PrivateKey, PublicKey, PublicKeyXOnly
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand

from .types import BlindedMessage, NostrEvent, UnsignedEvent


# ──────────────────────────────────────────────────────────────────────────────
# Keys
# ──────────────────────────────────────────────────────────────────────────────

_BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"


def _bech32_polymod(values: list[int]) -> int:
    generator = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for value in values:
        top = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ value
        for i in range(5):
            chk ^= generator[i] if ((top >> i) & 1) else 0
    return chk


def _bech32_hrp_expand(hrp: str) -> list[int]:
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def _convertbits(data: list[int], frombits: int, tobits: int) -> bytes:
    acc = 0
    bits = 0
    out = bytearray()
    maxv = (1 << tobits) - 1
    for value in data:
        acc = (acc << frombits) | value
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            out.append((acc >> bits) & maxv)
    if bits >= frombits or ((acc << (tobits - bits)) & maxv):
        raise ValueError("Invalid bech32 padding")
    return bytes(out)


def bech32_decode(value: str) -> tuple[str, bytes]:
    """Decode a bech32 string (NIP-19) into its human readable part and payload."""
    value = value.strip().lower()
    pos = value.rfind("1")
    if pos < 1 or pos + 7 > len(value):
        raise ValueError("Invalid bech32 string")
    hrp, data_part = value[:pos], value[pos + 1 :]
    try:
        data = [_BECH32_CHARSET.index(c) for c in data_part]
    except ValueError:
        raise ValueError("Invalid bech32 character") from None
    if _bech32_polymod(_bech32_hrp_expand(hrp) + data) != 1:
        raise ValueError("Invalid bech32 checksum")
    return hrp, _convertbits(data[:-6], 5, 8)


def generate_privkey() -> str:
    """Generate a new secp256k1 private key as hex."""
    return PrivateKey().secret.hex()


def decode_nsec(nsec: str) -> PrivateKey:
    """Parse a private key given as ``nsec1...`` (NIP-19) or 64-char hex."""
    if nsec.startswith("nsec1"):
        hrp, data = bech32_decode(nsec)
        if hrp != "nsec" or len(data) != 32:
            raise ValueError("Invalid nsec")
        return PrivateKey(data)
    try:
        raw = bytes.fromhex(nsec)
    except ValueError:
        raise ValueError("Private key must be nsec1... or hex") from None
    if len(raw) != 32:
        raise ValueError("Private key must be 32 bytes")
    return PrivateKey(raw)


def get_pubkey(privkey: PrivateKey) -> str:
    """Return the x-only (BIP-340) public key as hex."""
    return privkey.public_key.format(compressed=True)[1:].hex()


def _parse_pubkey(pubkey_hex: str) -> PublicKey:
    # Nostr pubkeys are x-only; assume the even-y point
    if len(pubkey_hex) == 64:
        pubkey_hex = "02" + pubkey_hex
    return PublicKey(bytes.fromhex(pubkey_hex))


# ──────────────────────────────────────────────────────────────────────────────
# Event signing (NIP-01)
# ──────────────────────────────────────────────────────────────────────────────


def compute_event_id(
    pubkey: str, created_at: int, kind: int, tags: list[list[str]], content: str
) -> str:
    serialized = json.dumps(
        [0, pubkey, created_at, kind, tags, content],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def sign_event(template: UnsignedEvent, privkey: PrivateKey) -> NostrEvent:
    """Attach pubkey, id and a BIP-340 Schnorr signature to an event template."""
    pubkey = get_pubkey(privkey)
    event_id = compute_event_id(
        pubkey,
        template["created_at"],
        template["kind"],
        template["tags"],
        template["content"],
    )
    sig = privkey.sign_schnorr(bytes.fromhex(event_id))
    return NostrEvent(
        id=event_id,
        pubkey=pubkey,
        created_at=template["created_at"],
        kind=template["kind"],
        tags=template["tags"],
        content=template["content"],
        sig=sig.hex(),
    )


def verify_event(event: NostrEvent) -> bool:
    """Check that an event's id matches its content and its signature is valid."""
    try:
        expected = compute_event_id(
            event["pubkey"],
            event["created_at"],
            event["kind"],
            event["tags"],
            event["content"],
        )
        if expected != event["id"]:
            return False
        pubkey = PublicKeyXOnly(bytes.fromhex(event["pubkey"]))
        return pubkey.verify(bytes.fromhex(event["sig"]), bytes.fromhex(event["id"]))
    except (KeyError, TypeError, ValueError):
        return False


# ──────────────────────────────────────────────────────────────────────────────
# Cashu BDHKE (NUT-00)
# ──────────────────────────────────────────────────────────────────────────────

DOMAIN_SEPARATOR = b"Secp256k1_HashToCurve_Cashu_"


def hash_to_curve(message: bytes) -> PublicKey:
    """Map a message to a secp256k1 point as defined by NUT-00."""
    msg_to_hash = hashlib.sha256(DOMAIN_SEPARATOR + message).digest()
    for counter in range(2**16):
        candidate = hashlib.sha256(msg_to_hash + counter.to_bytes(4, "little")).digest()
        try:
            return PublicKey(b"\x02" + candidate)
        except ValueError:
            continue
    raise ValueError("No valid point found")


def blind_message(secret: str, r: bytes | None = None) -> tuple[PublicKey, bytes]:
    """Blind a secret for the mint.

    Returns:
        Tuple of (B_ = Y + r*G, blinding factor r)
    """
    Y = hash_to_curve(secret.encode("utf-8"))
    if r is None:
        r = PrivateKey().secret
    B_ = PublicKey.combine_keys([Y, PrivateKey(r).public_key])
    return B_, r


def _negate(point: PublicKey) -> PublicKey:
    compressed = point.format(compressed=True)
    prefix = b"\x03" if compressed[0] == 2 else b"\x02"
    return PublicKey(prefix + compressed[1:])


def unblind_signature(C_: PublicKey, r: bytes, K: PublicKey) -> PublicKey:
    """Compute C = C_ - r*K."""
    rK = K.multiply(r)
    return PublicKey.combine_keys([C_, _negate(rK)])


def split_amount(amount: int) -> list[int]:
    """Split an amount into powers of two, smallest first."""
    if amount < 0:
        raise ValueError("Amount must be non-negative")
    return [1 << i for i in range(amount.bit_length()) if amount & (1 << i)]


def create_blinded_messages(
    amounts: list[int], keyset_id: str
) -> tuple[list[BlindedMessage], list[str], list[bytes]]:
    """Create one blinded output per amount.

    Returns:
        Tuple of (outputs, secrets, blinding_factors), index-aligned
    """
    outputs: list[BlindedMessage] = []
    output_secrets: list[str] = []
    factors: list[bytes] = []
    for amount in amounts:
        secret = secrets.token_hex(32)
        B_, r = blind_message(secret)
        outputs.append(
            BlindedMessage(amount=amount, B_=B_.format(compressed=True).hex(), id=keyset_id)
        )
        output_secrets.append(secret)
        factors.append(r)
    return outputs, output_secrets, factors


# ──────────────────────────────────────────────────────────────────────────────
# NIP-44 v2
# ──────────────────────────────────────────────────────────────────────────────


class NIP44Error(Exception):
    """Base exception for NIP-44 encryption errors."""


class NIP44Encrypt:
    """NIP-44 v2 encryption implementation."""

    VERSION = 2
    MIN_PLAINTEXT_SIZE = 1
    MAX_PLAINTEXT_SIZE = 65535
    SALT = b"nip44-v2"

    @staticmethod
    def calc_padded_len(unpadded_len: int) -> int:
        """Calculate padded length according to NIP-44."""
        if unpadded_len <= 0:
            raise ValueError("Invalid unpadded length")
        if unpadded_len <= 32:
            return 32
        next_power = 1 << (math.floor(math.log2(unpadded_len - 1)) + 1)
        chunk = 32 if next_power <= 256 else next_power // 8
        return chunk * ((unpadded_len - 1) // chunk + 1)

    @staticmethod
    def pad(plaintext: bytes) -> bytes:
        unpadded_len = len(plaintext)
        if not (
            NIP44Encrypt.MIN_PLAINTEXT_SIZE
            <= unpadded_len
            <= NIP44Encrypt.MAX_PLAINTEXT_SIZE
        ):
            raise NIP44Error(f"Invalid plaintext length: {unpadded_len}")
        padded_len = NIP44Encrypt.calc_padded_len(unpadded_len)
        prefix = struct.pack(">H", unpadded_len)
        return prefix + plaintext + bytes(padded_len - unpadded_len)

    @staticmethod
    def unpad(padded: bytes) -> bytes:
        if len(padded) < 2:
            raise NIP44Error("Invalid padded data")
        unpadded_len = struct.unpack(">H", padded[:2])[0]
        if unpadded_len == 0 or len(padded) < 2 + unpadded_len:
            raise NIP44Error("Invalid padding")
        if len(padded) != 2 + NIP44Encrypt.calc_padded_len(unpadded_len):
            raise NIP44Error("Invalid padded length")
        return padded[2 : 2 + unpadded_len]

    @staticmethod
    def get_conversation_key(privkey: PrivateKey, pubkey_hex: str) -> bytes:
        """Calculate conversation key using ECDH and HKDF-extract."""
        shared_point = _parse_pubkey(pubkey_hex).multiply(privkey.secret)
        shared_x = shared_point.format(compressed=True)[1:]
        # HKDF-extract only: PRK = HMAC(salt, IKM)
        return hmac.new(NIP44Encrypt.SALT, shared_x, hashlib.sha256).digest()

    @staticmethod
    def get_message_keys(
        conversation_key: bytes, nonce: bytes
    ) -> Tuple[bytes, bytes, bytes]:
        if len(conversation_key) != 32:
            raise NIP44Error("Invalid conversation key length")
        if len(nonce) != 32:
            raise NIP44Error("Invalid nonce length")
        expanded = HKDFExpand(algorithm=hashes.SHA256(), length=76, info=nonce).derive(
            conversation_key
        )
        return expanded[0:32], expanded[32:44], expanded[44:76]

    @staticmethod
    def hmac_aad(key: bytes, message: bytes, aad: bytes) -> bytes:
        if len(aad) != 32:
            raise NIP44Error("AAD must be 32 bytes")
        return hmac.new(key, aad + message, hashlib.sha256).digest()

    @staticmethod
    def chacha20(key: bytes, nonce: bytes, data: bytes) -> bytes:
        # cryptography's ChaCha20 takes a 16 byte nonce: 4 byte LE counter + 12 byte nonce
        cipher = Cipher(algorithms.ChaCha20(key, b"\x00" * 4 + nonce), mode=None)
        encryptor = cipher.encryptor()
        return encryptor.update(data) + encryptor.finalize()

    @staticmethod
    def encrypt(
        plaintext: str,
        sender_privkey: PrivateKey,
        recipient_pubkey: str,
        nonce: bytes | None = None,
    ) -> str:
        """Encrypt a message using NIP-44 v2.

        Args:
            plaintext: Message to encrypt
            sender_privkey: Sender's private key
            recipient_pubkey: Recipient's public key (hex)
            nonce: Fixed nonce, for test vectors only

        Returns:
            Base64 encoded encrypted payload
        """
        nonce = nonce or secrets.token_bytes(32)
        conversation_key = NIP44Encrypt.get_conversation_key(
            sender_privkey, recipient_pubkey
        )
        chacha_key, chacha_nonce, hmac_key = NIP44Encrypt.get_message_keys(
            conversation_key, nonce
        )
        padded = NIP44Encrypt.pad(plaintext.encode("utf-8"))
        ciphertext = NIP44Encrypt.chacha20(chacha_key, chacha_nonce, padded)
        mac = NIP44Encrypt.hmac_aad(hmac_key, ciphertext, nonce)
        payload = bytes([NIP44Encrypt.VERSION]) + nonce + ciphertext + mac
        return base64.b64encode(payload).decode("ascii")

    @staticmethod
    def decrypt(
        ciphertext: str, recipient_privkey: PrivateKey, sender_pubkey: str
    ) -> str:
        """Decrypt a NIP-44 v2 payload.

        Raises:
            NIP44Error: On unknown version, bad MAC, bad padding or bad encoding
        """
        if not ciphertext or ciphertext.startswith("#"):
            raise NIP44Error("Unsupported encryption version")
        try:
            payload = base64.b64decode(ciphertext, validate=True)
        except ValueError as e:
            raise NIP44Error(f"Invalid base64: {e}") from e

        if len(payload) < 99 or len(payload) > 65603:
            raise NIP44Error(f"Invalid payload size: {len(payload)}")
        if payload[0] != NIP44Encrypt.VERSION:
            raise NIP44Error(f"Unknown version: {payload[0]}")

        nonce = payload[1:33]
        mac = payload[-32:]
        encrypted_data = payload[33:-32]

        conversation_key = NIP44Encrypt.get_conversation_key(
            recipient_privkey, sender_pubkey
        )
        chacha_key, chacha_nonce, hmac_key = NIP44Encrypt.get_message_keys(
            conversation_key, nonce
        )
        calculated_mac = NIP44Encrypt.hmac_aad(hmac_key, encrypted_data, nonce)
        if not hmac.compare_digest(calculated_mac, mac):
            raise NIP44Error("Invalid MAC")

        padded = NIP44Encrypt.chacha20(chacha_key, chacha_nonce, encrypted_data)
        try:
            return NIP44Encrypt.unpad(padded).decode("utf-8")
        except UnicodeDecodeError as e:
            raise NIP44Error("Plaintext is not valid UTF-8") from e


def nip44_encrypt(plaintext: str, privkey: PrivateKey, pubkey: str | None = None) -> str:
    """Encrypt to ``pubkey``, defaulting to ourselves (NIP-60 self-encryption)."""
    return NIP44Encrypt.encrypt(plaintext, privkey, pubkey or get_pubkey(privkey))


def nip44_decrypt(ciphertext: str, privkey: PrivateKey, pubkey: str | None = None) -> str:
    """Decrypt from ``pubkey``, defaulting to ourselves (NIP-60 self-encryption)."""
    return NIP44Encrypt.decrypt(ciphertext, privkey, pubkey or get_pubkey(privkey))
