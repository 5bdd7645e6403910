"""Unit tests for state persistence."""

from nutledger.state import WalletState
from nutledger.storage import JsonFileStorage, MemoryStorage
from nutledger.types import EventKind, WalletDescriptor

from conftest import MINT_URL, make_proof


class TestStorages:
    def test_memory_storage_does_not_alias(self):
        storage = MemoryStorage()
        data = {"ledger": {"proofs": []}}
        storage.save("k", data)
        data["ledger"]["proofs"].append("mutated")

        assert storage.load("k") == {"ledger": {"proofs": []}}
        assert storage.load("missing") is None

    def test_json_file_storage(self, tmp_path):
        storage = JsonFileStorage(tmp_path / "state")

        assert storage.load("abc") is None
        storage.save("abc", {"x": 1})
        storage.save("abc", {"x": 2})

        assert storage.load("abc") == {"x": 2}
        assert [p.name for p in (tmp_path / "state").iterdir()] == ["wallet_abc.json"]


class TestWalletStatePersistence:
    """Every mutation is saved and survives a reload."""

    def test_state_survives_reload(self, tmp_path):
        storage = JsonFileStorage(tmp_path)
        state = WalletState.load("pub", storage)
        state.set_wallet(WalletDescriptor(mints=[MINT_URL], privkey="55" * 32, created_at=9))
        state.ledger.add_proofs([make_proof(8, "a"), make_proof(2, "b")], "ev1")
        state.ledger.remove_proofs([make_proof(2, "b")])
        state.watermarks.advance(EventKind.Token, [("ev1", 100)])
        state.save()

        restored = WalletState.load("pub", storage)

        assert restored.ledger.balances() == {MINT_URL: 8}
        assert restored.ledger.is_spent("b")
        assert restored.wallet.mints == [MINT_URL]
        assert restored.wallet.created_at == 9
        assert restored.watermarks.get(EventKind.Token) == 100
        assert restored.watermarks.seen(EventKind.Token, "ev1", 100)

    def test_ledger_mutations_save_without_explicit_call(self):
        storage = MemoryStorage()
        state = WalletState("pub", storage=storage)
        state.ledger.add_proofs([make_proof(4, "a")], "ev1")

        restored = WalletState.load("pub", storage)
        assert restored.ledger.balances() == {MINT_URL: 4}
