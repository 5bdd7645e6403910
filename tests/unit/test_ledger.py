"""Unit tests for the proof ledger."""

import pytest

from nutledger.ledger import PENDING_EVENT_ID, ProofLedger
from nutledger.types import KeysetInfo, UnknownMint, WalletError

from conftest import KEYSET_ID, MINT_URL, make_proof


class TestAddProofs:
    """Insertion, deduplication and mint registration."""

    def test_first_proofs_register_mint(self):
        """A mint with no prior state gets its balance from the first proofs."""
        ledger = ProofLedger()
        ledger.add_proofs([make_proof(10, "a")], "ev1")

        assert ledger.balances() == {MINT_URL: 10}

    def test_replaying_same_proofs_is_noop(self):
        """Adding the same proofs twice keeps the balance at 10, not 20."""
        ledger = ProofLedger()
        proofs = [make_proof(10, "a")]

        assert len(ledger.add_proofs(proofs, "ev1")) == 1
        assert ledger.add_proofs(proofs, "ev1") == []
        assert ledger.balances() == {MINT_URL: 10}
        assert len(ledger) == 1

    def test_same_secret_from_another_event_is_ignored(self):
        ledger = ProofLedger()
        ledger.add_proofs([make_proof(10, "a")], "ev1")
        ledger.add_proofs([make_proof(10, "a")], "ev2")

        assert len(ledger) == 1
        assert ledger.origin_of(make_proof(10, "a")) == "ev1"

    def test_no_duplicate_secrets_over_mixed_operations(self):
        ledger = ProofLedger()
        a, b, c = make_proof(1, "a"), make_proof(2, "b"), make_proof(4, "c")
        ledger.add_proofs([a, b], "ev1")
        ledger.add_proofs([b, c], "ev2")
        ledger.remove_proofs([b])
        ledger.add_proofs([a, c], "ev3")

        secrets = [p["secret"] for p in ledger.proofs]
        assert len(secrets) == len(set(secrets))
        assert sorted(secrets) == ["a", "c"]

    def test_trailing_slash_mint_urls_are_one_mint(self):
        ledger = ProofLedger()
        ledger.add_proofs([make_proof(1, "a", mint=MINT_URL + "/")], "ev1")
        ledger.add_proofs([make_proof(2, "b")], "ev2")

        assert ledger.balances() == {MINT_URL: 3}

    def test_save_hook_runs_after_mutation(self):
        calls = []
        ledger = ProofLedger(on_change=calls.append)
        ledger.add_proofs([make_proof(1, "a")], "ev1")

        assert calls
        calls.clear()
        ledger.add_proofs([make_proof(1, "a")], "ev1")
        assert calls == []

    def test_batch_saves_once(self):
        calls = []
        ledger = ProofLedger(on_change=calls.append)
        with ledger.batch():
            ledger.add_proofs([make_proof(1, "a")], "ev1")
            ledger.add_proofs([make_proof(2, "b")], "ev2")
            assert calls == []
        assert len(calls) == 1


class TestRemoveProofs:
    """Spending removes by secret and never lets a proof come back."""

    def test_remove_missing_proof_is_noop_for_balance(self):
        ledger = ProofLedger()
        ledger.add_proofs([make_proof(10, "a")], "ev1")

        assert ledger.remove_proofs([make_proof(5, "zzz")]) == []
        assert ledger.balances() == {MINT_URL: 10}

    def test_removed_proof_is_not_resurrected_by_replay(self):
        ledger = ProofLedger()
        proof = make_proof(10, "a")
        ledger.add_proofs([proof], "ev1")
        ledger.remove_proofs([proof])

        assert ledger.add_proofs([proof], "ev1") == []
        assert ledger.is_spent("a")
        assert ledger.balances() == {MINT_URL: 0}


class TestTombstones:
    """Deletion of origin events."""

    def test_tombstone_drops_proofs_still_bound(self):
        ledger = ProofLedger()
        p1, p2 = make_proof(1, "a"), make_proof(2, "b")
        ledger.add_proofs([p1, p2], "E")

        dropped = ledger.tombstone("E")

        assert {p["secret"] for p in dropped} == {"a", "b"}
        assert ledger.proofs_from_event("E") == []
        assert ledger.balances() == {MINT_URL: 0}

    def test_tombstone_spares_rebound_and_spent_proofs(self):
        ledger = ProofLedger()
        p1, p2, p3 = make_proof(1, "a"), make_proof(2, "b"), make_proof(4, "c")
        ledger.add_proofs([p1, p2, p3], "E")
        ledger.remove_proofs([p1])
        ledger.rebind([p2], "F")

        dropped = ledger.tombstone("E")

        assert [p["secret"] for p in dropped] == ["c"]
        assert ledger.origin_of(p2) == "F"
        assert ledger.balances() == {MINT_URL: 2}

    def test_deletion_before_token_event_is_honoured(self):
        """A tombstone arriving first keeps the late token event out."""
        ledger = ProofLedger()
        ledger.tombstone("E")

        assert ledger.add_proofs([make_proof(5, "a")], "E") == []
        assert ledger.is_tombstoned("E")

    def test_tombstoned_proofs_can_come_back_from_rollover(self):
        """Dropping by tombstone is not spending: a rollover may carry the proof."""
        ledger = ProofLedger()
        proof = make_proof(5, "a")
        ledger.add_proofs([proof], "E")
        ledger.tombstone("E")

        assert ledger.add_proofs([proof], "F") == [proof]
        assert ledger.origin_of(proof) == "F"

    def test_proof_listed_by_live_event_survives_tombstone(self):
        ledger = ProofLedger()
        p1, p2, p3 = make_proof(4, "p1"), make_proof(2, "p2"), make_proof(1, "p3")
        ledger.add_proofs([p1, p2], "A")
        ledger.add_proofs([p2, p3], "B")

        dropped = ledger.tombstone("A")

        assert [p["secret"] for p in dropped] == ["p1"]
        assert ledger.origin_of(p2) == "B"
        assert ledger.balances() == {MINT_URL: 3}

    def test_deleted_carriers_do_not_keep_proofs(self):
        ledger = ProofLedger()
        proof = make_proof(2, "p2")
        ledger.add_proofs([proof], "A")
        ledger.add_proofs([proof], "B")
        ledger.tombstone("B")

        assert ledger.tombstone("A") == [proof]
        assert ledger.balances() == {MINT_URL: 0}

    def test_spent_proof_is_not_moved_to_carrier(self):
        ledger = ProofLedger()
        proof = make_proof(2, "p2")
        ledger.add_proofs([proof], "A")
        ledger.add_proofs([proof], "B")
        ledger.remove_proofs([proof])

        assert ledger.tombstone("A") == []
        assert ledger.add_proofs([proof], "C") == []
        assert ledger.balances() == {MINT_URL: 0}


class TestSpentPruning:
    """The spent set forgets secrets no event can bring back."""

    def test_prunes_secrets_of_deleted_events_spent_before_watermark(self):
        ledger = ProofLedger()
        a, b = make_proof(1, "a"), make_proof(2, "b")
        ledger.add_proofs([a, b], "E")
        ledger.remove_proofs([a, b])
        ledger.tombstone("E")

        assert ledger.prune_spent(before=0) == 0
        assert ledger.prune_spent(before=2**40) == 2
        assert not ledger.is_spent("a")
        assert ledger.add_proofs([a], "E") == []

    def test_keeps_secrets_of_live_events(self):
        ledger = ProofLedger()
        proof = make_proof(1, "a")
        ledger.add_proofs([proof], "E")
        ledger.remove_proofs([proof])

        assert ledger.prune_spent(before=2**40) == 0
        assert ledger.add_proofs([proof], "E") == []


class TestDeferredDeletions:
    def test_defer_and_clear(self):
        ledger = ProofLedger()
        ledger.defer_deletions(MINT_URL + "/", ["E1", "E2"])

        assert ledger.deferred_mints == [MINT_URL]
        assert ledger.deferred_deletions(MINT_URL) == {"E1", "E2"}

        ledger.clear_deferred(MINT_URL, ["E1"])
        assert ledger.deferred_deletions(MINT_URL) == {"E2"}
        ledger.clear_deferred(MINT_URL)
        assert ledger.deferred_mints == []


class TestMints:
    def test_remove_empty_mint(self):
        ledger = ProofLedger()
        ledger.add_mint(MINT_URL)
        ledger.add_mint("https://other.example.com")

        ledger.remove_mint("https://other.example.com/")

        assert ledger.mints == [MINT_URL]

    def test_mint_holding_proofs_cannot_be_removed(self):
        ledger = ProofLedger()
        ledger.add_proofs([make_proof(4, "a")], "E")

        with pytest.raises(WalletError, match="still holds 4"):
            ledger.remove_mint(MINT_URL)
        with pytest.raises(UnknownMint):
            ledger.remove_mint("https://nowhere.example.com")
        assert ledger.mints == [MINT_URL]


class TestSpendability:
    """Keyset activity and unknown mints."""

    def test_proofs_for_unregistered_mint_raise(self):
        with pytest.raises(UnknownMint):
            ProofLedger().proofs_for_mint("https://nowhere.example.com")

    def test_inactive_keyset_excluded_from_balance(self):
        ledger = ProofLedger()
        ledger.add_proofs([make_proof(8, "a"), make_proof(2, "b", keyset_id="old")], "ev1")
        ledger.set_keysets(
            MINT_URL, [KeysetInfo(id=KEYSET_ID), KeysetInfo(id="old", active=False)]
        )

        assert ledger.balances() == {MINT_URL: 8}
        assert ledger.held_balances() == {MINT_URL: 10}
        assert [p["secret"] for p in ledger.proofs_for_mint(MINT_URL)] == ["a"]

    def test_unknown_keyset_retained_but_not_spendable(self, caplog):
        ledger = ProofLedger()
        ledger.set_keysets(MINT_URL, [KeysetInfo(id=KEYSET_ID)])
        ledger.add_proofs([make_proof(4, "a", keyset_id="ffffffffffffffff")], "ev1")

        assert len(ledger) == 1
        assert ledger.balances() == {MINT_URL: 0}
        assert ledger.unknown_keysets() == {(MINT_URL, "ffffffffffffffff")}
        assert "Unknown keyset" in caplog.text

    def test_balance_is_sum_of_active_proofs_per_mint(self):
        other = "https://other.example.com"
        ledger = ProofLedger()
        ledger.add_proofs([make_proof(1, "a"), make_proof(4, "b")], "ev1")
        ledger.add_proofs([make_proof(16, "c", mint=other)], "ev2")
        ledger.add_mint("https://empty.example.com")

        assert ledger.balances() == {
            MINT_URL: 5,
            other: 16,
            "https://empty.example.com": 0,
        }
        assert ledger.total_balance() == 21


class TestSnapshot:
    """to_dict / from_dict."""

    def test_round_trip_keeps_origins_and_spent(self):
        ledger = ProofLedger()
        a, b = make_proof(1, "a"), make_proof(2, "b")
        ledger.add_proofs([a, b], "ev1")
        ledger.add_proofs([make_proof(4, "c")], PENDING_EVENT_ID)
        ledger.remove_proofs([a])
        ledger.tombstone("gone")
        ledger.privkey = "11" * 32

        restored = ProofLedger.from_dict(ledger.to_dict())

        assert restored.balances() == ledger.balances()
        assert restored.origin_of(b) == "ev1"
        assert [p["secret"] for p in restored.proofs_from_event(PENDING_EVENT_ID)] == ["c"]
        assert restored.is_spent("a")
        assert restored.is_tombstoned("gone")
        assert restored.privkey == "11" * 32

    def test_round_trip_keeps_carriers_and_deferred_deletions(self):
        ledger = ProofLedger()
        proof = make_proof(2, "p2")
        ledger.add_proofs([proof], "A")
        ledger.add_proofs([proof], "B")
        ledger.defer_deletions(MINT_URL, ["old"])

        restored = ProofLedger.from_dict(ledger.to_dict())
        restored.tombstone("A")

        assert restored.origin_of(proof) == "B"
        assert restored.deferred_deletions(MINT_URL) == {"old"}

    def test_older_snapshot_with_spent_list(self):
        restored = ProofLedger.from_dict({"spent": ["a", "b"]})

        assert restored.is_spent("a")
        assert restored.add_proofs([make_proof(1, "b")], "E") == []
