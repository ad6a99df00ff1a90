"""
tests/test_reserve_ledger.py

Reserve accounting and the signed reserve journal.

  LEDGER
    balance == total_collected − total_paid after every mutation
    balance never negative; strict debit raises InsufficientReserve
    debit_up_to pays min(amount, balance)
    concurrent debits never overdraw

  JOURNAL
    first entry chains to GENESIS_HASH
    ledger rebuilds from journal
    tampered amount / removed line detected by verify_journal
    a journal that fails verification is refused on reopen and on replay
"""

import json
import threading

import pytest

from ilguard.core.crypto import Ed25519KeyManager
from ilguard.core.exceptions import InsufficientReserve, InvalidParameters, JournalError
from ilguard.reserve.journal import GENESIS_HASH, ReserveJournal, verify_journal
from ilguard.reserve.ledger import ReserveLedger


@pytest.fixture
def key():
    return Ed25519KeyManager.generate()


@pytest.fixture
def journal(tmp_path, key):
    return ReserveJournal(tmp_path / "reserve.jsonl", key)


# ─────────────────────────────────────────────────────────────
# Ledger
# ─────────────────────────────────────────────────────────────

class TestLedger:

    def test_unknown_pool_is_empty(self):
        acct = ReserveLedger().account("nope")
        assert (acct.balance, acct.total_collected, acct.total_paid) == (0, 0, 0)

    def test_credit_and_debit_keep_invariant(self):
        ledger = ReserveLedger()
        ledger.credit("p", 500)
        ledger.debit("p", 200, "clm-1")
        acct = ledger.account("p")
        assert acct.balance == 300
        assert acct.balance == acct.total_collected - acct.total_paid

    def test_strict_debit_rejects_overdraw(self):
        ledger = ReserveLedger()
        ledger.credit("p", 100)
        with pytest.raises(InsufficientReserve):
            ledger.debit("p", 101)
        assert ledger.balance("p") == 100

    def test_debit_up_to_pays_partial(self):
        ledger = ReserveLedger()
        ledger.credit("p", 100)
        assert ledger.debit_up_to("p", 150, "clm-1") == 100
        assert ledger.balance("p") == 0
        assert ledger.account("p").total_paid == 100

    def test_debit_up_to_full(self):
        ledger = ReserveLedger()
        ledger.credit("p", 100)
        assert ledger.debit_up_to("p", 40) == 40
        assert ledger.balance("p") == 60

    def test_solvency_predicate(self):
        ledger = ReserveLedger()
        ledger.credit("p", 10)
        assert ledger.is_solvent("p", 10)
        assert not ledger.is_solvent("p", 11)

    def test_pools_are_independent(self):
        ledger = ReserveLedger()
        ledger.credit("a", 10)
        ledger.credit("b", 20)
        ledger.debit("b", 20)
        assert ledger.balance("a") == 10
        assert ledger.balance("b") == 0
        assert ledger.pools() == ["a", "b"]

    def test_negative_amount_rejected(self):
        with pytest.raises(InvalidParameters):
            ReserveLedger().credit("p", -5)

    def test_concurrent_debits_never_overdraw(self):
        ledger = ReserveLedger()
        ledger.credit("p", 1_000)
        barrier = threading.Barrier(20)
        paid = []

        def worker():
            barrier.wait()
            paid.append(ledger.debit_up_to("p", 75))

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(paid) == 1_000
        assert ledger.balance("p") == 0
        acct = ledger.account("p")
        assert acct.total_paid == 1_000


# ─────────────────────────────────────────────────────────────
# Journal
# ─────────────────────────────────────────────────────────────

class TestJournal:

    def test_first_entry_chains_to_genesis(self, journal):
        ReserveLedger(journal).credit("p", 10)
        entries = journal.entries()
        assert entries[0].causal_hash == GENESIS_HASH
        assert entries[0].sequence == 0
        assert entries[0].verify_signature()

    def test_every_mutation_journaled(self, journal):
        ledger = ReserveLedger(journal)
        ledger.credit("p", 100)
        ledger.debit("p", 30, "clm-1")
        ledger.debit_up_to("p", 500, "clm-2")
        entries = journal.entries()
        assert [e.entry_type for e in entries] == ["credit", "debit", "debit"]
        assert [e.amount for e in entries] == [100, 30, 70]
        assert entries[2].claim_id == "clm-2"

    def test_rejected_debit_not_journaled(self, journal):
        ledger = ReserveLedger(journal)
        ledger.credit("p", 5)
        with pytest.raises(InsufficientReserve):
            ledger.debit("p", 6)
        assert len(journal.entries()) == 1

    def test_verify_clean_journal(self, journal, key):
        ledger = ReserveLedger(journal)
        ledger.credit("p", 100)
        ledger.debit("p", 40)
        summary = verify_journal(journal.path, trusted_public_key=key.public_key_hex)
        assert summary.is_valid
        assert summary.total_entries == 2
        assert summary.balances == {"p": 60}
        assert summary.total_collected == {"p": 100}
        assert summary.total_paid == {"p": 40}

    def test_untrusted_signer_flagged(self, journal):
        ReserveLedger(journal).credit("p", 1)
        other = Ed25519KeyManager.generate()
        summary = verify_journal(journal.path, trusted_public_key=other.public_key_hex)
        assert not summary.is_valid
        assert summary.invalid_signatures == 1

    def test_tampered_amount_detected(self, journal):
        ledger = ReserveLedger(journal)
        ledger.credit("p", 100)
        ledger.debit("p", 40)

        lines = journal.path.read_text().splitlines()
        first = json.loads(lines[0])
        first["amount"] = "1000000"
        lines[0] = json.dumps(first)
        journal.path.write_text("\n".join(lines) + "\n")

        summary = verify_journal(journal.path)
        kinds = {v.violation_type for v in summary.violations}
        assert "invalid_signature" in kinds
        assert "chain_break" in kinds

    def test_removed_entry_detected(self, journal):
        ledger = ReserveLedger(journal)
        for amount in (10, 20, 30):
            ledger.credit("p", amount)
        lines = journal.path.read_text().splitlines()
        journal.path.write_text(lines[0] + "\n" + lines[2] + "\n")

        summary = verify_journal(journal.path)
        kinds = {v.violation_type for v in summary.violations}
        assert "sequence_gap" in kinds
        assert not summary.chain_valid

    def test_malformed_line_raises(self, journal):
        journal.path.write_text("{not json\n")
        with pytest.raises(JournalError):
            verify_journal(journal.path)

    def test_ledger_rebuilds_from_journal(self, tmp_path, key):
        path = tmp_path / "reserve.jsonl"
        first = ReserveLedger(ReserveJournal(path, key))
        first.credit("p", 100)
        first.debit("p", 25, "clm-1")

        reopened = ReserveJournal(path, key)
        assert reopened.next_sequence == 2
        restored = ReserveLedger.from_journal(reopened)
        acct = restored.account("p")
        assert (acct.balance, acct.total_collected, acct.total_paid) == (75, 100, 25)

        restored.credit("p", 5)
        assert verify_journal(path).is_valid

    def test_reopen_refuses_removed_debit(self, tmp_path, key):
        path = tmp_path / "reserve.jsonl"
        ledger = ReserveLedger(ReserveJournal(path, key))
        ledger.credit("p", 100)
        ledger.debit("p", 60, "clm-1")
        ledger.credit("p", 5)
        lines = path.read_text().splitlines()
        path.write_text(lines[0] + "\n" + lines[2] + "\n")

        with pytest.raises(JournalError):
            ReserveJournal(path, key)

    def test_replay_refuses_removed_debit(self, journal):
        ledger = ReserveLedger(journal)
        ledger.credit("p", 100)
        ledger.debit("p", 60, "clm-1")
        ledger.credit("p", 5)
        lines = journal.path.read_text().splitlines()
        journal.path.write_text(lines[0] + "\n" + lines[2] + "\n")

        with pytest.raises(JournalError):
            ReserveLedger.from_journal(journal)

    def test_reopen_refuses_reordered_entries(self, tmp_path, key):
        path = tmp_path / "reserve.jsonl"
        ledger = ReserveLedger(ReserveJournal(path, key))
        ledger.credit("p", 100)
        ledger.credit("p", 5)
        lines = path.read_text().splitlines()
        path.write_text(lines[1] + "\n" + lines[0] + "\n")

        with pytest.raises(JournalError):
            ReserveJournal(path, key)

    def test_concurrent_appends_keep_chain(self, journal):
        ledger = ReserveLedger(journal)

        def worker():
            for _ in range(10):
                ledger.credit("p", 1)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        summary = verify_journal(journal.path)
        assert summary.total_entries == 40
        assert summary.is_valid
