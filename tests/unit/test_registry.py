"""
Unit tests for RegistryStore: reads, validated mutations and durable writes.
"""

import json
from decimal import Decimal

import pytest

from cdpbridge import InsufficientBalance, NotFound, RegistryStore


@pytest.fixture
def store():
    return RegistryStore({"AP": {"stocks": {"A": 1000, "B": 500}, "etfs": {"ES3": 0}}})


class TestReads:

    def test_get_account(self, store):
        account = store.get_account("AP")
        assert account.stock("A") == Decimal(1000)
        assert account.etf("ES3") == Decimal(0)
        assert account.etf("MISSING") == Decimal(0)

    def test_unknown_owner(self, store):
        with pytest.raises(NotFound, match="THOMAS"):
            store.get_account("THOMAS")

    def test_snapshot_is_detached(self, store):
        account = store.get_account("AP")
        store.adjust_stock("AP", "A", Decimal("-1"))
        assert account.stock("A") == Decimal(1000)

    def test_negative_quantity_in_document_rejected(self):
        with pytest.raises(ValueError):
            RegistryStore({"AP": {"stocks": {"A": -1}}})


class TestMutations:

    def test_adjust_stock_returns_new_quantity(self, store):
        assert store.adjust_stock("AP", "A", Decimal("-500")) == Decimal(500)
        assert store.get_account("AP").stock("A") == Decimal(500)

    def test_adjust_etf_creates_symbol(self, store):
        assert store.adjust_etf("AP", "XYZ", Decimal("2.5")) == Decimal("2.5")

    def test_negative_result_rejected_without_change(self, store):
        with pytest.raises(InsufficientBalance) as exc:
            store.adjust_stock("AP", "B", Decimal("-501"))
        assert exc.value.symbol == "B"
        assert exc.value.available == Decimal(500)
        assert store.get_account("AP").stock("B") == Decimal(500)

    def test_apply_is_all_or_nothing(self, store):
        with pytest.raises(InsufficientBalance) as exc:
            store.apply("AP", stock_deltas={"A": Decimal("-10"), "B": Decimal("-600")},
                        etf_deltas={"ES3": Decimal("5")})
        assert exc.value.symbol == "B"
        account = store.get_account("AP")
        assert account.stock("A") == Decimal(1000)
        assert account.etf("ES3") == Decimal(0)

    def test_apply_to_unknown_owner(self, store):
        with pytest.raises(NotFound):
            store.apply("NOBODY", stock_deltas={"A": Decimal(1)})

    def test_ensure_account_creates_once(self, store):
        created = store.ensure_account("THOMAS")
        assert created.stocks == {}
        store.adjust_etf("THOMAS", "ES3", Decimal(1))
        assert store.ensure_account("THOMAS").etf("ES3") == Decimal(1)
        assert store.list_owners() == ["AP", "THOMAS"]

    def test_record_wallet_address(self, store):
        store.record_wallet_address("AP", "0xabc")
        assert store.get_account("AP").wallet_address == "0xabc"


class TestPersistence:

    def test_writes_and_reloads(self, tmp_path):
        path = tmp_path / "registry.json"
        path.write_text(json.dumps({
            "accounts": {"AP": {"stocks": {"A": 1000}, "etfs": {}}},
            "etf_compositions": {"ES3": {"constituents": {"A": 5}}},
        }))
        store = RegistryStore.load(path)
        store.adjust_stock("AP", "A", Decimal("-0.5"))

        document = json.loads(path.read_text())
        assert document["accounts"]["AP"]["stocks"]["A"] == "999.5"
        assert document["etf_compositions"] == {"ES3": {"constituents": {"A": 5}}}
        assert RegistryStore.load(path).get_account("AP").stock("A") == Decimal("999.5")

    def test_missing_file_starts_empty(self, tmp_path):
        path = tmp_path / "new" / "registry.json"
        store = RegistryStore.load(path)
        assert store.list_owners() == []
        store.ensure_account("AP")
        assert path.exists()

    def test_failed_write_leaves_state_untouched(self, tmp_path, monkeypatch):
        path = tmp_path / "registry.json"
        store = RegistryStore({"AP": {"stocks": {"A": 10}}}, path=path)
        store.adjust_stock("AP", "A", Decimal(0))
        before = path.read_text()

        def broken_write(document):
            raise OSError("disk full")

        monkeypatch.setattr(store, "_write", broken_write)
        with pytest.raises(OSError):
            store.adjust_stock("AP", "A", Decimal("-5"))
        assert store.get_account("AP").stock("A") == Decimal(10)
        assert path.read_text() == before

    def test_no_temp_files_left_behind(self, tmp_path):
        path = tmp_path / "registry.json"
        store = RegistryStore({"AP": {}}, path=path)
        store.adjust_stock("AP", "A", Decimal(1))
        assert [p.name for p in tmp_path.iterdir()] == ["registry.json"]

    def test_failed_fsync_leaves_no_temp_file(self, tmp_path, monkeypatch):
        path = tmp_path / "registry.json"
        store = RegistryStore({"AP": {"stocks": {"A": 10}}}, path=path)
        store.adjust_stock("AP", "A", Decimal(0))
        before = path.read_text()

        def broken_fsync(fd):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr("cdpbridge.registry.os.fsync", broken_fsync)
        with pytest.raises(OSError):
            store.adjust_stock("AP", "A", Decimal("-5"))
        assert [p.name for p in tmp_path.iterdir()] == ["registry.json"]
        assert path.read_text() == before
        assert store.get_account("AP").stock("A") == Decimal(10)

    def test_rejects_non_object_document(self, tmp_path):
        path = tmp_path / "registry.json"
        path.write_text("[]")
        with pytest.raises(ValueError):
            RegistryStore.load(path)
