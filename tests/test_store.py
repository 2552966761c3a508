"""Tests for the SQLAlchemy pairing store."""
from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from keytag.errors import AlreadyPaired, UnknownDevice
from keytag.models import PairingCandidate
from keytag.store import PairingStore


class PairingStoreTest(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self._tmp.name) / "tags.sqlite3"
        self.store = PairingStore(f"sqlite:///{self.db_path}")

    def tearDown(self) -> None:
        self.store.close()
        self._tmp.cleanup()

    def test_add_uses_default_display_name(self) -> None:
        record = self.store.add(PairingCandidate("aa:bb:cc:dd:ee:01", "0102"))

        self.assertEqual(record.address, "AA:BB:CC:DD:EE:01")
        self.assertEqual(record.name, "iTAG aa:bb:cc:dd:ee:01")
        self.assertEqual(record.manufacturer_data, "0102")
        self.assertEqual(record.identity.connection_id, "aabbccddee01")

    def test_duplicate_pairing_is_rejected(self) -> None:
        self.store.add(PairingCandidate("AA:BB:CC:DD:EE:01", ""))
        with self.assertRaises(AlreadyPaired):
            self.store.add(PairingCandidate("aa:bb:cc:dd:ee:01", ""), name="Keys")

    def test_records_persist_across_instances(self) -> None:
        self.store.add(PairingCandidate("AA:BB:CC:DD:EE:01", ""), name="Keys")
        self.store.add(PairingCandidate("AA:BB:CC:DD:EE:02", "ff"), name="Wallet")
        self.store.close()

        reopened = PairingStore(f"sqlite:///{self.db_path}")
        try:
            records = reopened.all()
            self.assertEqual([r.name for r in records], ["Keys", "Wallet"])
            self.assertEqual(records[1].to_dict()["manufacturer_data"], "ff")
            self.assertIsNotNone(records[0].to_dict()["paired_at"])
        finally:
            reopened.close()
        self.store = PairingStore(f"sqlite:///{self.db_path}")

    def test_rename_keeps_identity(self) -> None:
        self.store.add(PairingCandidate("AA:BB:CC:DD:EE:01", "0102"))

        renamed = self.store.rename("aa:bb:cc:dd:ee:01", "Car keys")

        self.assertEqual(renamed.name, "Car keys")
        stored = self.store.get("AA:BB:CC:DD:EE:01")
        self.assertEqual(stored.name, "Car keys")
        self.assertEqual(stored.manufacturer_data, "0102")

    def test_remove(self) -> None:
        self.store.add(PairingCandidate("AA:BB:CC:DD:EE:01", ""))
        self.store.remove("AA:BB:CC:DD:EE:01")

        self.assertIsNone(self.store.get("AA:BB:CC:DD:EE:01"))
        with self.assertRaises(UnknownDevice):
            self.store.remove("AA:BB:CC:DD:EE:01")
        with self.assertRaises(UnknownDevice):
            self.store.rename("AA:BB:CC:DD:EE:01", "gone")

    def test_invalid_address_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.store.add(PairingCandidate("not-an-address", ""))


if __name__ == "__main__":
    unittest.main()
