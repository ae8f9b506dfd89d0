"""Unit tests for wallet and evidence collaborators."""

from decimal import Decimal
from pathlib import Path
import sys
import tempfile
import unittest


PROJECT_ROOT = Path(__file__).resolve().parents[2]
BACKEND_ROOT = PROJECT_ROOT / "backend"
TESTS_ROOT = BACKEND_ROOT / "tests"
for _path in (BACKEND_ROOT, TESTS_ROOT):
    if str(_path) not in sys.path:
        sys.path.insert(0, str(_path))

from models.exceptions import CollaboratorUnavailable
from services.collaborators import (
    EvidenceUpload,
    HttpWalletService,
    LocalEvidenceStore,
    StaticWalletService,
    build_wallet_service,
)
from payment_fixtures import make_settings, receipt


class LocalEvidenceStoreTests(unittest.TestCase):
    def test_upload_is_written_below_tenant_and_plan(self) -> None:
        directory = tempfile.mkdtemp(prefix="evidence-test-")
        store = LocalEvidenceStore(directory, public_base_url="/evidence/")
        url = store.store(receipt(), "tenant 1", "plan_9")
        self.assertTrue(url.startswith("/evidence/tenant_1/plan_9/"))
        self.assertTrue(url.endswith("_receipt.pdf"))
        written = list(Path(directory, "tenant_1", "plan_9").iterdir())
        self.assertEqual(written[0].read_bytes(), receipt().content)

    def test_empty_upload_is_refused(self) -> None:
        store = LocalEvidenceStore(tempfile.mkdtemp(prefix="evidence-test-"))
        with self.assertRaises(CollaboratorUnavailable):
            store.store(EvidenceUpload(filename="blank.png", content=b""), "tenant_1", "plan_9")


class WalletServiceTests(unittest.TestCase):
    def test_static_wallet_defaults_to_zero(self) -> None:
        wallet = StaticWalletService()
        self.assertEqual(wallet.get_balance("tenant_1", "member_1"), Decimal("0.00"))
        wallet.set_balance("tenant_1", "member_1", "1500.5")
        self.assertEqual(wallet.get_balance("tenant_1", "member_1"), Decimal("1500.50"))

    def test_unreachable_wallet_service_is_collaborator_failure(self) -> None:
        wallet = HttpWalletService("http://127.0.0.1:9", timeout_sec=1)
        with self.assertRaises(CollaboratorUnavailable):
            wallet.get_balance("tenant_1", "member_1")

    def test_factory_picks_client_from_settings(self) -> None:
        self.assertIsInstance(build_wallet_service(make_settings()), StaticWalletService)
        configured = make_settings(wallet_service_base_url="http://wallet.internal")
        self.assertIsInstance(build_wallet_service(configured), HttpWalletService)


if __name__ == "__main__":
    unittest.main()
