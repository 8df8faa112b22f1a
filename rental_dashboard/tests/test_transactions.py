import unittest
from datetime import date

from rental_fixtures import add_decoration, add_item, add_rental, add_report, catalog_item, new_session

from models.rental_models import Decoration, InventoryItem, Rental
from services.cart_service import WorkspaceRegistry
from services.errors import AvailabilityError, ConstraintError, ValidationError
from services.transaction_service import (
    LINKED_REPORTS_MESSAGE,
    SubmitPath,
    TransactionHeader,
    open_workspace,
    resolve_path,
    submit,
)


START = date(2025, 3, 1)
END = date(2025, 3, 3)


def _header(**overrides):
    values = {
        "renter_name": "Ana Cruz",
        "rent_date": START,
        "return_date": END,
        "payment_method": "Cash",
    }
    values.update(overrides)
    return TransactionHeader(**values)


class TransactionSubmitTests(unittest.TestCase):
    def setUp(self):
        self.db = new_session()
        self.registry = WorkspaceRegistry()
        self.chair = add_item(self.db, "Chair", total=10, price=100.0)
        self.table = add_item(self.db, "Table", total=4, price=300.0)

    def tearDown(self):
        self.db.close()

    def _rental_count(self):
        return self.db.query(Rental).count()

    def test_path_selection(self):
        workspace = self.registry.open("k")
        self.assertEqual(resolve_path(workspace, _header()), SubmitPath.CREATE)

        existing = add_rental(self.db, self.chair, 2)
        workspace = open_workspace(self.db, self.registry, "k", [existing.id])
        self.assertEqual(resolve_path(workspace, _header()), SubmitPath.SINGLE_EDIT)
        self.assertEqual(resolve_path(workspace, _header(status="returned")), SubmitPath.RETURN)

        workspace.cart.add_line(catalog_item(self.db, self.table), 1, 1)
        self.assertEqual(resolve_path(workspace, _header()), SubmitPath.COMPLEX_EDIT)

        other = add_rental(self.db, self.table, 1)
        workspace = open_workspace(self.db, self.registry, "k", [existing.id, other.id])
        self.assertEqual(resolve_path(workspace, _header()), SubmitPath.BATCH_EDIT)

    def test_create_writes_one_row_per_line(self):
        workspace = self.registry.open("k")
        workspace.cart.add_line(catalog_item(self.db, self.chair), 4, 1)
        workspace.cart.add_line(catalog_item(self.db, self.table), 1, 1)
        outcome = submit(self.db, workspace, _header(advance_payment=500))

        self.assertEqual(outcome.path, SubmitPath.CREATE)
        self.assertEqual(outcome.inserted, 2)
        rows = [self.db.get(Rental, rental_id) for rental_id in outcome.rental_ids]
        self.assertEqual([row.payment_amount for row in rows], [1200.0, 900.0])
        self.assertEqual([row.advance_payment for row in rows], [500.0, 0.0])
        self.assertTrue(all(row.status == "reserved" for row in rows))
        self.assertEqual(len(workspace.cart), 0)

    def test_create_with_custom_price_splits_amount(self):
        workspace = self.registry.open("k")
        workspace.cart.add_line(catalog_item(self.db, self.chair), 3, 1)
        workspace.cart.add_line(catalog_item(self.db, self.table), 1, 1)
        workspace.cart.set_custom_price(True, 1000)
        outcome = submit(self.db, workspace, _header(return_date=START))
        amounts = [self.db.get(Rental, rental_id).payment_amount for rental_id in outcome.rental_ids]
        self.assertEqual(amounts, [500.0, 500.0])

    def test_create_shortfall_writes_nothing(self):
        add_rental(self.db, self.chair, 8)
        workspace = self.registry.open("k")
        workspace.cart.add_line(catalog_item(self.db, self.chair), 3, 1)
        with self.assertRaises(AvailabilityError) as ctx:
            submit(self.db, workspace, _header())
        self.assertEqual(ctx.exception.shortfall, 1)
        self.assertEqual(ctx.exception.available, 2)
        self.assertIn("Chair (need 3, only 2 available)", str(ctx.exception))
        self.assertEqual(self._rental_count(), 1)
        self.assertEqual(len(workspace.cart), 1)

    def test_availability_is_rechecked_at_submit(self):
        workspace = self.registry.open("k")
        workspace.cart.add_line(catalog_item(self.db, self.chair), 6, 1)
        add_rental(self.db, self.chair, 6, renter_name="Someone Else")
        with self.assertRaises(AvailabilityError):
            submit(self.db, workspace, _header())
        self.assertEqual(self._rental_count(), 1)

    def test_validation_errors(self):
        workspace = self.registry.open("k")
        with self.assertRaisesRegex(ValidationError, "Please add at least one item to the cart"):
            submit(self.db, workspace, _header())
        with self.assertRaisesRegex(ValidationError, "Please fill in client name and rental date"):
            submit(self.db, workspace, _header(renter_name="  "))

        workspace.cart.add_line(catalog_item(self.db, self.chair), 1, 1)
        with self.assertRaisesRegex(ValidationError, "Return date cannot be before rent date"):
            submit(self.db, workspace, _header(return_date=date(2025, 2, 1)))
        with self.assertRaises(ValidationError):
            submit(self.db, workspace, _header(advance_payment=99999))
        with self.assertRaises(ValidationError):
            submit(self.db, workspace, _header(status="lost"))
        self.assertEqual(self._rental_count(), 0)

    def test_decoration_stock_is_decremented(self):
        arch = add_decoration(self.db, total=10, price=50.0)
        workspace = self.registry.open("k")
        workspace.cart.add_line(catalog_item(self.db, arch), 3, 1)
        outcome = submit(self.db, workspace, _header())
        self.db.expire_all()
        self.assertEqual(self.db.get(Decoration, arch.id).quantity_available, 7)
        self.assertEqual(self.db.get(Rental, outcome.rental_ids[0]).payment_amount, 150.0)

    def test_rental_items_require_return_date(self):
        workspace = self.registry.open("k")
        workspace.cart.add_line(catalog_item(self.db, self.chair), 5, 1)
        with self.assertRaisesRegex(ValidationError, "Please select a return date"):
            submit(self.db, workspace, _header(return_date=None))
        self.assertEqual(self._rental_count(), 0)

    def test_decoration_sale_needs_no_return_date(self):
        arch = add_decoration(self.db, total=10, price=50.0)
        workspace = self.registry.open("k")
        workspace.cart.add_line(catalog_item(self.db, arch), 2, 1)
        outcome = submit(self.db, workspace, _header(return_date=None))
        self.assertIsNone(self.db.get(Rental, outcome.rental_ids[0]).return_date)

    def test_single_edit_keeps_row_id_and_excludes_itself(self):
        existing = add_rental(self.db, self.table, 4)
        workspace = open_workspace(self.db, self.registry, "k", [existing.id])
        self.assertEqual(workspace.start_date, START)
        outcome = submit(self.db, workspace, _header(payment_status="Paid"))

        self.assertEqual(outcome.path, SubmitPath.SINGLE_EDIT)
        self.assertEqual(outcome.rental_ids, [existing.id])
        self.db.expire_all()
        row = self.db.get(Rental, existing.id)
        self.assertEqual(row.payment_status, "Paid")
        self.assertEqual(row.quantity, 4)
        self.assertEqual(self._rental_count(), 1)

    def test_single_edit_cannot_exceed_stock(self):
        existing = add_rental(self.db, self.table, 2)
        add_rental(self.db, self.table, 2, renter_name="Other")
        workspace = open_workspace(self.db, self.registry, "k", [existing.id])
        workspace.cart.lines[0].quantity = 3
        with self.assertRaises(AvailabilityError):
            submit(self.db, workspace, _header())
        self.db.expire_all()
        self.assertEqual(self.db.get(Rental, existing.id).quantity, 2)

    def test_complex_edit_replaces_row(self):
        existing = add_rental(self.db, self.chair, 2)
        workspace = open_workspace(self.db, self.registry, "k", [existing.id])
        workspace.cart.add_line(catalog_item(self.db, self.table), 1, 1)
        outcome = submit(self.db, workspace, _header())

        self.assertEqual(outcome.path, SubmitPath.COMPLEX_EDIT)
        self.assertEqual(outcome.deleted, 1)
        self.assertEqual(outcome.inserted, 2)
        self.assertIsNone(self.db.get(Rental, existing.id))
        self.assertEqual(self._rental_count(), 2)

    def test_complex_edit_refused_with_linked_reports(self):
        existing = add_rental(self.db, self.chair, 2)
        add_report(self.db, existing)
        workspace = open_workspace(self.db, self.registry, "k", [existing.id])
        workspace.cart.add_line(catalog_item(self.db, self.table), 1, 1)
        with self.assertRaises(ConstraintError) as ctx:
            submit(self.db, workspace, _header())
        self.assertEqual(str(ctx.exception), LINKED_REPORTS_MESSAGE)
        self.assertIsNotNone(self.db.get(Rental, existing.id))
        self.assertEqual(self._rental_count(), 1)

    def test_batch_edit_updates_inserts_and_deletes(self):
        first = add_rental(self.db, self.chair, 2)
        second = add_rental(self.db, self.table, 1)
        workspace = open_workspace(self.db, self.registry, "k", [first.id, second.id])
        workspace.cart.remove_line(1)
        workspace.cart.lines[0].quantity = 5
        workspace.cart.add_line(catalog_item(self.db, add_item(self.db, "Tent", total=2, price=1000.0)), 1, 1)
        outcome = submit(self.db, workspace, _header(renter_name="Ana C."))

        self.assertEqual(outcome.path, SubmitPath.BATCH_EDIT)
        self.assertEqual((outcome.updated, outcome.inserted, outcome.deleted), (1, 1, 1))
        self.db.expire_all()
        self.assertIsNone(self.db.get(Rental, second.id))
        kept = self.db.get(Rental, first.id)
        self.assertEqual(kept.quantity, 5)
        self.assertEqual(kept.renter_name, "Ana C.")

    def test_batch_edit_refuses_removing_rows_with_reports(self):
        first = add_rental(self.db, self.chair, 2)
        second = add_rental(self.db, self.table, 1)
        add_report(self.db, second)
        workspace = open_workspace(self.db, self.registry, "k", [first.id, second.id])
        workspace.cart.remove_line(1)
        with self.assertRaises(ConstraintError):
            submit(self.db, workspace, _header())
        self.assertIsNotNone(self.db.get(Rental, second.id))

    def test_return_path_hands_over_to_return_processing(self):
        existing = add_rental(self.db, self.chair, 2)
        workspace = open_workspace(self.db, self.registry, "k", [existing.id])
        outcome = submit(self.db, workspace, _header(status="returned"))
        self.assertEqual(outcome.path, SubmitPath.RETURN)
        self.assertTrue(outcome.return_session.requires_choice)
        self.assertEqual(self.db.get(Rental, existing.id).status, "reserved")

    def test_open_workspace_rejects_unknown_ids(self):
        with self.assertRaises(ValidationError):
            open_workspace(self.db, self.registry, "k", [404])
        self.assertEqual(self.db.get(InventoryItem, self.chair.id).quantity_total, 10)


if __name__ == "__main__":
    unittest.main()
