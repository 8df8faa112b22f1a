import unittest

from rental_fixtures import add_decoration, add_item, add_rental, new_session

from models.rental_models import InventoryHistory, InventoryItem, Rental, Report
from services.errors import ValidationError
from services.return_service import ReturnState, begin_return, commit_return


class ReturnProcessingTests(unittest.TestCase):
    def setUp(self):
        self.db = new_session()
        self.chair = add_item(self.db, "Chair", total=10)
        self.table = add_item(self.db, "Table", total=5)
        self.first = add_rental(self.db, self.chair, 3, status="active")
        self.second = add_rental(self.db, self.table, 2, status="active")
        self.ids = [self.first.id, self.second.id]

    def tearDown(self):
        self.db.close()

    def _reports(self):
        return self.db.query(Report).order_by(Report.id).all()

    def _statuses(self):
        self.db.expire_all()
        return [self.db.get(Rental, rental_id).status for rental_id in self.ids]

    def test_begin_requires_choice_for_rental_items(self):
        session = begin_return(self.db, self.ids)
        self.assertTrue(session.requires_choice)
        self.assertEqual([line.item_name for line in session.lines], ["Chair", "Table"])
        self.assertEqual(self._reports(), [])

    def test_begin_rejects_empty_or_unknown_ids(self):
        with self.assertRaises(ValidationError):
            begin_return(self.db, [])
        with self.assertRaises(ValidationError):
            begin_return(self.db, [self.first.id, 999])

    def test_all_good_writes_returned_reports(self):
        session = commit_return(self.db, begin_return(self.db, self.ids), "all_good")
        self.assertEqual(session.state, ReturnState.COMMITTED)
        self.assertEqual(session.outcome, ReturnState.ALL_GOOD)
        reports = self._reports()
        self.assertEqual([(r.report_type, r.quantity, r.return_condition) for r in reports], [
            ("returned", 3, "good"),
            ("returned", 2, "good"),
        ])
        self.assertEqual(reports[0].notes, "All items returned by Ana Cruz")
        self.assertEqual(self._statuses(), ["returned", "returned"])

    def test_partial_missing_deducts_inventory(self):
        session = commit_return(
            self.db,
            begin_return(self.db, self.ids),
            "partial_missing",
            missing_by_rental_id={self.first.id: 1, self.second.id: 0},
            actor={"id": "u-1", "fullname": "Staff Member"},
        )
        reports = self._reports()
        self.assertEqual(
            [(r.rental_id, r.report_type, r.quantity) for r in reports],
            [
                (self.first.id, "returned", 2),
                (self.first.id, "missing", 1),
                (self.second.id, "returned", 2),
            ],
        )
        self.assertEqual(reports[1].notes, "Items not returned")
        self.assertEqual(session.inventory_deductions, {str(self.chair.id): 1})
        self.db.expire_all()
        self.assertEqual(self.db.get(InventoryItem, self.chair.id).quantity_total, 9)
        self.assertEqual(self.db.get(InventoryItem, self.table.id).quantity_total, 5)
        self.assertEqual(self._statuses(), ["returned", "returned"])

        history = self.db.query(InventoryHistory).all()
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].details["reason"], "missing on return")
        self.assertEqual(history[0].user_name, "Staff Member")

    def test_partial_missing_validates_quantities(self):
        session = begin_return(self.db, self.ids)
        with self.assertRaises(ValidationError):
            commit_return(self.db, session, "partial_missing", missing_by_rental_id={self.first.id: 4})
        self.assertTrue(session.requires_choice)
        self.assertEqual(self._reports(), [])
        self.assertEqual(self._statuses(), ["active", "active"])

    def test_missing_quantity_never_drops_total_below_zero(self):
        self.db.get(InventoryItem, self.chair.id).quantity_total = 0
        self.db.commit()
        commit_return(
            self.db,
            begin_return(self.db, self.ids),
            "partial_missing",
            missing_by_rental_id={self.first.id: 3},
        )
        self.db.expire_all()
        chair = self.db.get(InventoryItem, self.chair.id)
        self.assertEqual(chair.quantity_total, 0)
        self.assertEqual(chair.quantity_available, 0)

    def test_damaged_requires_description(self):
        session = begin_return(self.db, self.ids)
        with self.assertRaisesRegex(ValidationError, "Please describe the damage."):
            commit_return(self.db, session, "damaged", damage_description="  ")
        self.assertTrue(session.requires_choice)

        commit_return(
            self.db,
            session,
            "damaged",
            damage_description="Scratched legs",
            severity_by_rental_id={self.second.id: "major"},
        )
        reports = self._reports()
        self.assertEqual([r.damage_notes for r in reports], ["[minor] Scratched legs", "[major] Scratched legs"])
        self.assertTrue(all(r.return_condition == "damaged" for r in reports))
        self.db.expire_all()
        self.assertEqual(self.db.get(InventoryItem, self.chair.id).quantity_total, 10)

    def test_committed_session_cannot_be_reused(self):
        session = commit_return(self.db, begin_return(self.db, self.ids), "all_good")
        with self.assertRaises(ValidationError):
            commit_return(self.db, session, "all_good")

    def test_returned_rentals_cannot_be_returned_again(self):
        commit_return(
            self.db,
            begin_return(self.db, self.ids),
            "partial_missing",
            missing_by_rental_id={self.first.id: 1},
        )
        with self.assertRaisesRegex(ValidationError, "no longer active"):
            begin_return(self.db, self.ids)
        with self.assertRaises(ValidationError):
            begin_return(self.db, [self.first.id])
        self.db.expire_all()
        self.assertEqual(self.db.get(InventoryItem, self.chair.id).quantity_total, 9)
        self.assertEqual(len(self._reports()), 3)

    def test_stale_session_cannot_commit_after_rows_were_returned(self):
        stale = begin_return(self.db, self.ids)
        commit_return(self.db, begin_return(self.db, self.ids), "partial_missing", missing_by_rental_id={self.first.id: 1})
        with self.assertRaisesRegex(ValidationError, "already returned"):
            commit_return(self.db, stale, "partial_missing", missing_by_rental_id={self.first.id: 1})
        self.assertTrue(stale.requires_choice)
        self.db.expire_all()
        self.assertEqual(self.db.get(InventoryItem, self.chair.id).quantity_total, 9)
        self.assertEqual(len(self._reports()), 3)

    def test_unknown_outcome(self):
        with self.assertRaises(ValidationError):
            commit_return(self.db, begin_return(self.db, self.ids), "lost")

    def test_decoration_only_closure_is_sold_immediately(self):
        arch = add_decoration(self.db)
        sold = add_rental(self.db, arch, 2, status="active", renter_name="Bea Lim")
        session = begin_return(self.db, [sold.id])
        self.assertFalse(session.requires_choice)
        self.assertEqual(session.outcome, ReturnState.ALL_GOOD)
        report = self.db.query(Report).filter(Report.rental_id == sold.id).one()
        self.assertEqual(report.report_type, "sold")
        self.assertEqual(report.notes, "Decoration sold to Bea Lim")
        self.db.expire_all()
        self.assertEqual(self.db.get(Rental, sold.id).status, "returned")

        with self.assertRaises(ValidationError):
            begin_return(self.db, [sold.id])
        self.assertEqual(self.db.query(Report).filter(Report.rental_id == sold.id).count(), 1)


if __name__ == "__main__":
    unittest.main()
