import unittest
from datetime import date, datetime, time

from rental_fixtures import add_decoration, add_item, add_rental, add_report, new_session

from models.rental_models import ItemKind, Rental, Report
from services.calendar_service import calendar_events, format_time, item_availability_events
from services.catalog_service import create_item, get_item, load_all, load_archived, set_archived, update_item
from services.dashboard_service import dashboard_stats
from services.errors import ValidationError
from services.history_service import list_history
from services.report_service import analytics, create_report, delete_reports, group_reports, list_reports
from services.rental_service import archive_rows, delete_rows, list_orders


ACTOR = {"id": "u-1", "fullname": "Admin User"}


class CatalogTests(unittest.TestCase):
    def setUp(self):
        self.db = new_session()

    def tearDown(self):
        self.db.close()

    def test_create_item_validates_fields(self):
        with self.assertRaisesRegex(ValidationError, "Item name is required."):
            create_item(self.db, ItemKind.RENTAL, {"name": " ", "category": "Seating"})
        with self.assertRaisesRegex(ValidationError, "Category/type is required."):
            create_item(self.db, ItemKind.RENTAL, {"name": "Chair"})
        with self.assertRaises(ValidationError):
            create_item(
                self.db,
                ItemKind.RENTAL,
                {"name": "Chair", "category": "Seating", "quantity_total": 2, "quantity_damaged": 3},
            )

    def test_item_lifecycle_is_recorded_in_history(self):
        item = create_item(
            self.db,
            ItemKind.DECORATION,
            {"name": "Arch", "category": "Balloons", "quantity_total": 5, "rental_price": 40},
            ACTOR,
        )
        self.assertEqual(item.quantity_available, 5)
        updated = update_item(
            self.db,
            ItemKind.DECORATION,
            item.id,
            {"name": "Arch", "category": "Balloons", "quantity_total": 8, "rental_price": 40},
            ACTOR,
        )
        self.assertEqual(updated.quantity_total, 8)
        set_archived(self.db, ItemKind.DECORATION, item.id, True, ACTOR)

        self.assertEqual(load_all(self.db).items, [])
        self.assertEqual([entry.name for entry in load_archived(self.db, ItemKind.DECORATION)], ["Arch"])
        actions = sorted(entry["action"] for entry in list_history(self.db))
        self.assertEqual(actions, ["added", "deleted", "updated"])
        updated_entry = list_history(self.db, action="updated")[0]
        self.assertEqual(updated_entry["details"]["quantity_total"], {"old": 5, "new": 8})
        self.assertEqual(updated_entry["userName"], "Admin User")

        set_archived(self.db, ItemKind.DECORATION, item.id, False, ACTOR)
        self.assertEqual(len(load_all(self.db).items), 1)

    def test_real_time_available_subtracts_committed_and_damaged(self):
        chair = add_item(self.db, total=10, damaged=1)
        add_rental(self.db, chair, 3)
        add_rental(self.db, chair, 2, archived=None)
        add_rental(self.db, chair, 4, status="returned")
        item = get_item(self.db, ItemKind.RENTAL, chair.id)
        self.assertEqual(item.committed_quantity, 5)
        self.assertEqual(item.real_time_available, 4)

        snapshot = load_all(self.db)
        self.assertEqual(snapshot.errors, [])
        self.assertEqual(snapshot.items[0].real_time_available, 4)

    def test_load_all_lists_items_before_decorations(self):
        add_decoration(self.db, "Arch")
        add_item(self.db, "Table")
        add_item(self.db, "Chair")
        add_item(self.db, "Old Tent", archived=True)
        kinds = [(item.kind.value, item.name) for item in load_all(self.db).items]
        self.assertEqual(kinds, [("rental", "Chair"), ("rental", "Table"), ("decoration", "Arch")])


class ReportTests(unittest.TestCase):
    def setUp(self):
        self.db = new_session()
        self.chair = add_item(self.db, total=10)
        self.rental = add_rental(self.db, self.chair, 3, payment_amount=600, payment_method="Cash", status="active")

    def tearDown(self):
        self.db.close()

    def test_manual_report_requires_fields(self):
        with self.assertRaisesRegex(ValidationError, "Please fill required fields"):
            create_report(self.db, {"item_name": "Chair", "quantity": 0, "type": "missing"})
        with self.assertRaises(ValidationError):
            create_report(self.db, {"item_name": "Chair", "quantity": 1, "type": "missing", "rental_id": 404})
        report = create_report(
            self.db, {"item_name": "Chair", "quantity": 1, "type": "missing", "rental_id": self.rental.id}
        )
        self.assertEqual(report.rental_id, self.rental.id)
        self.assertEqual(len(list_reports(self.db, "missing")), 1)

    def test_group_reports_by_batch(self):
        stamp = datetime(2025, 3, 4, 10, 0, 0)
        reports = [
            Report(id=1, rental_id=1, item_name="Chair", quantity=2, report_type="returned", notes="ok", created_at=stamp),
            Report(id=2, rental_id=2, item_name="Table", quantity=3, report_type="returned", notes="ok", created_at=stamp),
            Report(id=3, rental_id=1, item_name="Chair", quantity=1, report_type="missing", notes="x", created_at=stamp),
            Report(id=4, rental_id=3, item_name="Arch", quantity=1, report_type="sold", notes="s", created_at=stamp),
        ]
        grouped = group_reports(reports)
        self.assertEqual(len(grouped["returned"]), 1)
        self.assertEqual(grouped["returned"][0]["totalQuantity"], 5)
        self.assertEqual(grouped["returned"][0]["reportIDs"], [1, 2])
        self.assertEqual(len(grouped["missing"]), 1)
        self.assertNotIn("sold", grouped)

    def test_delete_reports_unblocks_rental_delete(self):
        report = add_report(self.db, self.rental)
        result = delete_rows(self.db, [self.rental.id])
        self.assertEqual(result["deleted"], 0)
        self.assertEqual(result["blocked"][0]["rentalID"], self.rental.id)

        self.assertEqual(delete_reports(self.db, [report.id]), 1)
        result = delete_rows(self.db, [self.rental.id])
        self.assertEqual(result["deleted"], 1)

    def test_archive_rows_moves_orders_to_archive(self):
        result = archive_rows(self.db, [self.rental.id, 404])
        self.assertEqual(result["archived"], 1)
        self.assertEqual(result["failed"][0]["rentalID"], 404)
        self.assertEqual(list_orders(self.db), [])
        self.assertEqual(len(list_orders(self.db, archived=True)), 1)

    def test_analytics(self):
        add_rental(self.db, self.chair, 1, payment_amount=100, payment_method="GCash", status="returned")
        add_decoration(self.db, total=5)
        stats = analytics(self.db)
        self.assertEqual(stats["totalRevenue"], 700)
        self.assertEqual(stats["activeRentals"], 1)
        self.assertEqual(stats["revenueByMethod"], {"Cash": 600, "GCash": 100})
        self.assertEqual(stats["inventory"], {"totalItems": 15, "available": 15, "rented": 0})


class CalendarAndDashboardTests(unittest.TestCase):
    def setUp(self):
        self.db = new_session()
        self.chair = add_item(self.db, "Chair", total=4)

    def tearDown(self):
        self.db.close()

    def test_format_time(self):
        self.assertEqual(format_time(time(7, 30)), "7:30AM")
        self.assertEqual(format_time(time(15, 30)), "3:30PM")
        self.assertEqual(format_time(time(0, 5)), "12:05AM")
        self.assertEqual(format_time(None), "")

    def test_calendar_events_use_times_when_present(self):
        add_rental(self.db, self.chair, 1, rent_time=time(7, 30), return_time=time(15, 30))
        add_rental(self.db, self.chair, 1, status="active", renter_name="Bea Lim")
        events = calendar_events(self.db)
        self.assertEqual(events[0]["title"], "7:30AM-3:30PM Ana Cruz")
        self.assertFalse(events[0]["allDay"])
        self.assertEqual(events[0]["backgroundColor"], "#9C27B0")
        self.assertEqual(events[1]["title"], "Bea Lim")
        self.assertTrue(events[1]["allDay"])

    def test_item_availability_colours(self):
        add_rental(self.db, self.chair, 2, date(2025, 3, 2), date(2025, 3, 2))
        add_rental(self.db, self.chair, 4, date(2025, 3, 3), date(2025, 3, 3))
        events = item_availability_events(self.db, ItemKind.RENTAL, self.chair.id, days=3, today=date(2025, 3, 1))
        labels = [event["extendedProps"]["availabilityData"]["status"] for event in events]
        self.assertEqual(labels, ["Available", "Partially Booked", "Fully Booked"])
        self.assertIsNone(item_availability_events(self.db, ItemKind.RENTAL, 999))

    def test_dashboard_alerts(self):
        today = date(2025, 3, 10)
        add_rental(self.db, self.chair, 1, date(2025, 3, 8), date(2025, 3, 10), status="active", payment_amount=250)
        add_rental(self.db, self.chair, 1, date(2025, 3, 9), date(2025, 3, 12), status="active", renter_name="Bea Lim")
        add_rental(self.db, self.chair, 1, date(2025, 3, 1), date(2025, 3, 2), status="overdue", payment_status="Paid")
        stats = dashboard_stats(self.db, today)
        self.assertEqual(stats["totalRentals"], 3)
        self.assertEqual(stats["activeRentals"], 2)
        self.assertEqual(stats["pendingReturns"], 1)
        self.assertEqual(stats["alerts"]["overdue"], 1)
        self.assertEqual(stats["alerts"]["dueSoon"], 2)
        self.assertEqual(stats["alerts"]["pendingPayments"], 250)
        self.assertEqual(stats["alerts"]["lowStock"], 1)
        self.assertEqual(len(stats["weekly"]), 7)
        self.assertEqual(stats["monthly"][-1], {"month": "Mar", "year": 2025, "count": 3})


if __name__ == "__main__":
    unittest.main()
