import unittest
from datetime import date

import rental_fixtures  # noqa: F401

from models.rental_models import ItemKind
from services.cart_service import Cart, EntryWorkspace, WorkspaceRegistry, serialize_cart
from services.catalog_service import CatalogItem
from services.errors import ValidationError
from services.pricing_service import calculate_days, coerce_date, distribute_amount, line_total


def _item(item_id="1", name="Chair", price=100.0, kind=ItemKind.RENTAL):
    return CatalogItem(
        kind=kind,
        id=item_id,
        name=name,
        category="Seating",
        quantity_total=10,
        quantity_available=10,
        quantity_damaged=0,
        rental_price=price,
    )


class PricingTests(unittest.TestCase):
    def test_days_are_inclusive(self):
        self.assertEqual(calculate_days(date(2025, 1, 1), date(2025, 1, 3)), 3)
        self.assertEqual(calculate_days(date(2025, 1, 1), date(2025, 1, 1)), 1)

    def test_days_never_below_one(self):
        self.assertEqual(calculate_days(date(2025, 1, 5), date(2025, 1, 1)), 1)
        self.assertEqual(calculate_days(None, date(2025, 1, 1)), 1)
        self.assertEqual(calculate_days("2025-01-01", ""), 1)

    def test_coerce_date_accepts_iso_strings(self):
        self.assertEqual(coerce_date("2025-02-10T09:00:00"), date(2025, 2, 10))
        self.assertIsNone(coerce_date("  "))

    def test_rental_lines_scale_with_days_but_sales_do_not(self):
        self.assertEqual(line_total(100, 5, 3, False), 1500)
        self.assertEqual(line_total(100, 3, 10, True), 300)

    def test_distribute_amount_puts_remainder_on_last_line(self):
        self.assertEqual(distribute_amount(100, [1, 1, 1]), [33.33, 33.33, 33.34])
        self.assertEqual(distribute_amount(1000, [300, 100]), [750.0, 250.0])

    def test_distribute_amount_without_positive_subtotals(self):
        self.assertEqual(distribute_amount(90, [0, 0]), [90.0, 0.0])
        self.assertEqual(distribute_amount(90, []), [])


class CartTests(unittest.TestCase):
    def test_adding_same_item_merges_quantity(self):
        cart = Cart()
        self.assertIsNone(cart.add_line(_item(), 2, 3))
        self.assertIsNone(cart.add_line(_item(), 3, 3))
        self.assertEqual(len(cart), 1)
        self.assertEqual(cart.lines[0].quantity, 5)
        self.assertEqual(cart.lines[0].subtotal, 1500)

    def test_rejects_missing_item_or_quantity(self):
        cart = Cart()
        self.assertEqual(cart.add_line(None, 1, 1), "Please select an item and enter a valid quantity")
        self.assertEqual(cart.add_line(_item(), 0, 1), "Please select an item and enter a valid quantity")
        self.assertEqual(len(cart), 0)

    def test_decoration_line_has_no_days(self):
        cart = Cart()
        cart.add_line(_item("d-1", "Arch", 40.0, ItemKind.DECORATION), 3, 5)
        line = cart.lines[0]
        self.assertIsNone(line.days)
        self.assertEqual(line.subtotal, 120)

    def test_date_change_reprices_rental_lines_only(self):
        cart = Cart()
        cart.add_line(_item(), 2, 1)
        cart.add_line(_item("d-1", "Arch", 40.0, ItemKind.DECORATION), 1, 1)
        self.assertIsNone(cart.recalculate_for_date_change(date(2025, 1, 1), date(2025, 1, 4)))
        self.assertEqual(cart.lines[0].days, 4)
        self.assertEqual(cart.lines[0].subtotal, 800)
        self.assertEqual(cart.lines[1].subtotal, 40)

        cart.recalculate_for_date_change(date(2025, 1, 1), date(2025, 1, 4))
        self.assertEqual(cart.total(), 840)

    def test_date_change_rejects_reversed_range(self):
        cart = Cart()
        cart.add_line(_item(), 2, 2)
        warning = cart.recalculate_for_date_change("2025-01-05", "2025-01-01")
        self.assertEqual(warning, "Return date cannot be before rent date")
        self.assertEqual(cart.lines[0].days, 2)

    def test_date_change_on_empty_cart_is_noop(self):
        cart = Cart()
        self.assertIsNone(cart.recalculate_for_date_change("2025-01-05", "2025-01-01"))

    def test_custom_price_is_split_across_lines(self):
        cart = Cart()
        cart.add_line(_item("1", price=300.0), 1, 1)
        cart.add_line(_item("2", name="Table", price=100.0), 1, 1)
        cart.set_custom_price(True, 1000)
        self.assertEqual(cart.payment_amount(), 1000)
        self.assertEqual(cart.line_amounts(), [750.0, 250.0])

        cart.set_custom_price(False)
        self.assertEqual(cart.line_amounts(), [300.0, 100.0])

    def test_custom_price_must_be_positive(self):
        cart = Cart()
        with self.assertRaises(ValidationError):
            cart.set_custom_price(True, 0)

    def test_remove_line_out_of_range(self):
        cart = Cart()
        cart.add_line(_item(), 1, 1)
        with self.assertRaises(ValidationError):
            cart.remove_line(3)
        removed = cart.remove_line(0)
        self.assertEqual(removed.item_name, "Chair")
        self.assertEqual(serialize_cart(cart)["lines"], [])


class WorkspaceTests(unittest.TestCase):
    def test_rental_days_follow_workspace_dates(self):
        workspace = EntryWorkspace(start_date=date(2025, 1, 1), end_date=date(2025, 1, 2))
        self.assertEqual(workspace.rental_days(), 2)
        self.assertFalse(workspace.is_edit)

    def test_registry_close_resets_workspace(self):
        registry = WorkspaceRegistry()
        workspace = registry.open("token")
        workspace.cart.add_line(_item(), 1, 1)
        self.assertIs(registry.get("token"), workspace)
        registry.close("token")
        self.assertIsNone(registry.get("token"))
        self.assertEqual(len(workspace.cart), 0)


if __name__ == "__main__":
    unittest.main()
