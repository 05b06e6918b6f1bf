from datetime import datetime

import models
import receipts


def _bill(**overrides):
    bill = models.Bill(
        id=7,
        bill_number="AC-20240309-0003",
        order_id=41,
        items_total=400.0,
        discount_amount=60.0,
        final_total=340.0,
        payment_method="upi",
        table_name="T5",
        guest_name="Asha",
        created_at=datetime(2024, 3, 9, 19, 45),
    )
    bill.items = [
        models.BillItem(item_name="Pasta Arrabbiata Della Casa", quantity=2, price=150.0, subtotal=300.0),
        models.BillItem(item_name="Tomato Soup", quantity=1, price=100.0, subtotal=100.0),
    ]
    for key, value in overrides.items():
        setattr(bill, key, value)
    return bill


def test_receipt_fits_a_58mm_roll():
    lines = receipts.receipt_lines(_bill())
    assert all(len(line) <= receipts.WIDTH for line in lines)


def test_receipt_layout():
    text = receipts.render_text(_bill())

    assert "AI CAVALLI RESTAURANT" in text
    assert "Bill No: AC-20240309-0003" in text
    assert "Date: 09 Mar 2024 07:45 PM" in text
    assert "Table: T5" in text
    assert "Pasta Arrabbiata D  2  Rs.300.00" in text
    assert "Discount (15%):" in text
    assert "Payment: UPI" in text
    assert "Thank you! Visit again!" in text


def test_final_total_line_is_right_aligned():
    final = next(line for line in receipts.receipt_lines(_bill()) if line.startswith("FINAL TOTAL:"))
    assert final.endswith("Rs.340.00")
    assert len(final) == receipts.WIDTH


def test_receipt_without_discount_or_table():
    text = receipts.render_text(_bill(discount_amount=0, final_total=400.0, table_name=None))

    assert "Discount" not in text
    assert "Table: N/A" in text


def test_html_escapes_item_names():
    bill = _bill()
    bill.items[0].item_name = "Fish & <Chips>"

    html = receipts.render_html(bill)

    assert "Fish &amp; &lt;Chips&gt;" in html
    assert "AC-20240309-0003" in html


def test_print_payload_uses_stored_totals():
    payload = receipts.print_payload(_bill())

    assert payload["metadata"] == {"bill_id": 7, "order_id": 41, "total": 340.0, "item_count": 2}
    assert payload["text"].startswith("=" * receipts.WIDTH)
    assert payload["lines"][0] == "=" * receipts.WIDTH
