"""
Receipt rendering for 58mm thermal printers (32 columns) and the browser
print preview. Totals are taken from the stored bill as-is.
"""
from html import escape
from typing import Dict, List

import models
from config import RESTAURANT_NAME

WIDTH = 32
RULE = "=" * WIDTH
THIN_RULE = "-" * WIDTH


def _amount(value: float) -> str:
    return f"Rs.{value:.2f}"


def _total_line(label: str, value: float) -> str:
    amount = _amount(value)
    return label + amount.rjust(WIDTH - len(label))


def discount_percent(bill: models.Bill) -> int:
    if not bill.items_total or not bill.discount_amount:
        return 0
    return int(round(bill.discount_amount / bill.items_total * 100))


def receipt_lines(bill: models.Bill) -> List[str]:
    created = bill.created_at
    lines = [
        RULE,
        f"{RESTAURANT_NAME} RESTAURANT".center(WIDTH).rstrip(),
        RULE,
        f"Bill No: {bill.bill_number}",
        f"Date: {created.strftime('%d %b %Y %I:%M %p')}",
        f"Table: {bill.table_name or 'N/A'}",
    ]
    if bill.guest_name:
        lines.append(f"Guest: {bill.guest_name}")
    lines += [
        THIN_RULE,
        "ITEM" + "QTY".rjust(17) + "AMOUNT".rjust(11),
        THIN_RULE,
    ]

    for item in bill.items:
        name = item.item_name[:18].ljust(18)
        qty = str(item.quantity).rjust(3)
        amount = _amount(item.subtotal).rjust(WIDTH - 21)
        lines.append(f"{name}{qty}{amount}")

    lines.append(THIN_RULE)
    lines.append(_total_line("Items Total:", bill.items_total))
    if bill.discount_amount and bill.discount_amount > 0:
        lines.append(_total_line(f"Discount ({discount_percent(bill)}%):", bill.discount_amount))
    lines.append(THIN_RULE)
    lines.append(_total_line("FINAL TOTAL:", bill.final_total))
    lines.append(RULE)

    if bill.payment_method:
        lines.append(f"Payment: {bill.payment_method.upper()}")
    lines.append("Thank you! Visit again!")
    lines.append(RULE)
    return lines


def render_text(bill: models.Bill) -> str:
    return "\n".join(receipt_lines(bill)) + "\n\n"


def render_html(bill: models.Bill) -> str:
    rows = "".join(
        "<tr><td>{}</td><td class=\"num\">{}</td><td class=\"num\">{}</td></tr>".format(
            escape(item.item_name), item.quantity, _amount(item.subtotal)
        )
        for item in bill.items
    )
    discount = ""
    if bill.discount_amount and bill.discount_amount > 0:
        discount = "<div class=\"info\"><span>Discount ({}%)</span><span>{}</span></div>".format(
            discount_percent(bill), _amount(bill.discount_amount)
        )

    return f"""<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>Bill {escape(bill.bill_number)} - {escape(RESTAURANT_NAME)}</title>
<style>
body {{ font-family: monospace; width: 58mm; margin: 0 auto; font-size: 12px; }}
h1 {{ text-align: center; font-size: 14px; }}
.info {{ display: flex; justify-content: space-between; }}
table {{ width: 100%; border-collapse: collapse; }}
.num {{ text-align: right; }}
.total {{ font-weight: bold; border-top: 1px dashed #000; }}
</style>
</head>
<body>
<h1>{escape(RESTAURANT_NAME)}</h1>
<div class="info"><b>Bill No:</b><b>{escape(bill.bill_number)}</b></div>
<div class="info"><span>Date:</span><span>{bill.created_at.strftime('%d %b %Y %I:%M %p')}</span></div>
<div class="info"><span>Table:</span><span>{escape(bill.table_name or 'N/A')}</span></div>
<table>
<tr><th>Item</th><th class="num">Qty</th><th class="num">Amount</th></tr>
{rows}
</table>
<div class="info"><span>Items Total</span><span>{_amount(bill.items_total)}</span></div>
{discount}
<div class="info total"><span>FINAL TOTAL</span><span>{_amount(bill.final_total)}</span></div>
<p>Payment: {escape((bill.payment_method or '').upper())}</p>
<p style="text-align:center">Thank you! Visit again!</p>
</body>
</html>
"""


def print_payload(bill: models.Bill) -> Dict:
    return {
        "bill_number": bill.bill_number,
        "text": render_text(bill),
        "lines": receipt_lines(bill),
        "html": render_html(bill),
        "metadata": {
            "bill_id": bill.id,
            "order_id": bill.order_id,
            "total": bill.final_total,
            "item_count": len(bill.items),
        },
    }
