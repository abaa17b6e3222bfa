"""
Invoice PDF rendering with reportlab.

One page: title, invoice id and issue date, provider and client names, a
single line-item table, the total and the payment terms.
"""
from dataclasses import dataclass
from datetime import datetime
from io import BytesIO
from typing import Any, Dict, List

from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

PAYMENT_TERMS = "Payment due within 14 days. Thank you for your business."
TABLE_HEADER = ["Item", "Description", "Currency", "Amount"]
COLUMN_X = [72, 200, 400, 470]
DESCRIPTION_LIMIT = 80


@dataclass
class InvoiceDocument:
    invoice_id: str
    issued: datetime
    provider_name: str
    client_name: str
    currency: str
    total: float
    line_item: List[str]


def format_amount(value: Any) -> str:
    amount = float(value or 0)
    return str(int(amount)) if amount.is_integer() else f"{amount:.2f}"


def build_line_item(project: Dict[str, Any], currency: str) -> List[str]:
    description = project.get("description")
    return [
        project.get("title") or "Service Project",
        str(description)[:DESCRIPTION_LIMIT] if description else "-",
        currency,
        format_amount(project.get("budget")),
    ]


def render_invoice_pdf(document: InvoiceDocument) -> bytes:
    output = BytesIO()
    c = canvas.Canvas(output, pagesize=A4)
    c.setTitle(f"Invoice {document.invoice_id}")
    width, height = A4

    c.setFont("Helvetica-Bold", 18)
    c.drawString(72, height - 72, "Invoice")

    c.setFont("Helvetica", 11)
    c.drawString(72, height - 100, f"Invoice ID: {document.invoice_id}")
    c.drawString(72, height - 116, f"Issued: {document.issued.strftime('%Y-%m-%d')}")
    c.drawString(72, height - 140, f"From: {document.provider_name}")
    c.drawString(72, height - 156, f"To: {document.client_name}")

    y_position = height - 190
    c.setFont("Helvetica-Bold", 10)
    for x, label in zip(COLUMN_X, TABLE_HEADER):
        c.drawString(x, y_position, label)
    c.line(72, y_position - 4, width - 72, y_position - 4)

    y_position -= 20
    c.setFont("Helvetica", 10)
    for x, cell in zip(COLUMN_X, document.line_item):
        # Descriptions are already capped; shorten further to fit the column.
        text = cell if x != COLUMN_X[1] else cell[:40]
        c.drawString(x, y_position, text)

    y_position -= 30
    c.setFont("Helvetica-Bold", 12)
    c.drawString(72, y_position, f"Total: {document.currency} {format_amount(document.total)}")

    c.setFont("Helvetica", 9)
    c.drawString(72, y_position - 16, PAYMENT_TERMS)

    c.showPage()
    c.save()
    return output.getvalue()
