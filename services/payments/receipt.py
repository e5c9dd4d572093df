"""
PDF receipts for payments.

The layout is a single A4 page flow (continuing onto new pages for long item
lists): a header block with the payment details, the total, and an items
table. Rendering happens in memory and returns the PDF bytes.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from io import BytesIO
from typing import List, Optional
import re

from reportlab.lib.pagesizes import A4
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

MARGIN = 48
TITLE = "Inventory Manager - Receipt"
EMPTY_ITEMS = "(No items recorded)"
FOOTER = "Thank you for your purchase."

# (header, x offset from the left margin, column width)
COLUMNS = (
    ("Product", 0, 270),
    ("Qty", 280, 50),
    ("Unit (NPR)", 340, 80),
    ("Line (NPR)", 430, 90),
)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_CENTS = Decimal("0.01")


@dataclass(frozen=True)
class ReceiptLine:
    name: str
    quantity: int
    unit_price: Optional[Decimal] = None

    @property
    def line_total(self) -> Optional[Decimal]:
        if self.unit_price is None:
            return None
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class Receipt:
    filename: str
    content: bytes


def sanitize_filename_part(value: Optional[str]) -> str:
    cleaned = _UNSAFE_FILENAME_CHARS.sub("", re.sub(r"\s+", "", str(value or "")))
    return cleaned or "Unknown"


def receipt_filename(user_name: Optional[str], lines: List[ReceiptLine], order_name: Optional[str]) -> str:
    if len(lines) == 1:
        product = lines[0].name
    elif len(lines) > 1:
        product = "MultipleProducts"
    else:
        product = order_name
    return (
        f"{sanitize_filename_part(user_name)}_InventoryManager_"
        f"{sanitize_filename_part(product)}_Receipt.pdf"
    )


def format_money(value: Optional[Decimal]) -> str:
    if value is None:
        return "-"
    return str(Decimal(value).quantize(_CENTS, rounding=ROUND_HALF_UP))


def format_timestamp(value: Optional[datetime]) -> str:
    if not value:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S UTC")


def _fit(text: str, font: str, size: int, width: float) -> str:
    if stringWidth(text, font, size) <= width:
        return text
    while text and stringWidth(text + "...", font, size) > width:
        text = text[:-1]
    return text + "..."


class _Page:
    """Tracks the write position and starts a new page when the current one is full."""

    def __init__(self, pdf: canvas.Canvas):
        self.pdf = pdf
        self.width, self.height = A4
        self.y = self.height - MARGIN

    def line(self, text: str, font: str = "Helvetica", size: int = 11, gap: int = 6, x: float = 0):
        self.ensure(size + gap)
        self.pdf.setFont(font, size)
        self.pdf.drawString(MARGIN + x, self.y - size, text)
        self.y -= size + gap

    def row(self, cells: List[str], font: str = "Helvetica", size: int = 10, gap: int = 6):
        self.ensure(size + gap)
        self.pdf.setFont(font, size)
        for text, (_, x, width) in zip(cells, COLUMNS):
            self.pdf.drawString(MARGIN + x, self.y - size, _fit(text, font, size, width))
        self.y -= size + gap

    def rule(self, gap: int = 8):
        self.ensure(gap)
        self.pdf.line(MARGIN, self.y, self.width - MARGIN, self.y)
        self.y -= gap

    def space(self, amount: int):
        self.y -= amount

    def ensure(self, needed: float):
        if self.y - needed < MARGIN:
            self.pdf.showPage()
            self.y = self.height - MARGIN


def render_receipt_pdf(payment: dict, lines: List[ReceiptLine]) -> bytes:
    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=A4)
    pdf.setTitle(TITLE)
    page = _Page(pdf)

    page.line(TITLE, font="Helvetica-Bold", size=18, gap=14)

    details = (
        ("Order ID", payment.get("order_id")),
        ("Order Name", payment.get("order_name")),
        ("Provider", payment.get("provider")),
        ("Status", payment.get("status")),
        ("Payment Ref (pidx)", payment.get("pidx")),
        ("Created", format_timestamp(payment.get("created_at"))),
        ("Processed", format_timestamp(payment.get("processed_at"))),
    )
    for label, value in details:
        page.line(f"{label}: {value if value not in (None, '') else '-'}")

    page.space(6)
    amount = Decimal(int(payment.get("amount") or 0)) / 100
    page.line(f"Total Amount: NPR {format_money(amount)}", font="Helvetica-Bold", size=13, gap=12)

    page.line("Items", font="Helvetica-Bold", size=13, gap=8)
    page.row([header for header, _, _ in COLUMNS], font="Helvetica-Bold")
    page.rule()

    if not lines:
        page.line(EMPTY_ITEMS, font="Helvetica-Oblique", size=10)
    for item in lines:
        page.row([
            item.name or "Unknown",
            str(item.quantity),
            format_money(item.unit_price),
            format_money(item.line_total),
        ])

    page.rule()
    page.space(10)
    page.line(FOOTER, size=10)

    pdf.showPage()
    pdf.save()
    return buffer.getvalue()
