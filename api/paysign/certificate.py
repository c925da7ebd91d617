from dataclasses import dataclass
from datetime import datetime
from io import BytesIO
import logging
from typing import List, Optional

from pypdf import PdfReader, PdfWriter
from reportlab.lib.colors import Color
from reportlab.lib.pagesizes import letter
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from .utils import b64_to_bytes, short_address

logger = logging.getLogger(__name__)

BADGE_NONE = "none"
BADGE_CRYPTOGRAPHIC = "cryptographic"
BADGE_IDENTITY = "identity-verified"
BADGE_LABELS = {
    BADGE_CRYPTOGRAPHIC: "[Crypto Signature]",
    BADGE_IDENTITY: "[Identity Verified]",
}

DARK = Color(0.2, 0.2, 0.2)
MEDIUM = Color(0.4, 0.4, 0.4)
LIGHT = Color(0.8, 0.8, 0.8)
GREEN = Color(0.133, 0.545, 0.133)

MARGIN = 50
COLUMNS = {"name": 50, "signature": 200, "date": 380, "ip": 480}
FOOTER_TOP = 82
FOOTER_LINES = (
    "This document was electronically signed. Each signer's row records how they signed.",
    "Cryptographic signatures were made by signing the document SHA-256 hash with the signer's wallet.",
    "Identity Verified signatures use names attested by credentials held by the signer's wallet.",
)


@dataclass
class ConfirmationRow:
    name: str
    email: Optional[str]
    badge: str
    kind: Optional[str]  # wallet|identity|typed|drawn, None when nothing was captured
    signed_at: Optional[datetime]
    ip_address: Optional[str]
    typed_text: Optional[str] = None
    image_b64: Optional[str] = None
    wallet_address: Optional[str] = None
    document_hash: Optional[str] = None
    credential_ref: Optional[str] = None

    @property
    def height(self) -> float:
        if self.kind == "wallet" or (self.kind == "identity" and self.wallet_address):
            return 60
        if self.kind in ("identity", "drawn"):
            return 50
        return 40


def format_date(value: Optional[datetime]) -> str:
    if not value:
        return "Not signed"
    return value.strftime("%b %d, %Y %H:%M") + " UTC"


class _ConfirmationWriter:
    """Lays confirmation rows out over as many letter pages as they need."""

    def __init__(self, title: str, completed_at: datetime, signer_count: int):
        self.buf = BytesIO()
        self.c = canvas.Canvas(self.buf, pagesize=letter)
        self.width, self.height = letter
        self.title = title
        self.completed_at = completed_at
        self.signer_count = signer_count
        self.page_no = 0
        self.y = 0.0

    def start_page(self):
        c = self.c
        self.page_no += 1
        y = self.height - 50
        c.setFillColor(DARK)
        c.setFont("Helvetica-Bold", 18)
        heading = "SIGNATURE CONFIRMATION" if self.page_no == 1 else "SIGNATURE CONFIRMATION (continued)"
        c.drawString(MARGIN, y, heading)
        y -= 30
        c.setFillColor(MEDIUM)
        c.setFont("Helvetica", 11)
        c.drawString(MARGIN, y, f"Document: {self.title}"[:90])
        y -= 18
        c.drawString(MARGIN, y, f"Completed: {self.completed_at.strftime('%Y-%m-%d %H:%M:%S')} UTC")
        y -= 18
        c.drawString(MARGIN, y, f"Total Signers: {self.signer_count}")
        y -= 40
        c.setStrokeColor(LIGHT)
        c.setLineWidth(1)
        c.line(MARGIN, y, self.width - MARGIN, y)
        y -= 30
        c.setFont("Helvetica-Bold", 9)
        for key, label in (("name", "SIGNER"), ("signature", "SIGNATURE"), ("date", "DATE"), ("ip", "IP ADDRESS")):
            c.drawString(COLUMNS[key], y, label)
        self.y = y - 20
        self.footer()

    def footer(self):
        c = self.c
        c.setFillColor(MEDIUM)
        c.setFont("Helvetica", 8)
        y = FOOTER_TOP - 12
        for line in FOOTER_LINES:
            c.drawString(MARGIN, y, line)
            y -= 12

    def ensure_room(self, needed: float):
        if self.y - needed < FOOTER_TOP + 10:
            self.c.showPage()
            self.start_page()

    def row(self, row: ConfirmationRow):
        self.ensure_room(row.height + 10)
        c, y = self.c, self.y

        c.setFillColor(DARK)
        c.setFont("Helvetica-Bold", 10)
        c.drawString(COLUMNS["name"], y, row.name[:28])
        offset = 14
        if row.badge in BADGE_LABELS:
            c.setFillColor(GREEN)
            c.setFont("Helvetica", 8)
            c.drawString(COLUMNS["name"], y - 12, BADGE_LABELS[row.badge])
            offset = 24
        if row.email:
            c.setFillColor(MEDIUM)
            c.setFont("Helvetica", 8)
            c.drawString(COLUMNS["name"], y - offset, row.email[:36])

        self.signature_cell(row, COLUMNS["signature"], y)

        c.setFillColor(DARK)
        c.setFont("Helvetica", 9)
        c.drawString(COLUMNS["date"], y, format_date(row.signed_at))
        c.drawString(COLUMNS["ip"], y, row.ip_address or "Unknown")

        y -= row.height
        c.setStrokeColor(LIGHT)
        c.setLineWidth(0.5)
        c.line(MARGIN, y + 10, self.width - MARGIN, y + 10)
        self.y = y - 10

    def signature_cell(self, row: ConfirmationRow, x: float, y: float):
        c = self.c
        if row.kind == "wallet":
            c.setFillColor(GREEN)
            c.setFont("Helvetica-Bold", 10)
            c.drawString(x, y, "[Wallet Signed]")
            self._proof_details(row, x, y)
        elif row.kind == "identity":
            c.setFillColor(DARK)
            c.setFont("Helvetica", 10)
            c.drawString(x, y, f"[Verified: {row.typed_text}]"[:34])
            if row.wallet_address:
                self._proof_details(row, x, y)
            elif row.credential_ref:
                c.setFillColor(MEDIUM)
                c.setFont("Helvetica", 7)
                c.drawString(x, y - 12, f"Credential: {short_address(row.credential_ref, 8, 6)}")
        elif row.kind == "drawn" and row.image_b64:
            self._image(row.image_b64, x, y)
        else:
            c.setFillColor(DARK)
            c.setFont("Helvetica", 10)
            c.drawString(x, y, (row.typed_text or "[typed]")[:34])

    def _proof_details(self, row: ConfirmationRow, x: float, y: float):
        c = self.c
        c.setFillColor(MEDIUM)
        if row.wallet_address:
            c.setFont("Helvetica", 7)
            c.drawString(x, y - 12, f"Addr: {short_address(row.wallet_address, 8, 6)}")
        if row.document_hash:
            c.setFont("Helvetica", 6)
            c.drawString(x, y - 22, f"Hash: {row.document_hash[:16]}...")

    def _image(self, image_b64: str, x: float, y: float):
        box_w, box_h = 150.0, 36.0
        try:
            img = ImageReader(BytesIO(b64_to_bytes(image_b64)))
            iw, ih = img.getSize()
        except Exception:
            logger.warning("could not decode signature image for confirmation row")
            self.c.setFillColor(DARK)
            self.c.setFont("Helvetica", 10)
            self.c.drawString(x, y, "[drawn signature]")
            return
        scale = min(box_w / iw, box_h / ih, 1.0)
        # the row's baseline is y; the image hangs below it
        self.c.drawImage(img, x, y + 10 - ih * scale, width=iw * scale, height=ih * scale, mask="auto")

    def finish(self) -> bytes:
        self.c.showPage()
        self.c.save()
        return self.buf.getvalue()


def render_confirmation(title: str, rows: List[ConfirmationRow], completed_at: Optional[datetime] = None) -> bytes:
    writer = _ConfirmationWriter(title, completed_at or datetime.utcnow(), len(rows))
    writer.start_page()
    for row in rows:
        writer.row(row)
    return writer.finish()


def append_confirmation(pdf_bytes: bytes, title: str, rows: List[ConfirmationRow],
                        completed_at: Optional[datetime] = None) -> bytes:
    writer = PdfWriter()
    for p in PdfReader(BytesIO(pdf_bytes)).pages:
        writer.add_page(p)
    confirmation = PdfReader(BytesIO(render_confirmation(title, rows, completed_at)))
    for p in confirmation.pages:
        writer.add_page(p)
    out = BytesIO()
    writer.write(out)
    return out.getvalue()
