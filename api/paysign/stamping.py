from dataclasses import dataclass
from io import BytesIO
import logging
from typing import Dict, List, Optional

from pypdf import PdfReader, PdfWriter
from reportlab.lib.colors import Color
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from .models import Signature, is_signature_field
from .utils import b64_to_bytes

logger = logging.getLogger(__name__)

PROOF_FONT_SIZE = 5.0
PROOF_LINE_HEIGHT = PROOF_FONT_SIZE + 1.5
PROOF_PADDING = 4.0

BLUE = Color(0.2, 0.4, 0.8)
LIGHT_BLUE = Color(0.95, 0.97, 1)
GREEN = Color(0.133, 0.545, 0.133)
LIGHT_GREEN = Color(0.95, 1, 0.95)
DARK_GREEN = Color(0.1, 0.3, 0.1)
AMBER = Color(0.6, 0.4, 0.1)
INK = Color(0.1, 0.1, 0.4)
TEXT = Color(0.2, 0.2, 0.2)
MUTED = Color(0.35, 0.35, 0.35)

NO_PROOF_NOTICE = "[Verified identity - no cryptographic signature]"


@dataclass
class StampItem:
    """A filled field and (optionally) the signature behind it."""
    field_type: str
    page: int
    x: float
    y: float
    w: float
    h: float
    value: Optional[str]
    signature: Optional[Signature] = None


@dataclass
class Box:
    x: float
    y: float  # bottom edge, PDF origin is bottom-left
    w: float
    h: float


def field_box(item: StampItem, page_width: float, page_height: float) -> Box:
    w = item.w / 100.0 * page_width
    h = item.h / 100.0 * page_height
    x = item.x / 100.0 * page_width
    y = page_height - item.y / 100.0 * page_height - h
    return Box(x, y, w, h)


def wrap_chars(text: str, font: str, size: float, max_width: float) -> List[str]:
    """Greedy wrap that breaks anywhere; hex digests and signatures have no spaces."""
    lines, current = [], ""
    for ch in text:
        if current and stringWidth(current + ch, font, size) > max_width:
            lines.append(current)
            current = ch
        else:
            current += ch
    if current:
        lines.append(current)
    return lines


def proof_lines(sig: Signature, max_width: float) -> List[str]:
    lines = []
    if sig.wallet_address:
        lines += wrap_chars(f"Wallet: {sig.wallet_address}", "Helvetica", PROOF_FONT_SIZE, max_width)
    if sig.document_hash:
        lines += wrap_chars(f"Hash: {sig.document_hash}", "Helvetica", PROOF_FONT_SIZE, max_width)
    lines += wrap_chars(f"Sig: {sig.wallet_signature}", "Helvetica", PROOF_FONT_SIZE, max_width)
    return lines


def _draw_block(c: canvas.Canvas, box: Box, header: List[str], header_color, body: List[tuple],
                border, fill) -> float:
    """Draw a bordered block anchored at the field's top edge; returns its height."""
    content_lines = len(header) + len(body)
    required = content_lines * PROOF_LINE_HEIGHT + PROOF_PADDING * 2 + 4
    height = max(box.h, required)
    # grows downward from the field's top edge
    bottom = box.y + box.h - height
    c.setStrokeColor(border)
    c.setFillColor(fill)
    c.rect(box.x, bottom, box.w, height, stroke=1, fill=1)

    y = bottom + height - PROOF_LINE_HEIGHT - PROOF_PADDING
    for i, line in enumerate(header):
        c.setFillColor(header_color)
        c.setFont("Helvetica-Bold" if i == 0 else "Helvetica", PROOF_FONT_SIZE + 1 if i == 0 else PROOF_FONT_SIZE)
        c.drawString(box.x + PROOF_PADDING, y, line)
        y -= PROOF_LINE_HEIGHT
    y -= 2
    c.setFont("Helvetica", PROOF_FONT_SIZE)
    for line, color in body:
        c.setFillColor(color)
        c.drawString(box.x + PROOF_PADDING, y, line)
        y -= PROOF_LINE_HEIGHT
    return height


def draw_wallet_proof(c: canvas.Canvas, box: Box, sig: Signature) -> float:
    inner = box.w - PROOF_PADDING * 2
    body = [(line, MUTED) for line in proof_lines(sig, inner)]
    return _draw_block(c, box, ["CRYPTOGRAPHIC SIGNATURE"], BLUE, body, BLUE, LIGHT_BLUE)


def draw_identity(c: canvas.Canvas, box: Box, sig: Signature) -> float:
    inner = box.w - PROOF_PADDING * 2
    header = wrap_chars(f"Signer: {sig.verified_name}", "Helvetica-Bold", PROOF_FONT_SIZE + 1, inner)
    if sig.wallet_signature and sig.wallet_address:
        body = [(line, MUTED) for line in proof_lines(sig, inner)]
    else:
        body = []
        if sig.credential_ref:
            body += [(line, MUTED) for line in
                     wrap_chars(f"Credential: {sig.credential_ref}", "Helvetica", PROOF_FONT_SIZE, inner)]
        body.append((NO_PROOF_NOTICE, AMBER))
    return _draw_block(c, box, header, DARK_GREEN, body, GREEN, LIGHT_GREEN)


def draw_image(c: canvas.Canvas, box: Box, image_b64: str):
    try:
        img = ImageReader(BytesIO(b64_to_bytes(image_b64)))
        iw, ih = img.getSize()
    except Exception:
        logger.warning("could not decode signature image, drawing placeholder")
        c.setFillColor(TEXT)
        c.setFont("Helvetica", 10)
        c.drawString(box.x + 5, box.y + box.h / 2 - 5, "[Signature]")
        return
    # fit inside the box, keep aspect ratio, never upscale, center
    scale = min(box.w / iw, box.h / ih, 1.0)
    w, h = iw * scale, ih * scale
    c.drawImage(img, box.x + (box.w - w) / 2, box.y + (box.h - h) / 2, width=w, height=h, mask="auto")


def draw_text(c: canvas.Canvas, box: Box, text: str, signature_style: bool):
    size = min(16.0, box.h * 0.7) if signature_style else min(12.0, box.h * 0.7)
    c.setFillColor(INK if signature_style else TEXT)
    c.setFont("Helvetica", size)
    c.drawString(box.x + 5, box.y + box.h / 2 - size / 2, text)


def draw_checkbox(c: canvas.Canvas, box: Box, checked: bool):
    side = min(10.0, box.w, box.h)
    x, y = box.x, box.y + (box.h - side) / 2
    c.setStrokeColor(TEXT)
    c.rect(x, y, side, side, stroke=1, fill=0)
    if checked:
        c.line(x, y, x + side, y + side); c.line(x, y + side, x + side, y)


def draw_item(c: canvas.Canvas, item: StampItem, box: Box):
    sig = item.signature
    kind = sig.kind if sig else None
    if kind == "drawn" and sig.signature_image:
        draw_image(c, box, sig.signature_image)
    elif kind == "identity":
        draw_identity(c, box, sig)
    elif kind == "wallet":
        draw_wallet_proof(c, box, sig)
    elif item.field_type == "checkbox":
        draw_checkbox(c, box, (item.value or "").lower() in ("true", "1", "yes", "on", "checked"))
    else:
        text = (sig.typed_signature if sig and sig.typed_signature is not None else item.value) or ""
        draw_text(c, box, text, is_signature_field(item.field_type))


def _overlay_page(width, height, items: List[StampItem]) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=(width, height))
    for item in items:
        draw_item(c, item, field_box(item, width, height))
    c.showPage()
    c.save()
    return buf.getvalue()


def stamp_fields(original_pdf_bytes: bytes, items: List[StampItem]) -> bytes:
    """Draw every filled field onto its page and return the new PDF."""
    reader = PdfReader(BytesIO(original_pdf_bytes))
    writer = PdfWriter()
    for p in reader.pages:
        writer.add_page(p)
    num_pages = len(reader.pages)

    draw_map: Dict[int, List[StampItem]] = {}  # page_index -> items
    for item in items:
        if not item.value and item.signature is None:
            continue
        if item.page < 1 or item.page > num_pages:
            logger.warning("field on missing page skipped", extra={"page": item.page, "pages": num_pages})
            continue
        draw_map.setdefault(item.page - 1, []).append(item)

    for pidx, page_items in draw_map.items():
        page = writer.pages[pidx]
        width = float(page.mediabox.width)
        height = float(page.mediabox.height)
        overlay_reader = PdfReader(BytesIO(_overlay_page(width, height, page_items)))
        page.merge_page(overlay_reader.pages[0])

    out = BytesIO()
    writer.write(out)
    return out.getvalue()
