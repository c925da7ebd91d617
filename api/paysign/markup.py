"""Field placement markup.

HTML documents declare their fields inline::

    <sig-field type="signature" recipient="1" required="true"></sig-field>

The parser is best-effort: anything it cannot use becomes a warning and the
rest of the document still parses.
"""
import json
import logging
from dataclasses import dataclass, field as dc_field
from io import BytesIO
from typing import Dict, List, Optional

import lxml.html
from lxml import etree
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer
from xml.sax.saxutils import escape

from .models import FIELD_TYPES, SIGNATURE_FIELD_TYPES

logger = logging.getLogger(__name__)

FIELD_TAG = "sig-field"

# 8.5x11in at 96 DPI, the viewport markup widths/heights are expressed in
VIEWPORT_WIDTH_PX = 816.0
VIEWPORT_HEIGHT_PX = 1056.0
DEFAULT_WIDTH_PX = 200.0
DEFAULT_HEIGHT_PX = 60.0
ROW_STEP_PCT = 8.0
MAX_Y_PCT = 90.0

_STRING_META = {
    "placeholder": "placeholder",
    "text-align": "textAlign",
    "format": "format",
    "direction": "direction",
    "default": "defaultValue",
}
_NUMBER_META = {
    "character-limit": ("characterLimit", int),
    "min": ("min", float),
    "max": ("max", float),
}
SELECTION_TYPES = ("checkbox", "radio", "dropdown")


@dataclass
class ParsedField:
    field_type: str
    recipient: int
    page: int
    position_x: float
    position_y: float
    width: float
    height: float
    meta: Optional[dict] = None


@dataclass
class ParseResult:
    fields: List[ParsedField] = dc_field(default_factory=list)
    warnings: List[str] = dc_field(default_factory=list)


def _number(value: str, cast, name: str, warnings: List[str]):
    try:
        return cast(value)
    except (TypeError, ValueError):
        warnings.append(f"ignoring non-numeric {name}={value!r}")
        return None


def _px_to_pct(px: float, extent: float) -> float:
    return round(min(100.0, max(0.0, px / extent * 100.0)), 4)


def _field_meta(attrs: Dict[str, str], field_type: str, warnings: List[str]) -> Optional[dict]:
    meta: dict = {}
    for attr, key in _STRING_META.items():
        if attrs.get(attr):
            meta[key] = attrs[attr]
    if attrs.get("required") == "true":
        meta["required"] = True
    for attr, (key, cast) in _NUMBER_META.items():
        if attrs.get(attr):
            parsed = _number(attrs[attr], cast, attr, warnings)
            if parsed is not None:
                meta[key] = parsed
    if attrs.get("values"):
        try:
            values = json.loads(attrs["values"])
        except ValueError:
            values = None
        if isinstance(values, list):
            meta["values"] = values
        else:
            warnings.append(f"could not parse values attribute: {attrs['values']!r}")
    elif field_type in SELECTION_TYPES:
        warnings.append(f"{field_type} field has no values attribute")
    return meta or None


def _parse_root(html: str):
    if not html or not html.strip():
        return None
    try:
        return lxml.html.document_fromstring(html)
    except (etree.ParserError, ValueError) as exc:
        logger.warning("could not parse markup", extra={"error": str(exc)})
        return None


def parse_field_markup(html: str) -> ParseResult:
    result = ParseResult()
    root = _parse_root(html)
    if root is None:
        return result

    index = 0
    for position, el in enumerate(root.iter(FIELD_TAG), start=1):
        attrs = {k.lower(): v for k, v in el.attrib.items()}
        field_type = (attrs.get("type") or "").strip()
        if field_type not in FIELD_TYPES:
            result.warnings.append(f"sig-field #{position}: unknown or missing type {field_type!r}")
            continue
        recipient = _number(attrs.get("recipient") or "1", int, "recipient", result.warnings)
        if recipient is None or recipient < 1:
            result.warnings.append(f"sig-field #{position}: invalid recipient {attrs.get('recipient')!r}")
            continue

        width_px = _number(attrs["width"], float, "width", result.warnings) if attrs.get("width") else None
        height_px = _number(attrs["height"], float, "height", result.warnings) if attrs.get("height") else None

        result.fields.append(ParsedField(
            field_type=field_type,
            recipient=recipient,
            page=1,
            # real placement needs layout; fields are stacked down the first page
            position_x=0.0,
            position_y=min(index * ROW_STEP_PCT, MAX_Y_PCT),
            width=_px_to_pct(width_px or DEFAULT_WIDTH_PX, VIEWPORT_WIDTH_PX),
            height=_px_to_pct(height_px or DEFAULT_HEIGHT_PX, VIEWPORT_HEIGHT_PX),
            meta=_field_meta(attrs, field_type, result.warnings),
        ))
        index += 1

    for warning in result.warnings:
        logger.warning("field markup warning", extra={"warning": warning})
    return result


def resolve_recipients(parsed: ParseResult, recipient_ids: List[str]) -> List[tuple]:
    """Pair each parsed field with the id of its 1-based recipient ordinal.

    Fields whose ordinal has no recipient are dropped with a warning.
    """
    resolved = []
    for pf in parsed.fields:
        if pf.recipient > len(recipient_ids):
            warning = f"no recipient found for number {pf.recipient}"
            parsed.warnings.append(warning)
            logger.warning("field markup warning", extra={"warning": warning})
            continue
        resolved.append((recipient_ids[pf.recipient - 1], pf))
    return resolved


def validate_field_markup(html: str, recipient_count: Optional[int] = None) -> dict:
    """Strict check of the markup, reporting what parse_field_markup would skip."""
    errors: List[str] = []
    warnings: List[str] = []
    fields = []
    root = _parse_root(html)
    elements = list(root.iter(FIELD_TAG)) if root is not None else []

    for position, el in enumerate(elements, start=1):
        attrs = {k.lower(): v for k, v in el.attrib.items()}
        field_type = (attrs.get("type") or "").strip()
        if not field_type:
            errors.append(f'Field #{position}: missing required "type" attribute')
        elif field_type not in FIELD_TYPES:
            errors.append(f'Field #{position}: invalid type "{field_type}". Valid types: {", ".join(FIELD_TYPES)}')

        recipient = 0
        if not attrs.get("recipient"):
            errors.append(f'Field #{position}: missing required "recipient" attribute')
        else:
            try:
                recipient = int(attrs["recipient"])
            except ValueError:
                recipient = 0
            if recipient < 1:
                errors.append(f"Field #{position}: recipient must be a positive number")
            elif recipient_count and recipient > recipient_count:
                warnings.append(
                    f"Field #{position}: recipient {recipient} exceeds expected recipient count ({recipient_count})"
                )

        if attrs.get("values"):
            try:
                values = json.loads(attrs["values"])
            except ValueError:
                errors.append(f"Field #{position}: invalid JSON in values attribute")
            else:
                if not isinstance(values, list):
                    errors.append(f"Field #{position}: values must be a JSON array")
        elif field_type in SELECTION_TYPES:
            errors.append(f'Field #{position}: {field_type} fields require a "values" attribute')

        fields.append({"type": field_type or "unknown", "recipient": max(recipient, 0), "attributes": attrs})

    if not any(f["type"] in SIGNATURE_FIELD_TYPES for f in fields):
        warnings.append("No signature fields found. Most documents need at least one signature.")

    by_type: Dict[str, int] = {}
    by_recipient: Dict[int, List[str]] = {}
    for f in fields:
        by_type[f["type"]] = by_type.get(f["type"], 0) + 1
        by_recipient.setdefault(f["recipient"], []).append(f["type"])

    return {
        "valid": not errors,
        "errors": errors,
        "warnings": warnings,
        "summary": {"totalFields": len(fields), "fieldsByType": by_type, "fieldsByRecipient": by_recipient},
        "fields": fields,
    }


# ---------- preview rendering ----------

_BLOCK_STYLES = {
    "h1": "Heading1",
    "h2": "Heading2",
    "h3": "Heading3",
    "h4": "Heading4",
    "li": "Bullet",
}


def _field_placeholder(el) -> str:
    label = el.get("placeholder") or el.get("type") or "field"
    return f" [{label}: ____________________] "


def _text_with_fields(el) -> str:
    parts = [el.text or ""]
    for child in el:
        if child.tag == FIELD_TAG:
            parts.append(_field_placeholder(child))
        elif isinstance(child.tag, str) and child.tag not in ("script", "style"):
            parts.append(_text_with_fields(child))
        parts.append(child.tail or "")
    return "".join(parts)


def render_markup_pdf(html: str) -> bytes:
    """Lay the markup's text out on letter pages with reportlab."""
    styles = getSampleStyleSheet()
    story = []
    root = _parse_root(html)
    if root is not None:
        body = root.find("body")
        blocks = body if body is not None else root
        for el in blocks.iter("h1", "h2", "h3", "h4", "p", "li", FIELD_TAG):
            if el.tag == FIELD_TAG:
                parent = el.getparent()
                if parent is not None and parent.tag in ("h1", "h2", "h3", "h4", "p", "li"):
                    continue
                text = _field_placeholder(el)
            else:
                text = " ".join(_text_with_fields(el).split())
            if not text.strip():
                continue
            style = styles[_BLOCK_STYLES.get(el.tag, "BodyText")]
            story.append(Paragraph(escape(text), style))
            story.append(Spacer(1, 6))
    if not story:
        text = " ".join(root.text_content().split()) if root is not None else ""
        story.append(Paragraph(escape(text) or "&nbsp;", styles["BodyText"]))

    buf = BytesIO()
    SimpleDocTemplate(buf, pagesize=letter).build(story)
    return buf.getvalue()
