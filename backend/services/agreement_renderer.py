"""Agreement Renderer - signed service agreement as a PDF.

Renders the active template text, the parties and the captured signature
(typed name or drawn image) into an A4 document with reportlab.
"""
import base64
import io
import logging
import re
from datetime import datetime
from html import escape, unescape
from typing import Any, Dict, List, Optional

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import mm
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle, Image as RLImage
from reportlab.lib.enums import TA_CENTER

from models import SignatureType

logger = logging.getLogger(__name__)

_BLOCK_TAGS = re.compile(r"</?(p|div|br|li|h[1-6]|ul|ol|tr)[^>]*>", re.IGNORECASE)
_ANY_TAG = re.compile(r"<[^>]+>")


def html_to_paragraphs(content_html: str) -> List[str]:
    """Strip template HTML down to plain paragraphs."""
    text = _BLOCK_TAGS.sub("\n", content_html or "")
    text = unescape(_ANY_TAG.sub("", text))
    return [line.strip() for line in text.splitlines() if line.strip()]


def _decode_drawn_signature(data: str) -> Optional[bytes]:
    # data:image/png;base64,....
    if not data:
        return None
    if "," in data and data.startswith("data:"):
        data = data.split(",", 1)[1]
    try:
        return base64.b64decode(data, validate=True)
    except (ValueError, TypeError):
        return None


class AgreementRenderer:
    def _styles(self) -> Dict[str, ParagraphStyle]:
        base = getSampleStyleSheet()
        return {
            "title": ParagraphStyle("AgreementTitle", parent=base["Title"], fontSize=18, spaceAfter=12),
            "heading": ParagraphStyle("AgreementHeading", parent=base["Heading2"], fontSize=12,
                                      spaceBefore=12, spaceAfter=6),
            "body": ParagraphStyle("AgreementBody", parent=base["Normal"], fontSize=10, leading=14, spaceAfter=6),
            "signature": ParagraphStyle("AgreementSignature", parent=base["Normal"], fontName="Times-Italic",
                                        fontSize=20, leading=24),
            "footer": ParagraphStyle("AgreementFooter", parent=base["Normal"], fontSize=8,
                                     textColor=colors.gray, alignment=TA_CENTER),
        }

    def render(
        self,
        template: Dict[str, Any],
        company: Dict[str, Any],
        signer_name: str,
        signature_type: SignatureType,
        signature_data: str,
        signed_at: datetime,
        ip_address: str,
    ) -> bytes:
        styles = self._styles()
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=50,
            leftMargin=50,
            topMargin=50,
            bottomMargin=50,
            title=template.get("title", "Service Agreement"),
        )

        elements = [
            Paragraph(escape(template.get("title", "Service Agreement")), styles["title"]),
            Paragraph(f"Template version {template.get('version', 1)}", styles["footer"]),
            Spacer(1, 12),
        ]

        parties = Table(
            [
                ["Company", company.get("company_name", "")],
                ["Company number", company.get("company_number", "")],
                ["Registered address", company.get("registered_address", "")],
            ],
            colWidths=[45 * mm, 120 * mm],
        )
        parties.setStyle(TableStyle([
            ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
            ("FONTSIZE", (0, 0), (-1, -1), 9),
            ("GRID", (0, 0), (-1, -1), 0.5, colors.lightgrey),
            ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ]))
        elements += [parties, Spacer(1, 12)]

        for paragraph in html_to_paragraphs(template.get("content_html", "")):
            elements.append(Paragraph(escape(paragraph), styles["body"]))

        elements.append(Paragraph("Signature", styles["heading"]))
        if signature_type == SignatureType.DRAWN:
            image_bytes = _decode_drawn_signature(signature_data)
            if image_bytes:
                elements.append(RLImage(io.BytesIO(image_bytes), width=60 * mm, height=20 * mm, kind="proportional"))
            else:
                logger.warning("Drawn signature could not be decoded, rendering signer name instead")
                elements.append(Paragraph(escape(signer_name), styles["signature"]))
        else:
            elements.append(Paragraph(escape(signature_data or signer_name), styles["signature"]))

        elements += [
            Spacer(1, 6),
            Paragraph(f"Signed by: {escape(signer_name)}", styles["body"]),
            Paragraph(f"Signed at: {signed_at.strftime('%d %B %Y %H:%M UTC')}", styles["body"]),
            Paragraph(f"IP address: {escape(ip_address or 'unknown')}", styles["body"]),
        ]

        doc.build(elements)
        return buffer.getvalue()


agreement_renderer = AgreementRenderer()
