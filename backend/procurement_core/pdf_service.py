"""
Purchase Order PDF Generation Service

Renders the approved-order summary attached to the supplier notification:
- Header: order number, supplier, order date
- Items table: name, quantity, unit price, line total
- Totals block: subtotal, tax, shipping, total

Filename format: "PO-000001 - MMM DD, YYYY.pdf"
"""

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import inch
from reportlab.lib import colors
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle
from reportlab.lib.enums import TA_CENTER
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Any
from io import BytesIO
import logging

logger = logging.getLogger(__name__)


def _money(currency: str, value: Any) -> str:
    return f"{currency} {Decimal(str(value or 0)):.2f}"


def _parse_date(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            logger.warning(f"Unparseable summary date: {value!r}")
    return datetime.now()


class PurchaseOrderPDFGenerator:
    """Generate the purchase order summary PDF"""

    def __init__(self):
        self.margin = 0.75 * inch
        self.styles = getSampleStyleSheet()
        self._setup_custom_styles()

    def _setup_custom_styles(self):
        """Setup custom paragraph styles"""
        self.styles.add(ParagraphStyle(
            name='POTitle',
            parent=self.styles['Heading1'],
            fontSize=22,
            alignment=TA_CENTER,
            spaceAfter=16,
            textColor=colors.HexColor('#1a365d')
        ))

        self.styles.add(ParagraphStyle(
            name='POSubtitle',
            parent=self.styles['Normal'],
            fontSize=13,
            alignment=TA_CENTER,
            spaceAfter=24,
            textColor=colors.HexColor('#4a5568')
        ))

        self.styles.add(ParagraphStyle(
            name='POSection',
            parent=self.styles['Heading2'],
            fontSize=13,
            spaceBefore=16,
            spaceAfter=8,
            textColor=colors.HexColor('#2d3748'),
        ))

    def build_filename(self, summary: Dict[str, Any]) -> str:
        order_date = _parse_date(summary.get('date'))
        return f"{summary.get('order_number', 'PO')} - {order_date.strftime('%b %d, %Y')}.pdf"

    def generate_pdf(self, summary: Dict[str, Any]) -> bytes:
        """
        Generate the purchase order PDF

        Args:
            summary: Attachment summary (order_number, supplier_name, date,
                items, subtotal, tax, shipping, total, currency)

        Returns:
            PDF bytes
        """
        buffer = BytesIO()

        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=self.margin,
            leftMargin=self.margin,
            topMargin=self.margin,
            bottomMargin=self.margin,
            title=f"Purchase Order {summary.get('order_number', '')}"
        )

        story = []
        story.extend(self._build_header(summary))
        story.extend(self._build_items(summary))
        story.extend(self._build_totals(summary))

        doc.build(story)

        pdf_bytes = buffer.getvalue()
        buffer.close()

        logger.info(f"Generated PDF for {summary.get('order_number')} ({len(pdf_bytes)} bytes)")
        return pdf_bytes

    def _build_header(self, summary: Dict[str, Any]) -> List:
        elements = []
        order_date = _parse_date(summary.get('date'))

        elements.append(Paragraph("Purchase Order", self.styles['POTitle']))
        elements.append(Paragraph(
            f"{summary.get('order_number', 'N/A')} - {order_date.strftime('%B %d, %Y')}",
            self.styles['POSubtitle']
        ))

        header_table = Table(
            [
                ['Supplier:', summary.get('supplier_name') or 'N/A'],
                ['Currency:', summary.get('currency') or 'N/A'],
            ],
            colWidths=[1.6 * inch, 4.4 * inch]
        )
        header_table.setStyle(TableStyle([
            ('FONTNAME', (0, 0), (0, -1), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 0), (-1, -1), 11),
            ('TEXTCOLOR', (0, 0), (0, -1), colors.HexColor('#4a5568')),
            ('ALIGN', (0, 0), (0, -1), 'RIGHT'),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 6),
        ]))
        elements.append(header_table)
        elements.append(Spacer(1, 12))
        return elements

    def _build_items(self, summary: Dict[str, Any]) -> List:
        currency = summary.get('currency', '')
        elements = [Paragraph("Items", self.styles['POSection'])]

        rows = [['#', 'Item', 'Qty', 'Unit Price', 'Total']]
        for idx, item in enumerate(summary.get('items', []), start=1):
            rows.append([
                str(idx),
                Paragraph(str(item.get('name', '')), self.styles['Normal']),
                str(item.get('quantity', 0)),
                _money(currency, item.get('unit_price')),
                _money(currency, item.get('total')),
            ])

        items_table = Table(
            rows,
            colWidths=[0.4 * inch, 2.8 * inch, 0.6 * inch, 1.2 * inch, 1.2 * inch],
            repeatRows=1
        )
        items_table.setStyle(TableStyle([
            ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor('#edf2f7')),
            ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 0), (-1, -1), 10),
            ('ALIGN', (2, 0), (-1, -1), 'RIGHT'),
            ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
            ('LINEBELOW', (0, 0), (-1, -1), 0.25, colors.HexColor('#e2e8f0')),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 6),
            ('TOPPADDING', (0, 0), (-1, -1), 6),
        ]))
        elements.append(items_table)
        return elements

    def _build_totals(self, summary: Dict[str, Any]) -> List:
        currency = summary.get('currency', '')
        totals_table = Table(
            [
                ['Subtotal:', _money(currency, summary.get('subtotal'))],
                ['Tax:', _money(currency, summary.get('tax'))],
                ['Shipping:', _money(currency, summary.get('shipping'))],
                ['Total:', _money(currency, summary.get('total'))],
            ],
            colWidths=[4.8 * inch, 1.4 * inch]
        )
        totals_table.setStyle(TableStyle([
            ('ALIGN', (0, 0), (-1, -1), 'RIGHT'),
            ('FONTSIZE', (0, 0), (-1, -1), 11),
            ('FONTNAME', (0, -1), (-1, -1), 'Helvetica-Bold'),
            ('LINEABOVE', (0, -1), (-1, -1), 0.75, colors.HexColor('#2d3748')),
        ]))
        return [Spacer(1, 16), totals_table]
