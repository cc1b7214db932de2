import asyncio
import io
import logging
from typing import List, Optional, Tuple
import fitz  # PyMuPDF
import pdfplumber
import pandas as pd
from docx import Document as DocxDocument
from pydantic import BaseModel
from medsense.config.settings import ExtractionConfig, settings
from medsense.core.errors import EmptyDocumentError, ExtractionError
from medsense.core.parse.ocr_engine import ProgressCallback, TesseractOcrEngine

logger = logging.getLogger(__name__)

PDF_TYPES = {"application/pdf"}
TEXT_TYPES = {"text/plain"}
DOCX_TYPES = {
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/msword",
}


class ExtractionResult(BaseModel):
    text: str
    page_count: int = 0
    ocr_used: bool = False


class TextExtractor:
    """
    Produces plain text from an uploaded document.
    PDFs use the embedded text layer (plus pdfplumber tables as markdown);
    when that yields too little text the document is treated as scanned and
    every page goes through OCR.
    """

    def __init__(self, config: Optional[ExtractionConfig] = None, ocr_engine: Optional[TesseractOcrEngine] = None):
        self.config = config or settings.extraction
        self.ocr_engine = ocr_engine or TesseractOcrEngine()

    @staticmethod
    def normalise_media_type(media_type: Optional[str]) -> str:
        return (media_type or "").split(";")[0].strip().lower()

    def supports(self, media_type: Optional[str]) -> bool:
        mt = self.normalise_media_type(media_type)
        return mt in PDF_TYPES or mt in TEXT_TYPES or mt in DOCX_TYPES

    async def extract(self,
                      data: bytes,
                      media_type: str,
                      progress_callback: Optional[ProgressCallback] = None) -> ExtractionResult:
        mt = self.normalise_media_type(media_type)
        if not self.supports(mt):
            raise ExtractionError(f"Unsupported media type: {media_type or 'unknown'}")
        if not data:
            raise EmptyDocumentError("Document is empty")

        if mt in TEXT_TYPES:
            text = data.decode("utf-8", errors="replace").strip()
            result = ExtractionResult(text=text, page_count=1)
        elif mt in DOCX_TYPES:
            result = await asyncio.to_thread(self._extract_docx, data)
        else:
            result = await self._extract_pdf(data, progress_callback)

        if not result.text.strip():
            raise EmptyDocumentError("No text could be extracted from the document")
        return result

    async def _extract_pdf(self, data: bytes, progress_callback: Optional[ProgressCallback]) -> ExtractionResult:
        text, page_count = await asyncio.to_thread(self._extract_text_layer, data)
        if page_count == 0:
            raise EmptyDocumentError("PDF has no pages")

        if len(text.strip()) >= self.config.min_text_chars:
            logger.info(f"Text layer extraction succeeded ({len(text)} chars, {page_count} pages)")
            return ExtractionResult(text=text, page_count=page_count)

        logger.info(
            f"Text layer yielded {len(text.strip())} chars (< {self.config.min_text_chars}); falling back to OCR"
        )
        ocr = await self.ocr_engine.recognize_pdf(data, progress_callback)
        return ExtractionResult(text=ocr.text, page_count=ocr.page_count, ocr_used=True)

    def _extract_text_layer(self, data: bytes) -> Tuple[str, int]:
        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except (RuntimeError, ValueError) as e:
            raise ExtractionError(f"Could not open PDF: {e}") from e

        try:
            if doc.needs_pass:
                # Password-protected: no text layer, and nothing to rasterize either
                raise ExtractionError("PDF is password protected")
            page_count = doc.page_count
            page_texts = [page.get_text("text") for page in doc]
        finally:
            doc.close()

        tables = self._extract_tables(data) if self.config.extract_tables else {}

        parts = []
        for i, page_text in enumerate(page_texts):
            page_part = page_text.strip()
            for table_md in tables.get(i + 1, []):
                page_part = f"{page_part}\n\n{table_md}" if page_part else table_md
            if page_part:
                parts.append(page_part)
        return "\n\n".join(parts), page_count

    def _extract_tables(self, data: bytes) -> dict[int, List[str]]:
        """
        Uses pdfplumber to detect tables and renders each as markdown.
        Returns page_number -> list of markdown tables. Failures are logged
        and ignored since the text layer already carries the cell text.
        """
        tables_per_page: dict[int, List[str]] = {}
        try:
            with pdfplumber.open(io.BytesIO(data)) as pdf:
                for i, page in enumerate(pdf.pages):
                    rendered = []
                    for table in page.find_tables():
                        rows = table.extract()
                        if not rows or len(rows) < 2:
                            continue
                        header = [str(c or "").strip() or f"col{j + 1}" for j, c in enumerate(rows[0])]
                        body = [[str(c or "").strip() for c in row] for row in rows[1:]]
                        df = pd.DataFrame(body, columns=header)
                        rendered.append(df.to_markdown(index=False))
                    if rendered:
                        tables_per_page[i + 1] = rendered
        except Exception as e:
            logger.warning(f"Table extraction skipped: {e}")
            return {}
        return tables_per_page

    def _extract_docx(self, data: bytes) -> ExtractionResult:
        try:
            doc = DocxDocument(io.BytesIO(data))
        except Exception as e:
            raise ExtractionError(f"Could not open DOCX document: {e}") from e

        lines = [p.text for p in doc.paragraphs if p.text.strip()]
        for table in doc.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells]
                if any(cells):
                    lines.append(" | ".join(cells))
        return ExtractionResult(text="\n".join(lines).strip(), page_count=1)
