import io
from unittest.mock import AsyncMock, patch

import pytest
import pytesseract
from docx import Document as DocxDocument

from medsense.config.settings import ExtractionConfig, OcrConfig
from medsense.core.errors import EmptyDocumentError, ExtractionError
from medsense.core.parse.normalizer import normalize_text
from medsense.core.parse.ocr_engine import OcrResult, TesseractOcrEngine
from medsense.core.parse.text_extractor import TextExtractor
from medsense.tests.conftest import make_pdf

NORMALIZER_SAMPLES = [
    "",
    "   ",
    "B1ood Pressu re 12O/8O\r\n\r\n\r\n\r\nCho1esterol:\t200 mg/d1",
    "line one  \n   line two\n\n\n\n\nline three",
    "G1ucose  95 mg/d1 \r fasting",
    "Hemog1obin  13.5 g/dL\n \n \nA1bumin 4.2",
    "\n\n\n  already clean text  \n\n\n",
]


@pytest.mark.parametrize("text", NORMALIZER_SAMPLES)
def test_normalize_is_idempotent(text):
    once = normalize_text(text)
    assert normalize_text(once) == once


def test_normalize_fixes_whitespace_and_ocr_misreads():
    raw = "B1ood  Pressu re\t 120/8O\r\n\r\n\r\n\r\nCho1esterol: 180 mg/d1 "
    assert normalize_text(raw) == "Blood Pressure 120/80\n\nCholesterol: 180 mg/dL"


def test_normalize_keeps_single_blank_lines():
    assert normalize_text("a\n\nb\nc") == "a\n\nb\nc"


@pytest.mark.asyncio
async def test_plain_text_extraction():
    extractor = TextExtractor(ExtractionConfig(), ocr_engine=TesseractOcrEngine(OcrConfig()))
    result = await extractor.extract("HDL 54 mg/dL".encode("utf-8"), "text/plain; charset=utf-8")
    assert result.text == "HDL 54 mg/dL"
    assert result.ocr_used is False


@pytest.mark.asyncio
async def test_unsupported_media_type_fails_fast():
    extractor = TextExtractor()
    with pytest.raises(ExtractionError):
        await extractor.extract(b"GIF89a", "image/gif")


@pytest.mark.asyncio
async def test_empty_document_is_rejected():
    extractor = TextExtractor()
    with pytest.raises(EmptyDocumentError):
        await extractor.extract(b"", "text/plain")
    with pytest.raises(EmptyDocumentError):
        await extractor.extract(b"   \n ", "text/plain")


@pytest.mark.asyncio
async def test_pdf_text_layer_is_used_when_long_enough(lipid_pdf):
    ocr = TesseractOcrEngine()
    ocr.recognize_pdf = AsyncMock()
    extractor = TextExtractor(ExtractionConfig(min_text_chars=100), ocr_engine=ocr)

    result = await extractor.extract(lipid_pdf, "application/pdf")

    assert "HDL 54 mg/dL, 26 Feb 2024" in result.text
    assert result.page_count == 1
    assert result.ocr_used is False
    ocr.recognize_pdf.assert_not_called()


@pytest.mark.asyncio
async def test_pdf_with_little_text_falls_back_to_ocr():
    data = make_pdf(["Scan"])
    ocr = TesseractOcrEngine()
    ocr.recognize_pdf = AsyncMock(return_value=OcrResult(
        text="HDL 54 mg/dL\n\n--- Page 1 ---", page_count=1, pages_recognised=1
    ))
    extractor = TextExtractor(ExtractionConfig(min_text_chars=100), ocr_engine=ocr)

    result = await extractor.extract(data, "application/pdf")

    assert result.ocr_used is True
    assert result.text.startswith("HDL 54 mg/dL")
    ocr.recognize_pdf.assert_awaited_once()


@pytest.mark.asyncio
async def test_unreadable_pdf_raises_extraction_error():
    extractor = TextExtractor()
    with pytest.raises(ExtractionError):
        await extractor.extract(b"%PDF-1.4 this is not really a pdf", "application/pdf")


@pytest.mark.asyncio
async def test_docx_extraction_includes_tables():
    doc = DocxDocument()
    doc.add_paragraph("KIDNEY FUNCTION")
    table = doc.add_table(rows=2, cols=2)
    table.cell(0, 0).text = "Creatinine"
    table.cell(0, 1).text = "0.9 mg/dL"
    table.cell(1, 0).text = "Urea"
    table.cell(1, 1).text = "28 mg/dL"
    buffer = io.BytesIO()
    doc.save(buffer)

    extractor = TextExtractor()
    result = await extractor.extract(
        buffer.getvalue(),
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
    )
    assert result.text.splitlines()[0] == "KIDNEY FUNCTION"
    assert "Creatinine | 0.9 mg/dL" in result.text


@pytest.mark.asyncio
async def test_ocr_concatenates_pages_in_order_with_monotonic_progress():
    data = make_pdf(["", "", ""])
    engine = TesseractOcrEngine(OcrConfig(dpi=30, concurrency=2))
    events = []

    def fake_ocr(image, lang=None, config=None):
        assert lang == "eng"
        assert config == "--oem 1 --psm 6"
        return f"text of a {image.size[0]}px page"

    with patch("medsense.core.parse.ocr_engine.pytesseract.get_tesseract_version", return_value="5.3.0"), \
         patch("medsense.core.parse.ocr_engine.pytesseract.image_to_string", side_effect=fake_ocr):
        result = await engine.recognize_pdf(data, events.append)

    assert result.page_count == 3
    assert result.pages_recognised == 3
    markers = [result.text.index(f"--- Page {n} ---") for n in (1, 2, 3)]
    assert markers == sorted(markers)

    pages = [e.current_page for e in events]
    overall = [e.overall_progress for e in events]
    assert pages == sorted(pages)
    assert overall == sorted(overall)
    assert events[-1].overall_progress == 100
    assert all(e.total_pages == 3 for e in events)


@pytest.mark.asyncio
async def test_ocr_respects_page_limit():
    data = make_pdf(["", "", "", ""])
    engine = TesseractOcrEngine(OcrConfig(dpi=30, max_pages=2))

    with patch("medsense.core.parse.ocr_engine.pytesseract.get_tesseract_version", return_value="5.3.0"), \
         patch("medsense.core.parse.ocr_engine.pytesseract.image_to_string", return_value="Glucose 90"):
        result = await engine.recognize_pdf(data)

    assert result.page_count == 4
    assert result.pages_recognised == 2
    assert "--- Page 3 ---" not in result.text


@pytest.mark.asyncio
async def test_ocr_without_tesseract_raises_descriptive_error():
    engine = TesseractOcrEngine(OcrConfig(dpi=30))
    with patch(
        "medsense.core.parse.ocr_engine.pytesseract.get_tesseract_version",
        side_effect=pytesseract.TesseractNotFoundError()
    ):
        with pytest.raises(ExtractionError, match="tesseract"):
            await engine.recognize_pdf(make_pdf([""]))


@pytest.mark.asyncio
async def test_ocr_with_no_recognised_text_is_empty_document():
    engine = TesseractOcrEngine(OcrConfig(dpi=30))
    with patch("medsense.core.parse.ocr_engine.pytesseract.get_tesseract_version", return_value="5.3.0"), \
         patch("medsense.core.parse.ocr_engine.pytesseract.image_to_string", return_value="  \n"):
        with pytest.raises(EmptyDocumentError):
            await engine.recognize_pdf(make_pdf(["", ""]))


@pytest.mark.asyncio
async def test_single_failing_page_is_treated_as_empty():
    engine = TesseractOcrEngine(OcrConfig(dpi=30, concurrency=1))
    outputs = iter(["Page one values", pytesseract.TesseractError(1, "bad image")])

    def flaky(image, lang=None, config=None):
        value = next(outputs)
        if isinstance(value, Exception):
            raise value
        return value

    with patch("medsense.core.parse.ocr_engine.pytesseract.get_tesseract_version", return_value="5.3.0"), \
         patch("medsense.core.parse.ocr_engine.pytesseract.image_to_string", side_effect=flaky):
        result = await engine.recognize_pdf(make_pdf(["", ""]))

    assert result.pages_recognised == 1
    assert "Page one values" in result.text


@pytest.mark.asyncio
async def test_ocr_progress_ticks_within_each_page():
    engine = TesseractOcrEngine(OcrConfig(dpi=30, concurrency=1))
    events = []

    with patch("medsense.core.parse.ocr_engine.pytesseract.get_tesseract_version", return_value="5.3.0"), \
         patch("medsense.core.parse.ocr_engine.pytesseract.image_to_string", return_value="Sodium 140"):
        await engine.recognize_pdf(make_pdf(["", ""]), events.append)

    assert [(e.current_page, e.page_progress) for e in events] == [
        (1, 0), (1, 50), (1, 100), (2, 0), (2, 50), (2, 100)
    ]
    assert [e.overall_progress for e in events] == [0, 0, 50, 50, 50, 100]
