import asyncio
import logging
import os
import tempfile
from typing import Callable, List, Optional
import fitz  # PyMuPDF
import pytesseract
from PIL import Image
from pydantic import BaseModel
from medsense.config.settings import OcrConfig, settings
from medsense.core.errors import EmptyDocumentError, ExtractionError

logger = logging.getLogger(__name__)


class OcrProgress(BaseModel):
    current_page: int                # 1-based
    total_pages: int
    page_progress: int               # 0-100 within current_page
    overall_progress: int            # 0-100 across the document


class OcrResult(BaseModel):
    text: str
    page_count: int                  # pages in the source PDF
    pages_recognised: int


ProgressCallback = Callable[[OcrProgress], None]

# Tesseract reports nothing while it runs, so a page ticks 0 -> 50 (image loaded) -> 100
PAGE_LOADED_PROGRESS = 50


class _PageProgressReporter:
    """
    Turns out-of-order page completions into a monotonic progress feed.
    current_page only advances past a page once every earlier page is done.
    """

    def __init__(self, total_pages: int, callback: Optional[ProgressCallback]):
        self.total_pages = total_pages
        self.callback = callback
        self.done: set[int] = set()
        self.contiguous = 0          # number of leading pages that are complete
        self.current_page = 0
        self.page_progress = 0

    def page_started(self, index: int) -> None:
        if index == self.contiguous:
            self._emit(index + 1, 0)

    def page_loaded(self, index: int) -> None:
        if index == self.contiguous:
            self._emit(index + 1, PAGE_LOADED_PROGRESS)

    def page_finished(self, index: int) -> None:
        self.done.add(index)
        advanced = False
        while self.contiguous in self.done:
            self.contiguous += 1
            advanced = True
        if advanced:
            self._emit(self.contiguous, 100)
        else:
            self._emit(self.current_page, self.page_progress)

    def _emit(self, page: int, page_progress: int) -> None:
        if page > self.current_page:
            self.current_page = page
            self.page_progress = page_progress
        elif page == self.current_page:
            self.page_progress = max(self.page_progress, page_progress)
        if not self.callback:
            return
        overall = round(len(self.done) * 100 / self.total_pages) if self.total_pages else 100
        self.callback(OcrProgress(
            current_page=self.current_page,
            total_pages=self.total_pages,
            page_progress=self.page_progress,
            overall_progress=overall
        ))


class TesseractOcrEngine:
    """
    Rasterizes PDF pages with PyMuPDF and recognises them with Tesseract.
    Page images live in a temporary directory that is removed on exit,
    whether recognition succeeded or not.
    """

    def __init__(self, config: Optional[OcrConfig] = None):
        self.config = config or settings.ocr
        self._checked = False

    def check_available(self) -> None:
        if self._checked:
            return
        try:
            version = pytesseract.get_tesseract_version()
        except (pytesseract.TesseractNotFoundError, OSError) as e:
            raise ExtractionError(
                "OCR toolchain unavailable: the tesseract binary was not found on PATH"
            ) from e
        logger.info(f"Tesseract {version} available for OCR")
        self._checked = True

    async def recognize_pdf(self, data: bytes, progress_callback: Optional[ProgressCallback] = None) -> OcrResult:
        await asyncio.to_thread(self.check_available)

        with tempfile.TemporaryDirectory(prefix="medsense-ocr-") as tmp_dir:
            page_count, image_paths = await asyncio.to_thread(self._rasterize, data, tmp_dir)
            if not image_paths:
                raise EmptyDocumentError("PDF has no pages to recognise")

            reporter = _PageProgressReporter(len(image_paths), progress_callback)
            semaphore = asyncio.Semaphore(max(1, self.config.concurrency))

            async def recognise(index: int, path: str) -> str:
                async with semaphore:
                    reporter.page_started(index)
                    image = await asyncio.to_thread(self._load_page, index, path)
                    text = ""
                    if image is not None:
                        reporter.page_loaded(index)
                        text = await asyncio.to_thread(self._recognise_image, index, image)
                    reporter.page_finished(index)
                    return text

            page_texts = await asyncio.gather(*(recognise(i, p) for i, p in enumerate(image_paths)))

        recognised = sum(1 for t in page_texts if t.strip())
        if recognised == 0:
            raise EmptyDocumentError("OCR did not recognise any text on any page")

        parts = []
        for i, text in enumerate(page_texts):
            parts.append(f"{text.strip()}\n\n--- Page {i + 1} ---")
        logger.info(f"OCR recognised {recognised}/{len(page_texts)} pages")

        return OcrResult(text="\n\n".join(parts), page_count=page_count, pages_recognised=recognised)

    def _rasterize(self, data: bytes, out_dir: str) -> tuple[int, List[str]]:
        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except (RuntimeError, ValueError) as e:
            raise ExtractionError(f"Could not open PDF for rasterization: {e}") from e

        paths = []
        try:
            page_count = doc.page_count
            limit = min(page_count, self.config.max_pages)
            if page_count > limit:
                logger.warning(f"OCR limited to the first {limit} of {page_count} pages")
            for page_num in range(limit):
                pix = doc[page_num].get_pixmap(dpi=self.config.dpi)
                path = os.path.join(out_dir, f"page-{page_num + 1:04d}.png")
                pix.save(path)
                paths.append(path)
        finally:
            doc.close()
        return page_count, paths

    def _load_page(self, index: int, path: str) -> Optional[Image.Image]:
        try:
            image = Image.open(path)
            image.load()
            return image
        except OSError as e:
            logger.warning(f"Could not load rasterized page {index + 1}: {e}")
            return None

    def _recognise_image(self, index: int, image: Image.Image) -> str:
        tess_config = f"--oem {self.config.oem} --psm {self.config.psm}"
        try:
            with image:
                return pytesseract.image_to_string(image, lang=self.config.lang, config=tess_config)
        except pytesseract.TesseractNotFoundError as e:
            raise ExtractionError("OCR toolchain unavailable: the tesseract binary was not found on PATH") from e
        except (pytesseract.TesseractError, OSError) as e:
            logger.warning(f"OCR failed on page {index + 1}: {e}")
            return ""
