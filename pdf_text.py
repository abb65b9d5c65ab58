"""
Text extraction for pitch deck PDFs.

Every page is read twice: once through its embedded text layer and once through OCR of a rendered image of
the page, because decks often carry their key numbers inside screenshots and charts. Both sources are kept and
merged into one labeled block per page.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import fitz  # PyMuPDF
import pytesseract
from PIL import Image

from constants import OCR_MARKER, PAGE_MARKER, RENDER_SCALE

logger = logging.getLogger(__name__)


class InvalidDocumentError(Exception):
    """Raised when the input cannot be processed as a PDF at all"""


@dataclass(frozen=True)
class PageText:
    page_index: int
    native_text: str
    ocr_text: str = ""
    ocr_confidence: Optional[float] = None


@dataclass(frozen=True)
class DocumentText:
    pages: tuple
    blocks: tuple
    full_text: str

    @property
    def page_count(self) -> int:
        return len(self.pages)


@dataclass(frozen=True)
class OcrResult:
    text: str
    confidence: Optional[float] = None


class OcrEngine:
    """
    Tesseract wrapper scoped to a single document.

    The engine is opened once before the first page and closed after the last one, normally through a
    ``with`` block. When the tesseract binary cannot be found the engine still opens, logs a warning and
    recognizes nothing, so documents are processed from their text layer alone.
    """

    def __init__(self, languages: str = "eng", config: str = "--oem 3 --psm 3"):
        self.languages = languages
        self.config = config
        self._active = False
        self._available = False

    @property
    def available(self) -> bool:
        return self._active and self._available

    def open(self):
        if self._active:
            return self
        try:
            version = pytesseract.get_tesseract_version()
        except pytesseract.TesseractNotFoundError as e:
            logger.warning("Tesseract is not available, continuing without OCR: %s", e)
            self._available = False
        else:
            logger.info("OCR engine initialized (tesseract %s, lang=%s)", version, self.languages)
            self._available = True
        self._active = True
        return self

    def close(self):
        if self._active:
            logger.debug("OCR engine released")
        self._active = False
        self._available = False

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def recognize(self, image: Image.Image) -> OcrResult:
        """
        Runs recognition on one rendered page.

        :param image: PIL image of the page
        :return: OcrResult with the text grouped in lines and the mean word confidence (0-1)
        """
        if not self._active:
            raise RuntimeError("OcrEngine.recognize() called outside of an open engine scope")
        if not self._available:
            return OcrResult(text="")

        data = pytesseract.image_to_data(
            image,
            lang=self.languages,
            config=self.config,
            output_type=pytesseract.Output.DICT,
        )
        return words_to_result(data)


def words_to_result(data: dict) -> OcrResult:
    """Groups tesseract word boxes into lines and averages their confidence."""
    lines = {}
    confidences = []
    words = data.get("text", [])
    for i, word in enumerate(words):
        word = (word or "").strip()
        try:
            conf = float(data["conf"][i])
        except (KeyError, IndexError, TypeError, ValueError):
            conf = -1.0
        if not word or conf < 0:
            continue
        key = tuple(data.get(name, [0] * len(words))[i] for name in ("block_num", "par_num", "line_num"))
        lines.setdefault(key, []).append(word)
        confidences.append(conf)

    text = "\n".join(" ".join(line) for line in lines.values())
    confidence = round(sum(confidences) / len(confidences) / 100, 3) if confidences else None
    return OcrResult(text=text, confidence=confidence)


def read_native_text(page) -> str:
    """
    Returns the selectable text layer of a page, or an empty string if it cannot be read.

    :param page: fitz.Page
    :return: str
    """
    try:
        return (page.get_text("text") or "").strip()
    except Exception as e:
        logger.warning("Could not read text layer of page %s: %s", page.number + 1, e)
        return ""


def rasterize_page(page, scale: float = RENDER_SCALE) -> Image.Image:
    matrix = fitz.Matrix(scale, scale)
    pix = page.get_pixmap(matrix=matrix, alpha=False)
    return Image.frombytes("RGB", (pix.width, pix.height), pix.samples)


def _normalized(text: str) -> str:
    return " ".join(text.split())


def merge_page_text(page_text: PageText) -> str:
    """
    Builds the labeled block for one page.

    The native text always comes first. The OCR text gets its own section, and only when it is non-empty
    and different from the native text.

    :param page_text: PageText
    :return: str
    """
    index = page_text.page_index
    parts = [PAGE_MARKER.format(index=index)]

    native = page_text.native_text.strip()
    if native:
        parts.append(native)

    ocr = page_text.ocr_text.strip()
    if ocr and _normalized(ocr) != _normalized(native):
        parts.append("")
        parts.append(OCR_MARKER.format(index=index))
        parts.append(ocr)

    return "\n".join(parts)


def assemble_document(pages) -> DocumentText:
    """
    Concatenates the merged page blocks in page order, separated by a blank line.

    :param pages: iterable of PageText, numbered 1..N
    :return: DocumentText
    """
    pages = tuple(sorted(pages, key=lambda p: p.page_index))
    expected = tuple(range(1, len(pages) + 1))
    if tuple(p.page_index for p in pages) != expected:
        raise ValueError("Pages must be numbered contiguously from 1")

    blocks = tuple(merge_page_text(p) for p in pages)
    return DocumentText(pages=pages, blocks=blocks, full_text="\n\n".join(blocks))


def _recognize_page(page, engine, scale: float) -> OcrResult:
    index = page.number + 1
    try:
        image = rasterize_page(page, scale)
    except Exception as e:
        logger.warning("Could not render page %d for OCR: %s", index, e)
        return OcrResult(text="")

    try:
        return engine.recognize(image)
    except Exception as e:
        logger.warning("OCR failed on page %d, using text layer only: %s", index, e)
        return OcrResult(text="")


def extract_document_text(pdf_bytes: bytes, ocr_engine=None, *, render_scale: float = RENDER_SCALE,
                          ocr_languages: str = "eng") -> DocumentText:
    """
    Extracts the text of every page of a PDF, from its text layer and from OCR, in page order.

    Pages are processed one after the other with a single OCR engine that is opened before the first page
    and released after the last one, also when a page fails.

    :param pdf_bytes: content of the PDF file
    :param ocr_engine: engine to use, defaults to a new OcrEngine for ocr_languages
    :param render_scale: magnification used to rasterize pages
    :param ocr_languages: tesseract language string for the default engine
    :return: DocumentText
    """
    if ocr_engine is None:
        ocr_engine = OcrEngine(languages=ocr_languages)

    try:
        document = fitz.open(stream=pdf_bytes, filetype="pdf")
    except Exception as e:
        raise InvalidDocumentError(f"Could not open PDF: {e}") from e

    pages = []
    with document, ocr_engine:
        total = document.page_count
        for page_number in range(total):
            try:
                page = document.load_page(page_number)
            except Exception as e:
                logger.warning("Could not load page %d, leaving it empty: %s", page_number + 1, e)
                pages.append(PageText(page_index=page_number + 1, native_text=""))
                continue
            native_text = read_native_text(page)
            ocr = _recognize_page(page, ocr_engine, render_scale)
            pages.append(PageText(
                page_index=page_number + 1,
                native_text=native_text,
                ocr_text=ocr.text.strip(),
                ocr_confidence=ocr.confidence,
            ))
            logger.debug("Page %d/%d: %d native chars, %d OCR chars", page_number + 1, total,
                         len(native_text), len(ocr.text))

    document_text = assemble_document(pages)
    logger.info("Extracted text from %d pages (%d characters)", document_text.page_count,
                len(document_text.full_text))
    return document_text
