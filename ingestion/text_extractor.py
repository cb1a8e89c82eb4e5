"""Source text extraction for PDF and plain-text books."""
import fitz  # PyMuPDF
from pathlib import Path
from utils.logger import setup_logger
from utils.errors import TextExtractionError
from ingestion.models import ExtractedDocument
from ingestion.cleaner import clean_text, remove_headers_footers

logger = setup_logger(__name__)

MIN_TEXT_CHARS = 100


class TextExtractor:
    """Reads a book file into cleaned plain text."""

    def extract(self, file_path: str) -> ExtractedDocument:
        """Extract clean text from a .pdf or .txt file.

        Args:
            file_path: Path to the book

        Returns:
            ExtractedDocument with cleaned text and page count

        Raises:
            TextExtractionError: If the file is missing, unreadable or has no text
        """
        path = Path(file_path)

        if not path.exists():
            raise TextExtractionError(f"File not found: {path}")

        logger.info(f"Extracting text from {path.name}")

        if path.suffix.lower() == ".pdf":
            pages = self._read_pdf(path)
        else:
            pages = self._read_text(path)

        total_text = ''.join(pages)
        if len(total_text.strip()) < MIN_TEXT_CHARS:
            raise TextExtractionError(
                "Document appears to contain no extractable text. "
                "If this is a scanned image PDF, please use an OCR'd version."
            )

        pages = remove_headers_footers(pages)
        raw_text = clean_text('\n\n'.join(pages))
        word_count = len(raw_text.split())

        logger.info(f"Extracted {len(pages)} pages, {word_count} words")

        return ExtractedDocument(
            title=path.stem,
            raw_text=raw_text,
            page_count=len(pages),
            metadata={
                'filename': path.name,
                'word_count': word_count,
                'file_path': str(path.absolute())
            }
        )

    def _read_pdf(self, path: Path):
        try:
            doc = fitz.open(path)
        except Exception as e:
            raise TextExtractionError(f"Failed to open PDF: {e}") from e

        try:
            if doc.page_count == 0:
                raise TextExtractionError("PDF has no pages")
            return [doc[page_num].get_text() for page_num in range(doc.page_count)]
        finally:
            doc.close()

    def _read_text(self, path: Path):
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise TextExtractionError(f"Failed to read file: {e}") from e
        # Plain text has no pages; form feeds are honoured when present
        return text.split('\f') if '\f' in text else [text]
