"""
Tests for execution/hr_rag/document_parser.py

Covers: plain-text decoding (UTF-8, UTF-16, Windows-1256), language and
        page metadata, unsupported MIME types, empty and corrupt input,
        PDF extraction via PyMuPDF and DOCX extraction via python-docx.
"""

import io

import pytest

from execution.hr_rag.security import MIME_DOCX, MIME_PDF, MIME_TEXT


@pytest.fixture
def extractor():
    from execution.hr_rag.document_parser import TextExtractor
    return TextExtractor()


# ---------------------------------------------------------------------------
# Plain text
# ---------------------------------------------------------------------------

class TestPlainText:
    """Tests for the plain-text strategy."""

    def test_utf8_arabic(self, extractor, sample_policy_ar):
        result = extractor.extract(sample_policy_ar.encode("utf-8"), MIME_TEXT)
        assert "الإجازة السنوية" in result.text
        assert result.language == "ar"
        assert result.page_offsets == [0]
        assert result.word_count > 20
        assert result.page_count == 1
        assert result.extraction_confidence == pytest.approx(1.0)
        assert result.properties["encoding"] == "utf-8-sig"

    def test_windows_1256(self, extractor):
        result = extractor.extract("الإجازة السنوية".encode("cp1256"), MIME_TEXT)
        assert result.text == "الإجازة السنوية"
        assert result.properties["encoding"] == "cp1256"

    def test_utf16(self, extractor):
        result = extractor.extract("Annual leave policy".encode("utf-16"), MIME_TEXT)
        assert result.text == "Annual leave policy"
        assert result.language == "en"

    def test_metadata_dict(self, extractor):
        metadata = extractor.extract(b"Annual leave policy", MIME_TEXT).metadata
        assert metadata["language"] == "en"
        assert metadata["page_offsets"] == [0]
        assert metadata["encoding"] == "utf-8-sig"

    def test_blank_text_raises(self, extractor):
        from execution.hr_rag.errors import ExtractionError
        with pytest.raises(ExtractionError):
            extractor.extract(b"   \n\n  ", MIME_TEXT)

    def test_unsupported_mime_type(self, extractor):
        from execution.hr_rag.errors import ExtractionError, UnsupportedFileType
        with pytest.raises(UnsupportedFileType) as exc:
            extractor.extract(b"\x89PNG", "image/png")
        assert isinstance(exc.value, ExtractionError)
        assert exc.value.code == "unsupported_file_type"


# ---------------------------------------------------------------------------
# PDF
# ---------------------------------------------------------------------------

class TestPdf:
    """Tests for PDF extraction through PyMuPDF."""

    def _pdf(self, pages):
        fitz = pytest.importorskip("fitz")
        doc = fitz.open()
        for text in pages:
            page = doc.new_page()
            page.insert_text((72, 72), text)
        data = doc.tobytes()
        doc.close()
        return data

    def test_pages_and_offsets(self, extractor):
        data = self._pdf(["Annual leave policy", "Sick leave policy"])
        result = extractor.extract(data, MIME_PDF)
        assert result.page_count == 2
        assert len(result.page_offsets) == 2
        second = result.text[result.page_offsets[1]:]
        assert second.startswith("Sick leave policy")
        assert "Annual leave policy" in result.text[:result.page_offsets[1]]

    def test_corrupt_pdf_raises(self, extractor):
        pytest.importorskip("fitz")
        from execution.hr_rag.errors import ExtractionError
        with pytest.raises(ExtractionError):
            extractor.extract(b"%PDF-1.4 this is not really a pdf", MIME_PDF)


# ---------------------------------------------------------------------------
# DOCX
# ---------------------------------------------------------------------------

class TestDocx:
    """Tests for DOCX extraction through python-docx."""

    def test_paragraphs_and_tables(self, extractor):
        docx = pytest.importorskip("docx")
        document = docx.Document()
        document.core_properties.title = "Employee Handbook"
        document.add_paragraph("سياسة الإجازات")
        document.add_paragraph("يستحق الموظف إجازة سنوية مدتها واحد وعشرون يوماً")
        table = document.add_table(rows=1, cols=2)
        table.rows[0].cells[0].text = "Annual leave"
        table.rows[0].cells[1].text = "21 days"
        buffer = io.BytesIO()
        document.save(buffer)

        result = extractor.extract(buffer.getvalue(), MIME_DOCX)
        assert "سياسة الإجازات" in result.text
        assert "Annual leave | 21 days" in result.text
        assert result.properties["title"] == "Employee Handbook"
        assert result.page_count == 1

    def test_corrupt_docx_raises(self, extractor):
        pytest.importorskip("docx")
        from execution.hr_rag.errors import ExtractionError
        with pytest.raises(ExtractionError):
            extractor.extract(b"PK\x03\x04 broken archive", MIME_DOCX)
