import io

from PIL import Image
from pypdf import PdfWriter

import attachment_extractor
from attachment_extractor import (
    AttachmentKind,
    bytes_to_text,
    file_to_text,
    image_to_text,
    pdf_to_text,
)


def _blank_pdf(pages=1):
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=72, height=72)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


def _png():
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), "white").save(buf, format="PNG")
    return buf.getvalue()


class FakePage:
    def __init__(self, text):
        self.text = text

    def extract_text(self):
        return self.text


def test_blank_pdf_has_no_text():
    assert pdf_to_text(_blank_pdf(pages=2)) == ""


def test_pdf_pages_are_joined_and_empty_pages_skipped(monkeypatch):
    seen = []

    class FakeReader:
        def __init__(self, stream):
            seen.append(stream.read())
            self.pages = [FakePage(" Install \n"), FakePage(None), FakePage("Run setup.sh")]

    monkeypatch.setattr("attachment_extractor.PdfReader", FakeReader)

    assert pdf_to_text(b"%PDF-raw") == "Install\n\nRun setup.sh"
    assert seen == [b"%PDF-raw"]


def test_image_is_ocrd_with_configured_language(monkeypatch):
    calls = []

    def fake_ocr(image, lang):
        calls.append((image.size, lang))
        return "Step 1: open settings\n"

    monkeypatch.setattr(attachment_extractor.pytesseract, "image_to_string", fake_ocr)

    assert image_to_text(_png()) == "Step 1: open settings\n"
    assert image_to_text(_png(), lang="deu") == "Step 1: open settings\n"
    assert calls == [((8, 8), "eng"), ((8, 8), "deu")]


def test_bytes_dispatch_by_kind(monkeypatch):
    monkeypatch.setattr(attachment_extractor.pytesseract, "image_to_string",
                        lambda image, lang: "ocr text")

    assert bytes_to_text("héllo".encode(), AttachmentKind.TEXT) == "héllo"
    assert bytes_to_text(_png(), AttachmentKind.IMAGE) == "ocr text"
    assert bytes_to_text(_blank_pdf(), AttachmentKind.PDF) == ""
    assert bytes_to_text(b"anything", AttachmentKind.UNSUPPORTED) == ""


def test_file_to_text_uses_extension(tmp_path):
    notes = tmp_path / "notes.md"
    notes.write_text("# Setup\nRun it.")
    binary = tmp_path / "tool.exe"
    binary.write_bytes(b"MZ")

    assert file_to_text(notes) == "# Setup\nRun it."
    assert file_to_text(binary) == ""
