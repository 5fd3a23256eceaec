from pathlib import Path
import json
import shutil
import os
import tempfile
import uuid

import pytest
from docx import Document
from pypdf import PdfReader, PdfWriter

from roster import ClassroomExport
from storage import LocalFileService


@pytest.fixture
def tmp_path():
    """
    Local override for pytest's tmp_path fixture.
    Some Windows environments create tmp roots with restrictive ACLs that
    break test setup/teardown. This keeps temp dirs under LOCALAPPDATA/Temp.
    """
    base_root = Path(os.environ.get("LOCALAPPDATA", tempfile.gettempdir()))
    base = base_root / "Temp" / "sample_builder_pytest_cases"
    base.mkdir(parents=True, exist_ok=True)
    path = base / f"case_{uuid.uuid4().hex}"
    path.mkdir(parents=True, exist_ok=False)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def store(tmp_path: Path):
    return LocalFileService(str(tmp_path / "store"))


def _store_path(store: LocalFileService, file_id: str) -> Path:
    path = Path(store.root, *file_id.split("/"))
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture
def make_pdf(store):
    """Write a PDF into the store; page width tags where its pages end up after a merge."""
    def _make(file_id: str, pages: int = 1, width: int = 72):
        path = _store_path(store, file_id)
        writer = PdfWriter()
        for _ in range(pages):
            writer.add_blank_page(width=width, height=72)
        with path.open("wb") as handle:
            writer.write(handle)
        return store.get_file(file_id)

    return _make


@pytest.fixture
def make_file(store):
    def _make(file_id: str, data: bytes = b"data"):
        _store_path(store, file_id).write_bytes(data)
        return store.get_file(file_id)

    return _make


@pytest.fixture
def make_docx(store):
    """Write a .docx with a paragraph and optional two-column tables given as row lists."""
    def _make(file_id: str, text: str = "", tables=()):
        path = _store_path(store, file_id)
        document = Document()
        document.add_paragraph(text)
        for rows in tables:
            table = document.add_table(rows=len(rows), cols=len(rows[0]))
            for r, row in enumerate(rows):
                for c, value in enumerate(row):
                    table.cell(r, c).text = value
        document.save(str(path))
        return store.get_file(file_id)

    return _make


@pytest.fixture
def page_widths(store):
    def _widths(file_id: str):
        reader = PdfReader(store.path_for(file_id))
        return [round(float(page.mediabox.width)) for page in reader.pages]

    return _widths


@pytest.fixture
def make_roster(tmp_path: Path):
    def _make(courses):
        path = tmp_path / f"roster_{uuid.uuid4().hex[:8]}.json"
        path.write_text(json.dumps({"courses": courses}), encoding="utf-8")
        return ClassroomExport(str(path))

    return _make


@pytest.fixture
def patch_word_converter(monkeypatch):
    def _patch(fail_contains: str = ""):
        class FakeWordConverter:
            def __init__(self, warnings=None):
                self.warnings = warnings

            @staticmethod
            def is_available():
                return True, ""

            def __enter__(self):
                return self

            def __exit__(self, exc_type, exc, tb):
                return False

            def convert_file(self, source_path: str, output_pdf_path: str) -> bool:
                if fail_contains and fail_contains in source_path:
                    if self.warnings is not None:
                        self.warnings.append(
                            {
                                "code": "word_to_pdf_failed",
                                "message": "Word-to-PDF conversion failed; skipping file",
                                "file": source_path,
                                "error": "mock_failure",
                            }
                        )
                    return False

                writer = PdfWriter()
                writer.add_blank_page(width=72, height=72)
                with open(output_pdf_path, "wb") as handle:
                    writer.write(handle)
                return True

        monkeypatch.setattr("declarations.WordToPdfConverter", FakeWordConverter)
        monkeypatch.setattr("folder_populator.WordToPdfConverter", FakeWordConverter)
        return FakeWordConverter

    return _patch
