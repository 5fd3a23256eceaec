"""
Declaration forms: merges the signed declaration submitted on the course
platform with the marked copy kept in the student folder, converts it and the
marking grid to PDF and joins them into the student's front sheet.
"""

import io
import os
import re
import threading
import uuid
from copy import deepcopy
from typing import Dict, List, Optional, Sequence, Tuple

from docx import Document

from roster import RosterError, RosterService, attachment_file_ids
from sample_engine import (
    STUDENT_SHEET_HEADER_ROWS,
    DocumentMerger,
    FileMatcher,
    MatchMode,
    MatchRule,
    StudentRecord,
    make_temp_dir,
    record_warning,
    release_temp_dir,
)
from storage import (
    MIME_DOCX,
    CollisionPolicy,
    FileDescriptor,
    FileService,
)

# Microsoft Word automation (Windows)
try:
    import pythoncom
    import win32com.client as win32_client
    HAS_WIN32COM = True
except ImportError:
    HAS_WIN32COM = False

TITLE_TABLE_HEADER = "Title of Task:"
TOTAL_TABLE_HEADER = "TOTAL"
DECLARATION_SUFFIX = "Declaration.docx"
MARKING_GRID_SUFFIX = "Marking Grid.docx"
FRONTSHEET_PREFIX = "0. Frontsheet"

_CANDIDATE_NO = re.compile(r"\b\d{4}\b")
_CENTRE_NO = re.compile(r"\b\d{5}\b")


class WordToPdfConverter:
    """Converts .doc/.docx files to PDF using Microsoft Word COM automation."""

    def __init__(self, warnings: Optional[List[Dict]] = None, timeout_seconds: int = 120):
        self.warnings = warnings
        self.word_app = None
        self.com_initialized = False
        self.timeout_seconds = timeout_seconds

    @staticmethod
    def is_available() -> Tuple[bool, str]:
        if os.name != 'nt':
            return False, "Word conversion is supported on Windows only."
        if not HAS_WIN32COM:
            return False, "pywin32 is required for Word-to-PDF conversion."
        return True, ""

    def __enter__(self):
        pythoncom.CoInitialize()
        self.com_initialized = True
        try:
            self.word_app = win32_client.DispatchEx("Word.Application")
            self.word_app.Visible = False
            self.word_app.DisplayAlerts = 0
            return self
        except Exception:
            self._shutdown()
            raise

    def __exit__(self, exc_type, exc, tb):
        self._shutdown()
        return False

    def _shutdown(self) -> None:
        if self.word_app is not None:
            try:
                self.word_app.Quit()
            except Exception:
                pass
            self.word_app = None
        if self.com_initialized:
            pythoncom.CoUninitialize()
            self.com_initialized = False

    def convert_file(self, source_path: str, output_pdf_path: str) -> bool:
        """Convert a single Word document to PDF. Returns True on success."""
        if self.word_app is None:
            raise RuntimeError("Word automation session is not initialized.")

        document = None
        timed_out = threading.Event()

        def _timeout_killer():
            timed_out.set()
            try:
                if document is not None:
                    document.Close(SaveChanges=False)
            except Exception:
                pass

        timer = threading.Timer(self.timeout_seconds, _timeout_killer)
        try:
            timer.start()
            document = self.word_app.Documents.Open(
                os.path.abspath(source_path),
                ReadOnly=True,
                AddToRecentFiles=False,
                Visible=False,
                ConfirmConversions=False,
            )
            # wdExportFormatPDF = 17
            document.ExportAsFixedFormat(os.path.abspath(output_pdf_path), 17)
            if timed_out.is_set():
                raise TimeoutError(f"Word conversion timed out after {self.timeout_seconds}s")
            return os.path.exists(output_pdf_path) and os.path.getsize(output_pdf_path) > 0
        except Exception as exc:
            record_warning(
                self.warnings,
                'word_to_pdf_failed',
                'Word-to-PDF conversion failed; skipping file',
                file=source_path,
                error=str(exc),
            )
            return False
        finally:
            timer.cancel()
            if document is not None and not timed_out.is_set():
                try:
                    document.Close(SaveChanges=False)
                except Exception:
                    pass


def convert_to_pdf(service: FileService, descriptor: FileDescriptor, converter) -> Optional[bytes]:
    """Convert a stored word-processing file and return the PDF bytes, or None."""
    work_dir = make_temp_dir("doc_to_pdf_")
    try:
        source_path = os.path.join(work_dir, descriptor.name)
        with open(source_path, "wb") as handle:
            handle.write(service.read_bytes(descriptor.id))
        output_path = os.path.join(work_dir, f"{uuid.uuid4().hex}.pdf")
        if not converter.convert_file(source_path, output_path):
            return None
        with open(output_path, "rb") as handle:
            return handle.read()
    finally:
        release_temp_dir(work_dir)


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def document_text(data: bytes) -> str:
    """All paragraph and table text of a .docx document."""
    document = Document(io.BytesIO(data))
    parts = [paragraph.text for paragraph in document.paragraphs]
    for table in document.tables:
        for row in table.rows:
            parts.extend(cell.text for cell in row.cells)
    return "\n".join(parts)


def get_candidate_and_centre_no(text: str) -> Tuple[Optional[str], Optional[str]]:
    """First standalone 4-digit (candidate) and 5-digit (centre) numbers in the text."""
    candidate = _CANDIDATE_NO.search(text)
    centre = _CENTRE_NO.search(text)
    return (candidate.group(0) if candidate else None, centre.group(0) if centre else None)


def format_student_name(name: str) -> str:
    """'Jane Doe' -> 'DO_J'."""
    parts = name.split()
    if len(parts) < 2:
        raise ValueError(f"Expected a first name and surname, got {name!r}")
    first_name, surname = parts[0], parts[-1]
    return f"{surname[:2].upper()}_{first_name[0].upper()}"


def create_submission_prefix(centre_no: str, candidate_no: str, name: str) -> str:
    return f"{centre_no}_{candidate_no}_{format_student_name(name)}"


def create_file_name(submission_prefix: str) -> str:
    return f"{FRONTSHEET_PREFIX}_{submission_prefix}"


# ---------------------------------------------------------------------------
# Table merge
# ---------------------------------------------------------------------------


def find_table_by_header(document, header_text: str):
    """Table whose first cell starts with `header_text`, ignoring case."""
    wanted = header_text.strip().lower()
    for table in document.tables:
        if not table.rows or not table.rows[0].cells:
            continue
        if table.cell(0, 0).text.strip().lower().startswith(wanted):
            return table
    return None


def _cell_content(cell) -> list:
    return [deepcopy(child) for child in cell._tc.iterchildren() if not child.tag.endswith('}tcPr')]


def extract_table(document, header_text: str) -> Optional[List[List[list]]]:
    """Cell contents (with formatting) of the table identified by its header text."""
    table = find_table_by_header(document, header_text)
    if table is None:
        return None
    return [[_cell_content(cell) for cell in row.cells] for row in table.rows]


def replace_table(document, header_text: str, cell_data, warnings: Optional[List[Dict]] = None) -> bool:
    """
    Overwrite the cells of the table identified by `header_text` with `cell_data`.
    Data that does not fit the target table is dropped with a warning.
    """
    if not cell_data:
        return False
    table = find_table_by_header(document, header_text)
    if table is None:
        return False

    rows = table.rows
    for r, row_data in enumerate(cell_data):
        if r >= len(rows):
            record_warning(
                warnings,
                'declaration_table_truncated',
                'Source table has more rows than the target; data truncated',
                table=header_text,
                source_rows=len(cell_data),
                target_rows=len(rows),
            )
            break
        cells = rows[r].cells
        for c, content in enumerate(row_data):
            if c >= len(cells):
                record_warning(
                    warnings,
                    'declaration_table_truncated',
                    'Source row has more cells than the target; data truncated',
                    table=header_text,
                    row=r,
                )
                break
            tc = cells[c]._tc
            for child in list(tc.iterchildren()):
                if not child.tag.endswith('}tcPr'):
                    tc.remove(child)
            for element in content:
                tc.append(deepcopy(element))
            if not content:
                cells[c].add_paragraph("")
    return True


# ---------------------------------------------------------------------------
# Declaration workflow
# ---------------------------------------------------------------------------


class DeclarationProcessor:
    """Builds each student's final declaration front sheet."""

    def __init__(
        self,
        service: FileService,
        roster: RosterService,
        merger: Optional[DocumentMerger] = None,
        converter_factory=None,
        collision_policy: CollisionPolicy = CollisionPolicy.SKIP,
        header_rows: int = STUDENT_SHEET_HEADER_ROWS,
    ):
        self.service = service
        self.roster = roster
        self.collision_policy = CollisionPolicy.parse(collision_policy)
        self.merger = merger or DocumentMerger(service, collision_policy=self.collision_policy)
        self.matcher = FileMatcher(service)
        self.converter_factory = converter_factory or WordToPdfConverter
        self.header_rows = header_rows

    def create_final_declaration_forms(
        self,
        course_id: str,
        assignment_title: str,
        student_rows: Sequence[Sequence],
        warnings: Optional[List[Dict]] = None,
    ) -> List[Dict]:
        """
        Create `0. Frontsheet_<centre>_<candidate>_<name>.pdf` in every student folder.

        Returns one entry per student row with the outcome and, when found, the
        submission prefix appended to the row.
        """
        assignment_id = self.roster.get_assignment_id(course_id, assignment_title)
        if not assignment_id:
            raise RosterError(f"Assignment \"{assignment_title}\" not found in course {course_id}.")

        available, reason = self.converter_factory.is_available()
        if not available:
            raise RuntimeError(f"Declaration processing requires document conversion. Details: {reason}")

        results: List[Dict] = []
        with self.converter_factory(warnings=warnings) as converter:
            for row in list(student_rows)[self.header_rows:]:
                student = StudentRecord.from_row(row)
                entry = {'student': student.display_name, 'row': list(row), 'success': False}
                if not student.source_container_id:
                    entry['message'] = "No folder ID found for this student."
                    results.append(entry)
                    continue
                try:
                    entry.update(self._process_student(student, course_id, assignment_id, converter, warnings))
                    if entry.get('submission_prefix'):
                        entry['row'] = list(row) + [entry['submission_prefix']]
                except Exception as exc:
                    print(f"Error processing declaration for {student.display_name}: {exc}")
                    entry['message'] = f"Error: {exc}"
                results.append(entry)
        return results

    def _find_in_folder(self, folder_id: str, suffix: str) -> Optional[FileDescriptor]:
        rule = MatchRule.build(suffix, MatchMode.SUFFIX, {MIME_DOCX})
        found = self.matcher.find_files(folder_id, rule)
        return found[0] if found else None

    def _first_word_attachment(self, submission: Dict) -> Optional[FileDescriptor]:
        for file_id in attachment_file_ids(submission):
            descriptor = self.service.get_file(file_id)
            if descriptor.mime_type == MIME_DOCX:
                return descriptor
        return None

    def _process_student(
        self,
        student: StudentRecord,
        course_id: str,
        assignment_id: str,
        converter,
        warnings: Optional[List[Dict]],
    ) -> Dict:
        folder_id = student.source_container_id
        marked_declaration = self._find_in_folder(folder_id, DECLARATION_SUFFIX)
        marking_grid = self._find_in_folder(folder_id, MARKING_GRID_SUFFIX)

        outcome: Dict = {'message': "No submission found."}
        for submission in self.roster.get_submissions(course_id, assignment_id, student.external_user_id):
            signed_declaration = self._first_word_attachment(submission)
            if signed_declaration is None:
                raise ValueError(f"No word-processing attachment found for {student.display_name}")

            text = document_text(self.service.read_bytes(signed_declaration.id))
            candidate_no, centre_no = get_candidate_and_centre_no(text)
            if not (candidate_no and centre_no):
                return {'message': "Could not find candidate and centre numbers in the declaration."}

            prefix = create_submission_prefix(centre_no, candidate_no, student.display_name)
            file_name = create_file_name(prefix)
            print(f"  Generated filename for {student.display_name}: {file_name}")

            merged_doc = self.merge_declarations(
                signed_declaration, marked_declaration, f"{file_name}.docx", folder_id, warnings
            )
            if merged_doc is None:
                return {'message': "Failed to merge declarations.", 'submission_prefix': prefix}

            result = self.create_final_declaration_pdf(
                merged_doc, marking_grid, f"{file_name}.pdf", folder_id, converter, warnings
            )
            outcome = {
                'success': result.success,
                'message': result.message,
                'output_file': result.output_file.id if result.output_file else None,
                'submission_prefix': prefix,
            }
        return outcome

    def merge_declarations(
        self,
        signed: Optional[FileDescriptor],
        marked: Optional[FileDescriptor],
        merged_name: str,
        folder_id: str,
        warnings: Optional[List[Dict]] = None,
    ) -> Optional[FileDescriptor]:
        """
        Write a copy of the signed declaration with the marked copy's
        "Title of Task:" and "TOTAL" tables. With only one of the two files the
        copy is made from whichever exists.
        """
        base = signed or marked
        if base is None:
            print("Both declaration files are missing. Cannot proceed with merge.")
            return None

        if not self.service.prepare_target(folder_id, merged_name, self.collision_policy):
            record_warning(
                warnings,
                'declaration_exists',
                'Merged declaration already exists; not replaced',
                file=merged_name,
            )
            return None

        if not (signed and marked):
            return self.service.copy_file(base.id, folder_id, merged_name)

        source = Document(io.BytesIO(self.service.read_bytes(marked.id)))
        merged = Document(io.BytesIO(self.service.read_bytes(signed.id)))
        for header in (TITLE_TABLE_HEADER, TOTAL_TABLE_HEADER):
            data = extract_table(source, header)
            if data is None:
                record_warning(
                    warnings,
                    'declaration_table_missing',
                    'Table not found in the marked declaration; left unchanged',
                    file=marked.id,
                    table=header,
                )
                continue
            if not replace_table(merged, header, data, warnings):
                record_warning(
                    warnings,
                    'declaration_table_replace_failed',
                    'Could not replace table in the signed declaration',
                    file=signed.id,
                    table=header,
                )
                return None

        buffer = io.BytesIO()
        merged.save(buffer)
        return self.service.create_file(folder_id, buffer.getvalue(), merged_name)

    def create_final_declaration_pdf(
        self,
        merged_declaration: FileDescriptor,
        marking_grid: Optional[FileDescriptor],
        output_name: str,
        folder_id: str,
        converter,
        warnings: Optional[List[Dict]] = None,
    ):
        """Convert the declaration and marking grid to PDF and merge them."""
        temp_pdfs: List[FileDescriptor] = []
        try:
            for document in (merged_declaration, marking_grid):
                if document is None:
                    continue
                pdf_bytes = convert_to_pdf(self.service, document, converter)
                if pdf_bytes is None:
                    record_warning(
                        warnings,
                        'declaration_conversion_failed',
                        'Could not convert document to PDF; left out of the front sheet',
                        file=document.id,
                    )
                    continue
                temp_name = f"~declaration_{uuid.uuid4().hex[:12]}.pdf"
                temp_pdfs.append(self.service.create_file(folder_id, pdf_bytes, temp_name))
            return self.merger.merge(temp_pdfs, output_name, folder_id, warnings=warnings)
        finally:
            for temp_pdf in temp_pdfs:
                self.service.trash_file(temp_pdf.id)

