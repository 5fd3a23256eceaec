"""
Sample Assembler Engine - Core merging logic
Finds student PDFs by name rules and concatenates them into one PDF per category
"""

import atexit
import io
import json
import os
import shutil
import tempfile
import threading
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from storage import (
    MIME_PDF,
    CollisionPolicy,
    FileDescriptor,
    FileService,
    OutputExistsError,
    StorageError,
    check_entry_name,
    resolve_container,
)

# PDF handling
from pypdf import PdfReader, PdfWriter

# Image handling (for converting images masquerading as PDFs)
try:
    from PIL import Image
    HAS_PIL = True
except ImportError:
    HAS_PIL = False

DEFAULT_BATCH_SIZE = 5
DEFAULT_DESTINATION_NAME = "MergedPDFs"
# The Student Info sheet carries a single "Name / User ID / Folder ID" header row.
STUDENT_SHEET_HEADER_ROWS = 1
TEMP_BATCH_PREFIX = "~merge_batch_"

# Module-level tracking of temp dirs for atexit cleanup if process is killed.
_active_temp_dirs: Set[str] = set()
_active_temp_dirs_lock = threading.Lock()


def _atexit_cleanup_temp_dirs():
    """Last-resort cleanup of temp dirs when the process exits."""
    with _active_temp_dirs_lock:
        for d in list(_active_temp_dirs):
            shutil.rmtree(d, ignore_errors=True)
        _active_temp_dirs.clear()


atexit.register(_atexit_cleanup_temp_dirs)


def record_warning(warnings: Optional[List[Dict]], code: str, message: str, **context) -> None:
    """Append a structured warning when a warning collector is provided."""
    if warnings is None:
        return
    warning = {'code': code, 'message': message}
    warning.update(context)
    warnings.append(warning)


def safe_progress(callback, *args) -> None:
    """Call a progress callback, swallowing exceptions to avoid crashing the run."""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        pass


def make_temp_dir(prefix: str) -> str:
    """Create a temporary directory that is removed at exit if the caller forgets."""
    path = tempfile.mkdtemp(prefix=prefix)
    with _active_temp_dirs_lock:
        _active_temp_dirs.add(path)
    return path


def release_temp_dir(path: str) -> None:
    shutil.rmtree(path, ignore_errors=True)
    with _active_temp_dirs_lock:
        _active_temp_dirs.discard(path)


class RunLogger:
    """Persist run events to text and JSONL logs."""

    def __init__(
        self,
        logs_dir: Optional[str],
        run_id: str,
        enabled: bool = True,
        privacy_mode: str = "redacted",
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self.enabled = enabled and bool(logs_dir)
        self.privacy_mode = privacy_mode
        self.run_id = run_id
        self.logs_dir = logs_dir
        self.event_callback = event_callback
        self.text_log_path = os.path.join(logs_dir, f"run_{run_id}.log") if logs_dir else None
        self.jsonl_log_path = os.path.join(logs_dir, f"run_{run_id}.jsonl") if logs_dir else None
        self._text_handle = None
        self._jsonl_handle = None
        self.open_error: Optional[str] = None

        if self.enabled:
            try:
                os.makedirs(self.logs_dir, exist_ok=True)
                self._text_handle = open(self.text_log_path, "a", encoding="utf-8")
                self._jsonl_handle = open(self.jsonl_log_path, "a", encoding="utf-8")
            except OSError as exc:
                # Run continues with the event callback only.
                self.close()
                self.enabled = False
                self.open_error = str(exc)
                self.text_log_path = None
                self.jsonl_log_path = None

    def close(self) -> None:
        for handle in (self._text_handle, self._jsonl_handle):
            if handle is not None:
                try:
                    handle.close()
                except Exception:
                    pass
        self._text_handle = None
        self._jsonl_handle = None

    def _redact_value(self, key: str, value):
        if self.privacy_mode != "redacted":
            return value
        if isinstance(value, str) and key.lower() in {"file", "source", "destination", "container", "path"}:
            return value.replace("\\", "/").rsplit("/", 1)[-1]
        return value

    def _sanitize_context(self, context: Dict) -> Dict:
        return {key: self._redact_value(key, value) for key, value in context.items()}

    def log(self, level: str, event: str, message: str, **context) -> None:
        if not self.enabled and self.event_callback is None:
            return
        timestamp = datetime.now().isoformat()
        safe_context = self._sanitize_context(context)
        payload = {
            "ts": timestamp,
            "run_id": self.run_id,
            "level": level.upper(),
            "event": event,
            "message": message,
            "context": safe_context,
        }
        if self._jsonl_handle is not None:
            self._jsonl_handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
            self._jsonl_handle.flush()

        if self._text_handle is not None:
            text_context = ""
            if safe_context:
                context_parts = [f"{key}={value}" for key, value in sorted(safe_context.items())]
                text_context = " | " + ", ".join(context_parts)
            self._text_handle.write(f"[{timestamp}] {level.upper()} {event}: {message}{text_context}\n")
            self._text_handle.flush()

        if self.event_callback:
            try:
                self.event_callback(payload)
            except Exception:
                pass

    def sync_warnings(self, warnings: List[Dict], cursor: int) -> int:
        """Write warnings recorded since `cursor` to the log; returns the new cursor."""
        while cursor < len(warnings):
            warning = warnings[cursor]
            context = {
                key: value
                for key, value in warning.items()
                if key not in {"code", "message"}
            }
            self.log("warning", warning.get("code", "warning"), warning.get("message", ""), **context)
            cursor += 1
        return cursor


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


class MatchMode(str, Enum):
    PREFIX = "prefix"
    SUFFIX = "suffix"
    CONTAINS = "contains"

    @classmethod
    def parse(cls, value) -> "MatchMode":
        """Parse a mode name; anything unrecognised matches anywhere in the name."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.CONTAINS


@dataclass(frozen=True)
class MatchRule:
    substrings: Tuple[str, ...]
    mode: MatchMode = MatchMode.PREFIX
    mime_filter: Optional[FrozenSet[str]] = None
    recursive: bool = False

    @classmethod
    def build(cls, substrings, mode=MatchMode.PREFIX, mime_filter=None, recursive=False) -> "MatchRule":
        if isinstance(substrings, str):
            substrings = [substrings]
        return cls(
            substrings=tuple(substrings),
            mode=MatchMode.parse(mode),
            mime_filter=frozenset(mime_filter) if mime_filter else None,
            recursive=bool(recursive),
        )


@dataclass(frozen=True)
class Category:
    label: str
    rule: MatchRule

    @property
    def output_name(self) -> str:
        return f"{self.label}.pdf"


@dataclass(frozen=True)
class MergeJob:
    inputs: Tuple[FileDescriptor, ...]
    output_name: str
    destination_container_id: Optional[str] = None


@dataclass(frozen=True)
class MergeResult:
    success: bool
    message: str
    output_file: Optional[FileDescriptor] = None
    invalid_inputs: Tuple[Dict, ...] = ()
    failed_inputs: Tuple[Dict, ...] = ()
    skipped: bool = False
    page_count: Optional[int] = None

    @property
    def status(self) -> str:
        if self.success:
            return "merged"
        return "skipped" if self.skipped else "failed"

    def to_dict(self) -> Dict:
        return {
            "status": self.status,
            "message": self.message,
            "output_file": self.output_file.id if self.output_file else None,
            "page_count": self.page_count,
            "invalid_inputs": list(self.invalid_inputs),
            "failed_inputs": list(self.failed_inputs),
        }


@dataclass(frozen=True)
class CategoryResult:
    label: str
    result: MergeResult


@dataclass(frozen=True)
class StudentRecord:
    display_name: str
    external_user_id: str
    source_container_id: str
    destination_container_name: Optional[str] = None

    @classmethod
    def from_row(cls, row: Sequence[Any]) -> "StudentRecord":
        cells = [("" if cell is None else str(cell).strip()) for cell in row]
        cells.extend([""] * (4 - len(cells)))
        return cls(
            display_name=cells[0],
            external_user_id=cells[1],
            source_container_id=cells[2],
            destination_container_name=cells[3] or None,
        )


@dataclass
class StudentMergeReport:
    student: StudentRecord
    category_results: List[CategoryResult] = field(default_factory=list)
    output_container_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


class GroupingTableError(ValueError):
    """Raised when the category grouping table cannot be used."""


# ---------------------------------------------------------------------------
# File matching
# ---------------------------------------------------------------------------


class FileMatcher:
    """Finds files in a container whose names match a list of substrings."""

    def __init__(self, service: FileService):
        self.service = service

    @staticmethod
    def matches(name: str, substring: str, mode: MatchMode) -> bool:
        if mode is MatchMode.PREFIX:
            return name.startswith(substring)
        if mode is MatchMode.SUFFIX:
            return name.endswith(substring)
        return substring in name

    def _collect_files(self, container_id: str, recursive: bool, excluded: Set[str]) -> List[FileDescriptor]:
        files = list(self.service.list_files(container_id))
        if recursive:
            for child in self.service.list_subcontainers(container_id):
                if child in excluded:
                    continue
                files.extend(self._collect_files(child, recursive, excluded))
        return files

    def find_files(
        self,
        container_id: str,
        rule: MatchRule,
        exclude: Iterable[str] = (),
        warnings: Optional[List[Dict]] = None,
    ) -> List[FileDescriptor]:
        """
        Return matching files, deduplicated by id, in discovery order.

        Substrings are tried in the order given and each one scans every file,
        so the first substring to claim a file decides its position.
        """
        if not rule.substrings:
            raise ValueError("A match rule needs at least one substring")

        try:
            all_files = self._collect_files(container_id, rule.recursive, set(exclude))
        except Exception as exc:
            record_warning(
                warnings,
                'match_traversal_failed',
                'Could not list files for matching; treating container as empty',
                container=container_id,
                error=str(exc),
            )
            print(f"Warning: Could not search container {container_id!r}: {exc}")
            return []

        matching: List[FileDescriptor] = []
        seen: Set[str] = set()
        for substring in rule.substrings:
            for descriptor in all_files:
                if descriptor.id in seen:
                    continue
                if not self.matches(descriptor.name, substring, rule.mode):
                    continue
                if rule.mime_filter and descriptor.mime_type not in rule.mime_filter:
                    continue
                seen.add(descriptor.id)
                matching.append(descriptor)
        return matching


# ---------------------------------------------------------------------------
# PDF merging
# ---------------------------------------------------------------------------


class DocumentMerger:
    """Concatenates the pages of several PDFs into one stored PDF."""

    def __init__(
        self,
        service: FileService,
        batch_size: int = DEFAULT_BATCH_SIZE,
        collision_policy: CollisionPolicy = CollisionPolicy.SKIP,
    ):
        if int(batch_size) < 2:
            raise ValueError("batch_size must be at least 2")
        self.service = service
        self.batch_size = int(batch_size)
        self.collision_policy = CollisionPolicy.parse(collision_policy)

    def validate_files(self, files: Sequence[FileDescriptor]) -> Tuple[List[FileDescriptor], List[Dict]]:
        """Split inputs into PDFs that can be merged and rejected entries with a reason."""
        valid_files: List[FileDescriptor] = []
        invalid_files: List[Dict] = []
        for descriptor in files:
            try:
                current = self.service.get_file(descriptor.id)
            except Exception as exc:
                invalid_files.append({
                    'id': descriptor.id,
                    'name': descriptor.name,
                    'reason': 'fetch_error',
                    'error': str(exc),
                })
                continue
            if current.mime_type == MIME_PDF:
                valid_files.append(current)
            else:
                invalid_files.append({
                    'id': current.id,
                    'name': current.name,
                    'reason': 'wrong_type',
                    'mime_type': current.mime_type,
                })
        return valid_files, invalid_files

    def merge_job(self, job: MergeJob, warnings: Optional[List[Dict]] = None) -> MergeResult:
        return self.merge(list(job.inputs), job.output_name, job.destination_container_id, warnings=warnings)

    def merge(
        self,
        files: Sequence[FileDescriptor],
        output_name: str,
        destination_container_id: Optional[str] = None,
        warnings: Optional[List[Dict]] = None,
    ) -> MergeResult:
        """
        Merge PDF files into a single PDF named `output_name`.

        Args:
            files: Ordered file descriptors; page order follows this order
            output_name: Name of the merged file in the destination
            destination_container_id: Where to write; the store default when None
            warnings: Optional collector for structured warnings

        Returns:
            MergeResult describing the output, skip or failure
        """
        valid_files, invalid_files = self.validate_files(files)
        for invalid in invalid_files:
            record_warning(
                warnings,
                'merge_input_invalid',
                'Input is not a mergeable PDF; excluded from merge',
                file=invalid.get('name') or invalid['id'],
                reason=invalid['reason'],
            )
        invalid_inputs = tuple(invalid_files)

        if not valid_files:
            return MergeResult(
                success=False,
                message="No valid files to merge",
                invalid_inputs=invalid_inputs,
            )

        failed_inputs: List[Dict] = []
        try:
            destination = resolve_container(self.service, destination_container_id)
            if (
                self.collision_policy is not CollisionPolicy.REPLACE
                and self.service.find_files_by_name(destination, output_name)
            ):
                if self.collision_policy is CollisionPolicy.ERROR:
                    raise OutputExistsError(f"File \"{output_name}\" already exists in the destination.")
                print(f"    Skipping replacement for existing file \"{output_name}\".")
                return self._skipped(output_name, invalid_inputs)

            if len(valid_files) == 1:
                if not self.service.prepare_target(destination, output_name, self.collision_policy):
                    return self._skipped(output_name, invalid_inputs)
                output_file = self.service.copy_file(valid_files[0].id, destination, output_name)
                print(f"    Copied: {output_name} (single PDF)")
                return MergeResult(
                    success=True,
                    message=f"Copied single PDF as {output_name}",
                    output_file=output_file,
                    invalid_inputs=invalid_inputs,
                )

            data, total_pages = self._assemble(valid_files, destination, warnings, failed_inputs)
            if not total_pages:
                record_warning(
                    warnings,
                    'pdf_empty_output',
                    'No readable pages were found in any input; nothing written',
                    file=output_name,
                    file_count=len(valid_files),
                )
                return MergeResult(
                    success=False,
                    message="No readable pages found in the input PDFs",
                    invalid_inputs=invalid_inputs,
                    failed_inputs=tuple(failed_inputs),
                )

            if not self.service.prepare_target(destination, output_name, self.collision_policy):
                return self._skipped(output_name, invalid_inputs, failed_inputs)
            output_file = self.service.create_file(destination, data, output_name)
        except OutputExistsError as exc:
            return MergeResult(
                success=False,
                message=str(exc),
                invalid_inputs=invalid_inputs,
                failed_inputs=tuple(failed_inputs),
            )
        except Exception as exc:
            record_warning(
                warnings,
                'merge_failed',
                'PDF merge failed',
                file=output_name,
                error=str(exc),
            )
            return MergeResult(
                success=False,
                message=f"Error merging PDFs: {exc}",
                invalid_inputs=invalid_inputs,
                failed_inputs=tuple(failed_inputs),
            )

        merged_count = len(valid_files) - len(failed_inputs)
        print(f"    Created: {output_name} ({merged_count} PDFs, {total_pages} pages)")
        return MergeResult(
            success=True,
            message=f"Successfully merged {merged_count} PDFs",
            output_file=output_file,
            invalid_inputs=invalid_inputs,
            failed_inputs=tuple(failed_inputs),
            page_count=total_pages,
        )

    @staticmethod
    def _skipped(output_name: str, invalid_inputs, failed_inputs=()) -> MergeResult:
        return MergeResult(
            success=False,
            skipped=True,
            message=f"Skipped: \"{output_name}\" already exists",
            invalid_inputs=tuple(invalid_inputs),
            failed_inputs=tuple(failed_inputs),
        )

    def _assemble(
        self,
        files: List[FileDescriptor],
        destination: str,
        warnings: Optional[List[Dict]],
        failed_inputs: List[Dict],
    ) -> Tuple[Optional[bytes], int]:
        """Return merged bytes and page count, batching through temporary files."""
        if len(files) <= self.batch_size:
            return self._concatenate(files, warnings, failed_inputs)

        temp_files: List[FileDescriptor] = []
        try:
            for batch_num, start in enumerate(range(0, len(files), self.batch_size), 1):
                batch = files[start:start + self.batch_size]
                data, pages = self._concatenate(batch, warnings, failed_inputs)
                if not pages:
                    record_warning(
                        warnings,
                        'pdf_empty_batch',
                        'Skipped PDF batch because no readable pages were found',
                        batch=batch_num,
                        file_count=len(batch),
                    )
                    continue
                temp_name = f"{TEMP_BATCH_PREFIX}{uuid.uuid4().hex[:12]}_{batch_num}.pdf"
                temp_files.append(self.service.create_file(destination, data, temp_name))

            if not temp_files:
                return None, 0
            return self._assemble(temp_files, destination, warnings, failed_inputs)
        finally:
            for temp_file in temp_files:
                try:
                    self.service.trash_file(temp_file.id)
                except Exception as exc:
                    record_warning(
                        warnings,
                        'batch_cleanup_failed',
                        'Could not remove temporary batch file',
                        file=temp_file.id,
                        error=str(exc),
                    )

    def _concatenate(
        self,
        files: Sequence[FileDescriptor],
        warnings: Optional[List[Dict]],
        failed_inputs: List[Dict],
    ) -> Tuple[Optional[bytes], int]:
        staged: List[PdfWriter] = []

        for descriptor in files:
            pages = self._load_pages(descriptor, warnings, failed_inputs)
            if not pages:
                continue
            # Pages of one file land in the output together or not at all.
            staging = PdfWriter()
            try:
                for page in pages:
                    staging.add_page(page)
            except Exception as exc:
                failed_inputs.append({'id': descriptor.id, 'name': descriptor.name, 'error': str(exc)})
                record_warning(
                    warnings,
                    'pdf_copy_failed',
                    'Could not copy pages from PDF; this file is left out of the merge',
                    file=descriptor.id,
                    error=str(exc),
                )
                print(f"Warning: Could not merge {descriptor.name}: {exc}")
            else:
                staged.append(staging)

        if not staged:
            return None, 0

        writer = PdfWriter()
        total_pages_added = 0
        for staging in staged:
            for page in staging.pages:
                writer.add_page(page)
                total_pages_added += 1

        buffer = io.BytesIO()
        writer.write(buffer)
        return buffer.getvalue(), total_pages_added

    def _load_pages(
        self,
        descriptor: FileDescriptor,
        warnings: Optional[List[Dict]],
        failed_inputs: List[Dict],
    ) -> list:
        """Decode one stored PDF into its pages; failures are recorded and yield no pages."""
        try:
            data = self.service.read_bytes(descriptor.id)
        except Exception as exc:
            failed_inputs.append({'id': descriptor.id, 'name': descriptor.name, 'error': str(exc)})
            record_warning(
                warnings,
                'pdf_fetch_failed',
                'Could not read PDF bytes from the store',
                file=descriptor.id,
                error=str(exc),
            )
            return []

        try:
            reader = PdfReader(io.BytesIO(data))
            if reader.is_encrypted:
                # Try to decrypt with empty password (handles "view-only" PDFs)
                if not reader.decrypt(""):
                    failed_inputs.append({'id': descriptor.id, 'name': descriptor.name, 'error': 'encrypted'})
                    record_warning(
                        warnings,
                        'pdf_encrypted',
                        'PDF is password-protected and cannot be merged; skipping',
                        file=descriptor.id,
                    )
                    return []
            pages = list(reader.pages)
        except Exception as exc:
            # File may be an image with a .pdf name
            pdf_bytes = self._try_convert_image_to_pdf(data)
            pages = None
            if pdf_bytes:
                try:
                    pages = list(PdfReader(io.BytesIO(pdf_bytes)).pages)
                    print(f"    Converted image to PDF: {descriptor.name}")
                except Exception:
                    pages = None
            if pages is None:
                failed_inputs.append({'id': descriptor.id, 'name': descriptor.name, 'error': str(exc)})
                record_warning(
                    warnings,
                    'pdf_unreadable',
                    'Could not read PDF file and fallback conversion failed',
                    file=descriptor.id,
                    error=str(exc),
                )
                print(f"Warning: Could not merge {descriptor.name}: {exc}")
                return []

        if not pages:
            record_warning(
                warnings,
                'pdf_no_pages',
                'PDF contained zero readable pages',
                file=descriptor.id,
            )
        return pages

    @staticmethod
    def _try_convert_image_to_pdf(data: bytes) -> Optional[bytes]:
        """
        Attempt to open bytes as an image and convert them to PDF bytes.
        Returns PDF bytes on success, or None if the data is not a valid image.
        """
        if not HAS_PIL:
            return None
        try:
            img = Image.open(io.BytesIO(data))
            # Convert to RGB so it can be saved as PDF (handles RGBA, P, etc.)
            if img.mode not in ('RGB', 'L'):
                img = img.convert('RGB')
            pdf_bytes = io.BytesIO()
            img.save(pdf_bytes, format='PDF', resolution=150)
            return pdf_bytes.getvalue()
        except Exception:
            return None


# ---------------------------------------------------------------------------
# Category grouping
# ---------------------------------------------------------------------------


def _cell_text(value) -> str:
    return "" if value is None else str(value).strip()


def parse_grouping_table(
    table: Sequence[Sequence[Any]],
    recursive: bool = False,
    mime_types: Iterable[str] = (MIME_PDF,),
) -> List[Category]:
    """
    Turn a column-oriented grouping table into categories.

    Row 0 holds the category labels and the rows below hold name prefixes.
    Unlabelled columns and labelled columns without prefixes are ignored.
    """
    if not table or len(table) < 2:
        raise GroupingTableError("Prefixes sheet is empty or has only headers.")

    headers = [_cell_text(value) for value in table[0]]
    categories: List[Category] = []
    seen_labels: Set[str] = set()

    for col, label in enumerate(headers):
        if not label:
            continue
        prefixes = []
        for row in table[1:]:
            if col < len(row) and _cell_text(row[col]):
                prefixes.append(_cell_text(row[col]))
        if not prefixes:
            continue
        if label in seen_labels:
            raise GroupingTableError(
                f"Category \"{label}\" appears more than once; its outputs would overwrite each other."
            )
        try:
            check_entry_name(f"{label}.pdf")
        except StorageError as exc:
            raise GroupingTableError(f"Category \"{label}\" cannot be used as an output name: {exc}") from None
        seen_labels.add(label)
        categories.append(
            Category(
                label=label,
                rule=MatchRule.build(prefixes, MatchMode.PREFIX, mime_types, recursive),
            )
        )
    return categories


class CategoryGrouper:
    """Merges a folder's PDFs into one output per category."""

    def __init__(
        self,
        service: FileService,
        matcher: Optional[FileMatcher] = None,
        merger: Optional[DocumentMerger] = None,
    ):
        self.service = service
        self.matcher = matcher or FileMatcher(service)
        self.merger = merger or DocumentMerger(service)

    def run(
        self,
        source_container_id: str,
        grouping_table: Sequence[Sequence[Any]],
        destination_container_id: Optional[str] = None,
        recursive: bool = False,
        warnings: Optional[List[Dict]] = None,
    ) -> List[CategoryResult]:
        categories = parse_grouping_table(grouping_table, recursive=recursive)
        return self.run_categories(source_container_id, categories, destination_container_id, warnings)

    def run_categories(
        self,
        source_container_id: str,
        categories: Sequence[Category],
        destination_container_id: Optional[str] = None,
        warnings: Optional[List[Dict]] = None,
    ) -> List[CategoryResult]:
        results: List[CategoryResult] = []
        exclude = [destination_container_id] if destination_container_id else []

        for category in categories:
            print(f"  Category \"{category.label}\" with prefixes: {', '.join(category.rule.substrings)}")
            files = self.matcher.find_files(source_container_id, category.rule, exclude=exclude, warnings=warnings)
            if not files:
                results.append(CategoryResult(
                    label=category.label,
                    result=MergeResult(
                        success=False,
                        message="No matching PDF files found for this category.",
                    ),
                ))
                continue

            result = self.merger.merge(files, category.output_name, destination_container_id, warnings=warnings)
            results.append(CategoryResult(label=category.label, result=result))
        return results


# ---------------------------------------------------------------------------
# Per-student coordination
# ---------------------------------------------------------------------------


class StudentMergeCoordinator:
    """Coordinates category merges for every student row"""

    def __init__(
        self,
        service: FileService,
        grouping_table: Sequence[Sequence[Any]],
        batch_size: int = DEFAULT_BATCH_SIZE,
        collision_policy: CollisionPolicy = CollisionPolicy.SKIP,
        folder_collision_policy: CollisionPolicy = CollisionPolicy.SKIP,
        header_rows: int = STUDENT_SHEET_HEADER_ROWS,
        default_destination_name: str = DEFAULT_DESTINATION_NAME,
        logs_dir: Optional[str] = None,
        enable_detailed_logging: bool = True,
        log_privacy_mode: str = "redacted",
    ):
        self.service = service
        self.grouping_table = grouping_table
        self.merger = DocumentMerger(service, batch_size=batch_size, collision_policy=collision_policy)
        self.matcher = FileMatcher(service)
        self.grouper = CategoryGrouper(service, matcher=self.matcher, merger=self.merger)
        self.folder_collision_policy = CollisionPolicy.parse(folder_collision_policy)
        self.header_rows = max(0, int(header_rows))
        self.default_destination_name = default_destination_name
        self.logs_dir = logs_dir
        self.enable_detailed_logging = enable_detailed_logging
        self.log_privacy_mode = log_privacy_mode
        self.last_log_path: Optional[str] = None

    def run_all(
        self,
        student_rows: Sequence[Sequence[Any]],
        destination_parent_container_id: Optional[str] = None,
        recursive: bool = False,
        progress_callback=None,
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        cancel_event: Optional[threading.Event] = None,
        warnings: Optional[List[Dict]] = None,
    ) -> List[StudentMergeReport]:
        """
        Merge every student's PDFs by category.

        Args:
            student_rows: Rows of [name, user id, folder id, destination name?], headers included
            destination_parent_container_id: Parent for per-student output folders;
                each student's own folder when None
            recursive: Whether category matching descends into subfolders
            progress_callback: Optional callback function(current, total, message)
            cancel_event: Optional threading.Event; set to stop before the next student

        Returns:
            One StudentMergeReport per student row, in row order
        """
        categories = parse_grouping_table(self.grouping_table, recursive=recursive)

        run_id = datetime.now().strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:8]
        run_logger = RunLogger(
            logs_dir=self.logs_dir,
            run_id=run_id,
            enabled=self.enable_detailed_logging,
            privacy_mode=self.log_privacy_mode,
            event_callback=event_callback,
        )
        self.last_log_path = run_logger.text_log_path
        warnings = warnings if warnings is not None else []
        warning_cursor = len(warnings)
        if run_logger.open_error:
            record_warning(
                warnings,
                'run_log_unavailable',
                'Could not open run log files; continuing without them',
                path=self.logs_dir,
                error=run_logger.open_error,
            )
            print(f"Warning: Could not open run log in {self.logs_dir}: {run_logger.open_error}")

        rows = list(student_rows)[self.header_rows:]
        reports: List[StudentMergeReport] = []
        run_logger.log("info", "run_start", "Starting PDF merges", students=len(rows), categories=len(categories))

        try:
            for index, row in enumerate(rows, 1):
                if cancel_event is not None and cancel_event.is_set():
                    run_logger.log("warning", "run_cancelled", "Merge cancelled by user")
                    break

                student = StudentRecord.from_row(row)
                label = student.display_name or f"Row {index + self.header_rows}"
                report = self._run_student(student, label, categories, destination_parent_container_id, warnings)
                reports.append(report)

                if report.success:
                    for category_result in report.category_results:
                        run_logger.log(
                            "info" if category_result.result.success else "warning",
                            f"category_{category_result.result.status}",
                            category_result.result.message,
                            student=label,
                            category=category_result.label,
                        )
                else:
                    run_logger.log("error", "student_failed", report.error, student=label)
                warning_cursor = run_logger.sync_warnings(warnings, warning_cursor)
                safe_progress(progress_callback, index, len(rows), f"Processed {label}")

            run_logger.log("info", "run_end", f"Processed PDF merges for {len(reports)} students.")
        finally:
            run_logger.close()

        return reports

    def _run_student(
        self,
        student: StudentRecord,
        label: str,
        categories: Sequence[Category],
        destination_parent_container_id: Optional[str],
        warnings: List[Dict],
    ) -> StudentMergeReport:
        if not student.source_container_id:
            print(f"No folder ID found for {label}")
            return StudentMergeReport(student=student, error="No folder ID found for this student.")

        try:
            if not self.service.container_exists(student.source_container_id):
                raise StorageError(f"Folder not found: {student.source_container_id}")
            parent = destination_parent_container_id or student.source_container_id
            output_name = student.destination_container_name or self.default_destination_name
            output_container_id = self.service.ensure_container(parent, output_name, self.folder_collision_policy)

            print(f"\nProcessing student: {label}, merged PDFs go to: {output_container_id}")
            results = self.grouper.run_categories(
                student.source_container_id,
                categories,
                output_container_id,
                warnings=warnings,
            )
            return StudentMergeReport(
                student=student,
                category_results=results,
                output_container_id=output_container_id,
            )
        except Exception as exc:
            print(f"Error processing student {label}: {exc}")
            record_warning(
                warnings,
                'student_failed',
                'Student processing stopped by an error',
                student=label,
                error=str(exc),
                traceback=traceback.format_exc(),
            )
            return StudentMergeReport(student=student, error=f"Error: {exc}")

    @staticmethod
    def summarize(reports: Sequence[StudentMergeReport]) -> Dict:
        """Build a manifest-style summary of a run."""
        summary = {
            'students_total': len(reports),
            'students_failed': 0,
            'outputs_total': 0,
            'categories_skipped': 0,
            'categories_failed': 0,
        }
        students = []
        for report in reports:
            if not report.success:
                summary['students_failed'] += 1
            for category_result in report.category_results:
                status = category_result.result.status
                if status == "merged":
                    summary['outputs_total'] += 1
                elif status == "skipped":
                    summary['categories_skipped'] += 1
                else:
                    summary['categories_failed'] += 1
            students.append({
                'student': report.student.display_name,
                'success': report.success,
                'error': report.error,
                'output_container': report.output_container_id,
                'categories': {
                    category_result.label: category_result.result.to_dict()
                    for category_result in report.category_results
                },
            })
        return {
            'timestamp': datetime.now().isoformat(),
            'summary': summary,
            'students': students,
        }
