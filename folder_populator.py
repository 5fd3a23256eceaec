"""
Folder Populator - course setup workflows
Rosters a course into the workbook, creates a folder per member, copies template
documents into every folder and collects submitted attachments.
"""

from typing import Dict, List, Optional, Sequence

from declarations import WordToPdfConverter, convert_to_pdf
from roster import RosterError, RosterService, attachment_file_ids
from sample_engine import STUDENT_SHEET_HEADER_ROWS, StudentRecord, record_warning
from sheets import COURSE_SHEET, STUDENT_HEADERS, STUDENT_SHEET, Workbook
from storage import (
    MIME_PDF,
    MIME_ZIP,
    WORD_PROCESSING_MIME_TYPES,
    CollisionPolicy,
    FileDescriptor,
    FileService,
    OutputExistsError,
)


def student_initials(name: str) -> str:
    """First letter of the first name and first two of the surname, upper-cased."""
    parts = name.split()
    if len(parts) < 2:
        raise ValueError(f"Expected a first name and surname, got {name!r}")
    return f"{parts[0][:1]}{parts[-1][:2]}".upper()


def _new_summary() -> Dict:
    return {'copied': 0, 'skipped': 0, 'failed': 0, 'warnings': []}


class FolderPopulator:
    """Course setup workflows driven by the workbook and the roster."""

    def __init__(
        self,
        service: FileService,
        roster: RosterService,
        workbook: Workbook,
        collision_policy: CollisionPolicy = CollisionPolicy.SKIP,
        converter_factory=None,
        header_rows: int = STUDENT_SHEET_HEADER_ROWS,
    ):
        self.service = service
        self.roster = roster
        self.workbook = workbook
        self.collision_policy = CollisionPolicy.parse(collision_policy)
        self.converter_factory = converter_factory or WordToPdfConverter
        self.header_rows = header_rows

    def _write(self, summary: Dict, container_id: str, name: str, write) -> Optional[FileDescriptor]:
        """Apply the collision policy, then run `write()`; outcome is counted in `summary`."""
        try:
            if not self.service.prepare_target(container_id, name, self.collision_policy):
                summary['skipped'] += 1
                return None
            descriptor = write()
        except Exception as exc:
            summary['failed'] += 1
            record_warning(
                summary['warnings'],
                'output_exists' if isinstance(exc, OutputExistsError) else 'copy_failed',
                'Could not write file into student folder',
                file=name,
                container=container_id,
                error=str(exc),
            )
            print(f"Failed to write {name} to {container_id}: {exc}")
            return None
        summary['copied'] += 1
        return descriptor

    def initialize_roster(self, course_id: str, root_container_id: str) -> Dict:
        """
        Rewrite the Course Info and Student Info sheets for a course and create
        a folder per member under `root_container_id`.
        """
        summary = _new_summary()
        members = self.roster.get_members(course_id)
        self.workbook.write_sheet(COURSE_SHEET, [["Course ID:", course_id], ["Template File IDs"]])

        rows: List[List[str]] = [list(STUDENT_HEADERS)]
        for member in members:
            name = member.get("name", "")
            try:
                folder_id = self.service.ensure_container(root_container_id, name, self.collision_policy)
                summary['copied'] += 1
            except Exception as exc:
                folder_id = ""
                summary['failed'] += 1
                record_warning(
                    summary['warnings'],
                    'folder_create_failed',
                    'Could not create student folder',
                    student=name,
                    error=str(exc),
                )
                print(f"Could not create folder for {name}: {exc}")
            rows.append([name, member.get("userId", ""), folder_id])

        self.workbook.write_sheet(STUDENT_SHEET, rows)
        print(f"Wrote {len(members)} members for course {course_id}")
        return summary

    def populate_templates(self, student_rows: Optional[Sequence[Sequence]] = None) -> Dict:
        """Copy every template into each student folder as `<INITIALS>_<template name>`."""
        summary = _new_summary()
        template_ids = self.workbook.template_file_ids()
        if not template_ids:
            raise ValueError("No template file IDs found.")
        if student_rows is None:
            student_rows = self.workbook.student_rows()

        templates: List[FileDescriptor] = []
        for template_id in template_ids:
            try:
                templates.append(self.service.get_file(template_id))
            except Exception as exc:
                summary['failed'] += 1
                record_warning(
                    summary['warnings'],
                    'template_missing',
                    'Template file could not be found',
                    file=template_id,
                    error=str(exc),
                )

        for row in list(student_rows)[self.header_rows:]:
            student = StudentRecord.from_row(row)
            if not student.source_container_id:
                summary['skipped'] += 1
                continue
            try:
                initials = student_initials(student.display_name)
            except ValueError as exc:
                summary['failed'] += 1
                record_warning(summary['warnings'], 'student_name_invalid', str(exc), student=student.display_name)
                continue

            for template in templates:
                new_name = f"{initials}_{template.name}"
                copied = self._write(
                    summary,
                    student.source_container_id,
                    new_name,
                    lambda: self.service.copy_file(template.id, student.source_container_id, new_name),
                )
                if copied is not None:
                    print(f"Copied file {template.name} to {student.source_container_id} as {new_name}")
        return summary

    def harvest_attachments(
        self,
        assignment_title: str,
        prepend: str,
        student_rows: Optional[Sequence[Sequence]] = None,
        course_id: Optional[str] = None,
    ) -> Dict:
        """
        Copy each student's submitted attachments into their folder as
        `<prepend>_<name>`. Zip files are always copied; PDFs are copied when
        any were submitted, otherwise word-processing documents are converted.
        """
        summary = _new_summary()
        course_id = course_id or self.workbook.course_id()
        if not course_id:
            raise RosterError("No course ID found in the Course Info sheet.")
        assignment_id = self.roster.get_assignment_id(course_id, assignment_title)
        if not assignment_id:
            raise RosterError(f"Assignment \"{assignment_title}\" not found in course {course_id}.")
        if student_rows is None:
            student_rows = self.workbook.student_rows()

        converter = None
        try:
            for row in list(student_rows)[self.header_rows:]:
                student = StudentRecord.from_row(row)
                if not student.source_container_id:
                    print(f"No folder ID found for user {student.external_user_id}")
                    summary['skipped'] += 1
                    continue
                try:
                    submissions = self.roster.get_submissions(course_id, assignment_id, student.external_user_id)
                    for submission in submissions:
                        converter = self._harvest_submission(student, submission, prepend, summary, converter)
                except Exception as exc:
                    summary['failed'] += 1
                    record_warning(
                        summary['warnings'],
                        'student_failed',
                        'Could not process submissions for student',
                        student=student.display_name,
                        error=str(exc),
                    )
                    print(f"Error processing folder {student.source_container_id} for {student.display_name}: {exc}")
        finally:
            if converter is not None:
                converter.__exit__(None, None, None)
        return summary

    def _harvest_submission(self, student: StudentRecord, submission: Dict, prepend: str, summary: Dict, converter):
        pdf_files: List[FileDescriptor] = []
        word_files: List[FileDescriptor] = []
        zip_files: List[FileDescriptor] = []
        for file_id in attachment_file_ids(submission):
            try:
                descriptor = self.service.get_file(file_id)
            except Exception as exc:
                record_warning(
                    summary['warnings'],
                    'attachment_missing',
                    'Could not access attachment',
                    file=file_id,
                    error=str(exc),
                )
                continue
            if descriptor.mime_type == MIME_PDF:
                pdf_files.append(descriptor)
            elif descriptor.mime_type in WORD_PROCESSING_MIME_TYPES:
                word_files.append(descriptor)
            elif descriptor.mime_type == MIME_ZIP:
                zip_files.append(descriptor)

        folder_id = student.source_container_id
        for descriptor in zip_files + pdf_files:
            new_name = f"{prepend}_{descriptor.name}"
            self._write(
                summary,
                folder_id,
                new_name,
                lambda: self.service.copy_file(descriptor.id, folder_id, new_name),
            )

        if pdf_files or not word_files:
            return converter

        if converter is None:
            available, reason = self.converter_factory.is_available()
            if not available:
                summary['failed'] += len(word_files)
                record_warning(
                    summary['warnings'],
                    'conversion_unavailable',
                    'Document conversion is unavailable; word-processing attachments not copied',
                    student=student.display_name,
                    reason=reason,
                )
                return None
            converter = self.converter_factory(warnings=summary['warnings']).__enter__()

        for descriptor in word_files:
            stem = descriptor.name.rsplit(".", 1)[0]
            new_name = f"{prepend}_{stem}.pdf"
            pdf_bytes = convert_to_pdf(self.service, descriptor, converter)
            if pdf_bytes is None:
                summary['failed'] += 1
                continue
            self._write(
                summary,
                folder_id,
                new_name,
                lambda: self.service.create_file(folder_id, pdf_bytes, new_name),
            )
        return converter
