"""
Workbook of CSV sheets holding the roster, course details and category prefixes.
"""

import csv
import os
from typing import List, Optional, Sequence

STUDENT_SHEET = "Student Info"
COURSE_SHEET = "Course Info"
PREFIX_SHEET = "Prefixes"

STUDENT_HEADERS = ["Name", "User ID", "Folder ID"]


class Workbook:
    """A directory of `<sheet name>.csv` files."""

    def __init__(self, directory: str):
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def sheet_path(self, sheet_name: str) -> str:
        return os.path.join(self.directory, f"{sheet_name}.csv")

    def read_sheet(self, sheet_name: str) -> List[List[str]]:
        path = self.sheet_path(sheet_name)
        if not os.path.exists(path):
            return []
        with open(path, "r", encoding="utf-8-sig", newline="") as handle:
            return [row for row in csv.reader(handle)]

    def write_sheet(self, sheet_name: str, rows: Sequence[Sequence]) -> None:
        with open(self.sheet_path(sheet_name), "w", encoding="utf-8", newline="") as handle:
            csv.writer(handle).writerows(rows)

    def append_rows(self, sheet_name: str, rows: Sequence[Sequence]) -> None:
        with open(self.sheet_path(sheet_name), "a", encoding="utf-8", newline="") as handle:
            csv.writer(handle).writerows(rows)

    def student_rows(self) -> List[List[str]]:
        return self.read_sheet(STUDENT_SHEET)

    def prefix_rows(self) -> List[List[str]]:
        return self.read_sheet(PREFIX_SHEET)

    def course_id(self) -> Optional[str]:
        rows = self.read_sheet(COURSE_SHEET)
        if rows and len(rows[0]) > 1 and rows[0][1].strip():
            return rows[0][1].strip()
        return None

    def template_file_ids(self) -> List[str]:
        """Template ids are listed in the first column from the third row on."""
        return [
            row[0].strip()
            for row in self.read_sheet(COURSE_SHEET)[2:]
            if row and row[0].strip()
        ]
