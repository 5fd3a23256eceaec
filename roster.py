"""
Course roster access.
ClassroomExport reads a JSON export shaped like the course platform's REST
responses: courses with their students, teachers, course work and submissions.
"""

import json
from typing import Dict, Iterator, List, Optional


class RosterError(Exception):
    """Raised when the roster export cannot be read."""


class RosterService:
    """Interface to a course platform roster."""

    def list_courses(self) -> List[Dict]:
        raise NotImplementedError

    def get_members(self, course_id: str) -> List[Dict]:
        raise NotImplementedError

    def get_assignment_id(self, course_id: str, assignment_title: str) -> Optional[str]:
        raise NotImplementedError

    def get_submissions(self, course_id: str, assignment_id: str, user_id: str) -> List[Dict]:
        raise NotImplementedError

    def find_course_id(self, course_url: str) -> Optional[str]:
        for course in self.list_courses():
            if course.get("alternateLink") == course_url:
                return course.get("id")
        return None


class ClassroomExport(RosterService):
    """Roster loaded from a saved JSON export."""

    def __init__(self, path: str):
        self.path = path
        try:
            with open(path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as exc:
            raise RosterError(f"Could not read roster export {path}: {exc}") from exc
        self._courses = {str(course.get("id")): course for course in data.get("courses", [])}

    def _course(self, course_id: str) -> Dict:
        course = self._courses.get(str(course_id))
        if course is None:
            raise RosterError(f"Course {course_id} not found in roster export")
        return course

    def list_courses(self) -> List[Dict]:
        return list(self._courses.values())

    def get_members(self, course_id: str) -> List[Dict]:
        course = self._course(course_id)
        members = list(course.get("students", [])) + list(course.get("teachers", []))
        return [
            {
                "name": member.get("profile", {}).get("name", {}).get("fullName", ""),
                "userId": member.get("userId", ""),
            }
            for member in members
        ]

    def get_assignment_id(self, course_id: str, assignment_title: str) -> Optional[str]:
        for course_work in self._course(course_id).get("courseWork", []):
            if course_work.get("title") == assignment_title:
                return course_work.get("id")
        return None

    def get_submissions(self, course_id: str, assignment_id: str, user_id: str) -> List[Dict]:
        return [
            submission
            for submission in self._course(course_id).get("studentSubmissions", [])
            if submission.get("courseWorkId") == assignment_id and submission.get("userId") == user_id
        ]


def attachment_file_ids(submission: Dict) -> Iterator[str]:
    """Yield the stored-file ids attached to a submission."""
    attachments = submission.get("assignmentSubmission", {}).get("attachments") or []
    for attachment in attachments:
        drive_file = attachment.get("driveFile")
        if drive_file and drive_file.get("id"):
            yield drive_file["id"]
