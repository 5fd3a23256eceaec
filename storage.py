"""
Document store access for the sample assembler.
Defines the file descriptor handle, the storage interface the engine talks to,
the existing-file collision policy and a directory-backed implementation.
"""

import mimetypes
import os
import shutil
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

MIME_PDF = "application/pdf"
MIME_DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
MIME_DOC = "application/msword"
MIME_ZIP = "application/x-zip-compressed"
MIME_OCTET_STREAM = "application/octet-stream"

WORD_PROCESSING_MIME_TYPES = {MIME_DOCX, MIME_DOC}

_EXTENSION_MIME_TYPES = {
    ".pdf": MIME_PDF,
    ".docx": MIME_DOCX,
    ".doc": MIME_DOC,
    ".zip": MIME_ZIP,
}

TRASH_DIR_NAME = ".trash"


def guess_mime_type(name: str) -> str:
    """Return the mime type for a file name, judged by its extension."""
    extension = os.path.splitext(name)[1].lower()
    if extension in _EXTENSION_MIME_TYPES:
        return _EXTENSION_MIME_TYPES[extension]
    guessed, _ = mimetypes.guess_type(name)
    return guessed or MIME_OCTET_STREAM


class StorageError(Exception):
    """Raised when the store cannot resolve or complete an operation."""


class OutputExistsError(StorageError):
    """Raised under CollisionPolicy.ERROR when a write target name is taken."""


def check_entry_name(name: str) -> str:
    """Return `name` if it names a single entry inside a container, else raise StorageError."""
    if not name or not name.strip():
        raise StorageError("Entry name must not be empty.")
    if "/" in name or "\\" in name or name.strip() in (".", "..") or name == TRASH_DIR_NAME:
        raise StorageError(f"Invalid entry name {name!r}: names cannot contain path separators.")
    return name


class CollisionPolicy(str, Enum):
    REPLACE = "replace"
    SKIP = "skip"
    ERROR = "error"

    @classmethod
    def parse(cls, value) -> "CollisionPolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown collision policy {value!r}; expected one of "
                f"{', '.join(policy.value for policy in cls)}"
            ) from None


@dataclass(frozen=True)
class FileDescriptor:
    id: str
    name: str
    mime_type: str
    container_id: str


class FileService:
    """Interface to a folder-based document store."""

    @property
    def default_container_id(self) -> str:
        raise NotImplementedError

    def get_file(self, file_id: str) -> FileDescriptor:
        raise NotImplementedError

    def read_bytes(self, file_id: str) -> bytes:
        raise NotImplementedError

    def list_files(self, container_id: str) -> List[FileDescriptor]:
        raise NotImplementedError

    def list_subcontainers(self, container_id: str) -> List[str]:
        raise NotImplementedError

    def container_exists(self, container_id: str) -> bool:
        raise NotImplementedError

    def container_name(self, container_id: str) -> str:
        raise NotImplementedError

    def find_files_by_name(self, container_id: str, name: str) -> List[FileDescriptor]:
        return [item for item in self.list_files(container_id) if item.name == name]

    def find_containers_by_name(self, parent_id: str, name: str) -> List[str]:
        return [
            child
            for child in self.list_subcontainers(parent_id)
            if self.container_name(child) == name
        ]

    def create_file(self, container_id: str, data: bytes, name: str) -> FileDescriptor:
        raise NotImplementedError

    def copy_file(self, file_id: str, destination_container_id: str, new_name: str) -> FileDescriptor:
        raise NotImplementedError

    def trash_file(self, file_id: str) -> None:
        raise NotImplementedError

    def trash_container(self, container_id: str) -> None:
        raise NotImplementedError

    def create_container(self, parent_id: str, name: str) -> str:
        raise NotImplementedError

    def prepare_target(
        self,
        container_id: str,
        name: str,
        policy: CollisionPolicy,
        kind: str = "file",
    ) -> bool:
        """
        Apply the collision policy before writing `name` into `container_id`.

        Returns True when the write should proceed and False when it must be
        skipped. Under REPLACE every same-named entry is trashed first.
        """
        policy = CollisionPolicy.parse(policy)
        if kind == "container":
            existing = self.find_containers_by_name(container_id, name)
        else:
            existing = [item.id for item in self.find_files_by_name(container_id, name)]

        if not existing:
            return True

        if policy is CollisionPolicy.REPLACE:
            for entry_id in existing:
                if kind == "container":
                    self.trash_container(entry_id)
                else:
                    self.trash_file(entry_id)
            print(f"    Existing {kind} \"{name}\" marked for replacement.")
            return True

        if policy is CollisionPolicy.ERROR:
            raise OutputExistsError(f"{kind.capitalize()} \"{name}\" already exists in the destination.")

        print(f"    Skipping replacement for existing {kind} \"{name}\".")
        return False

    def ensure_container(self, parent_id: str, name: str, policy: CollisionPolicy) -> str:
        """Create a named subcontainer, reusing the existing one when the policy skips."""
        if self.prepare_target(parent_id, name, policy, kind="container"):
            return self.create_container(parent_id, name)
        return self.find_containers_by_name(parent_id, name)[0]


class LocalFileService(FileService):
    """
    File store backed by a directory tree.

    Container ids are directory paths relative to the root ("" is the root
    itself) and file ids are file paths relative to the root, always with
    forward slashes. Trashed entries are moved under `.trash/`.
    """

    def __init__(self, root: str):
        self.root = os.path.abspath(root)
        os.makedirs(self.root, exist_ok=True)

    @property
    def default_container_id(self) -> str:
        return ""

    @staticmethod
    def _join_id(container_id: str, name: str) -> str:
        return f"{container_id}/{name}" if container_id else name

    def _abs(self, entry_id: str) -> str:
        normalized = os.path.normpath(os.path.join(self.root, *entry_id.split("/"))) if entry_id else self.root
        if normalized != self.root and not normalized.startswith(self.root + os.sep):
            raise StorageError(f"Path escapes the store root: {entry_id}")
        return normalized

    def _is_hidden(self, name: str) -> bool:
        return name == TRASH_DIR_NAME

    def _container_dir(self, container_id: str) -> str:
        path = self._abs(container_id)
        if not os.path.isdir(path):
            raise StorageError(f"Container not found: {container_id!r}")
        return path

    def _describe(self, file_id: str) -> FileDescriptor:
        name = file_id.rsplit("/", 1)[-1]
        container_id = file_id.rsplit("/", 1)[0] if "/" in file_id else ""
        return FileDescriptor(
            id=file_id,
            name=name,
            mime_type=guess_mime_type(name),
            container_id=container_id,
        )

    @staticmethod
    def _entry_path(directory: str, name: str) -> str:
        target = os.path.normpath(os.path.join(directory, check_entry_name(name)))
        if os.path.dirname(target) != directory:
            raise StorageError(f"Invalid entry name {name!r}: target leaves its container.")
        return target

    def path_for(self, file_id: str) -> str:
        """Absolute filesystem path of a stored file."""
        path = self._abs(file_id)
        if not os.path.isfile(path):
            raise StorageError(f"File not found: {file_id!r}")
        return path

    def get_file(self, file_id: str) -> FileDescriptor:
        self.path_for(file_id)
        return self._describe(file_id)

    def read_bytes(self, file_id: str) -> bytes:
        with open(self.path_for(file_id), "rb") as handle:
            return handle.read()

    def list_files(self, container_id: str) -> List[FileDescriptor]:
        directory = self._container_dir(container_id)
        return [
            self._describe(self._join_id(container_id, name))
            for name in sorted(os.listdir(directory))
            if os.path.isfile(os.path.join(directory, name))
        ]

    def list_subcontainers(self, container_id: str) -> List[str]:
        directory = self._container_dir(container_id)
        return [
            self._join_id(container_id, name)
            for name in sorted(os.listdir(directory))
            if not self._is_hidden(name) and os.path.isdir(os.path.join(directory, name))
        ]

    def container_exists(self, container_id: str) -> bool:
        try:
            return os.path.isdir(self._abs(container_id))
        except StorageError:
            return False

    def container_name(self, container_id: str) -> str:
        return container_id.rsplit("/", 1)[-1] if container_id else os.path.basename(self.root)

    def create_file(self, container_id: str, data: bytes, name: str) -> FileDescriptor:
        directory = self._container_dir(container_id)
        target = self._entry_path(directory, name)
        if os.path.exists(target):
            raise OutputExistsError(f"File \"{name}\" already exists in {container_id or '<root>'}")
        with open(target, "wb") as handle:
            handle.write(data)
        return self._describe(self._join_id(container_id, name))

    def copy_file(self, file_id: str, destination_container_id: str, new_name: str) -> FileDescriptor:
        source = self.path_for(file_id)
        directory = self._container_dir(destination_container_id)
        target = self._entry_path(directory, new_name)
        if os.path.exists(target):
            raise OutputExistsError(
                f"File \"{new_name}\" already exists in {destination_container_id or '<root>'}"
            )
        shutil.copyfile(source, target)
        return self._describe(self._join_id(destination_container_id, new_name))

    def _move_to_trash(self, path: str) -> None:
        trash_dir = os.path.join(self.root, TRASH_DIR_NAME)
        os.makedirs(trash_dir, exist_ok=True)
        shutil.move(path, os.path.join(trash_dir, f"{uuid.uuid4().hex[:8]}_{os.path.basename(path)}"))

    def trash_file(self, file_id: str) -> None:
        self._move_to_trash(self.path_for(file_id))

    def trash_container(self, container_id: str) -> None:
        if not container_id:
            raise StorageError("The root container cannot be trashed.")
        self._move_to_trash(self._container_dir(container_id))

    def create_container(self, parent_id: str, name: str) -> str:
        directory = self._container_dir(parent_id)
        target = self._entry_path(directory, name)
        if os.path.exists(target):
            raise OutputExistsError(f"Folder \"{name}\" already exists in {parent_id or '<root>'}")
        os.makedirs(target)
        return self._join_id(parent_id, name)


def resolve_container(service: FileService, container_id: Optional[str]) -> str:
    """Return the container id to write into, falling back to the store default."""
    if container_id is None or container_id == "":
        return service.default_container_id
    if not service.container_exists(container_id):
        raise StorageError(f"Container not found: {container_id!r}")
    return container_id
