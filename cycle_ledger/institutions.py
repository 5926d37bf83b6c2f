"""
Institution Registry Module

Institutions are counterparties (banks, exchanges) referenced by name from
transactions, optionally with an uploaded icon. Icons live as files in the
upload directory under generated names; only the file name is stored.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Union
import os
import re
import uuid

from .errors import NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, parse_timestamp, utc_now

INSTITUTION_NAME_MAX_LENGTH = 255

ICON_CONTENT_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"

# Files in the upload directory that are never icons
_RESERVED_FILES = {".gitkeep"}

_EXTENSION_PATTERN = re.compile(r'^\.[a-z0-9]{1,10}$')


@dataclass
class IconUpload:
    """An uploaded icon file as received from the client"""
    filename: str
    content_type: str
    content: bytes


@dataclass
class Institution(StorageRecord):
    name: str
    icon_file_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Institution':
        return cls(
            id=data['id'],
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            name=data['name'],
            icon_file_name=data.get('icon_file_name'),
        )


class InstitutionManager:
    """Institution registry and icon file store"""

    def __init__(self, storage: StorageInterface, upload_dir: Union[str, Path],
                 icon_max_bytes: int = 2 * 1024 * 1024):
        self.storage = storage
        self.upload_dir = Path(upload_dir)
        self.icon_max_bytes = icon_max_bytes
        self.table_name = "institutions"
        self.logger = get_logger("cycle_ledger.institutions")

    def list_institutions(self) -> List[Institution]:
        """All institutions sorted by name"""
        institutions = [Institution.from_dict(data)
                        for data in self.storage.load_all(self.table_name)]
        return sorted(institutions, key=lambda institution: institution.name)

    def get_institution(self, institution_id: str) -> Optional[Institution]:
        data = self.storage.load(self.table_name, institution_id)
        return Institution.from_dict(data) if data else None

    def resolve_institution_id(self, name: Optional[str]) -> Optional[str]:
        """
        Map a recipient institution name to its id, registering it if new

        Blank names resolve to None.
        """
        if name is None or not name.strip():
            return None
        return self._get_or_create(name.strip()).id

    def create_institution(self, name: str, icon: Optional[IconUpload] = None) -> Institution:
        """
        Create an institution, or update the icon of an existing one

        The icon file is written before the record. If the record write fails
        the file is left behind as an orphan for clean_orphan_icons().
        """
        clean_name = (name or "").strip()
        if not clean_name:
            raise ValidationError("Institution name is required", field="name")
        if len(clean_name) > INSTITUTION_NAME_MAX_LENGTH:
            raise ValidationError(
                f"Institution name must be at most {INSTITUTION_NAME_MAX_LENGTH} characters",
                field="name"
            )

        icon_file_name = self._save_icon_file(icon) if icon is not None else None

        with self.storage.atomic():
            institution = self._get_or_create(clean_name, icon_file_name)
            if icon_file_name and institution.icon_file_name != icon_file_name:
                institution.icon_file_name = icon_file_name
                institution.updated_at = utc_now()
                self.storage.save(
                    self.table_name, institution.id, institution.to_dict(),
                    natural_key=clean_name
                )

        log_action(
            self.logger, "info", f"Registered institution '{clean_name}'",
            action="create_institution", resource=institution.id,
            extra={"icon_file_name": institution.icon_file_name}
        )
        return institution

    def get_institution_icon(self, file_name: str) -> Tuple[bytes, str]:
        """
        Read an icon by its stored file name

        Returns:
            (file content, content type)

        Raises:
            ValidationError: If file_name is not a bare file name
            NotFoundError: If no such icon exists
        """
        safe_name = os.path.basename(file_name or "")
        if not safe_name or safe_name != file_name or safe_name in (".", ".."):
            raise ValidationError("Invalid icon file name", field="file_name")

        path = self.upload_dir / safe_name
        if not path.is_file():
            raise NotFoundError("Institution icon not found")

        content_type = ICON_CONTENT_TYPES.get(path.suffix.lower(), DEFAULT_CONTENT_TYPE)
        return path.read_bytes(), content_type

    def find_orphan_icons(self) -> List[Path]:
        """Files in the upload directory that no institution references"""
        if not self.upload_dir.is_dir():
            return []

        referenced: Set[str] = {
            institution.icon_file_name
            for institution in self.list_institutions()
            if institution.icon_file_name
        }
        return sorted(
            path for path in self.upload_dir.rglob("*")
            if path.is_file()
            and path.name not in _RESERVED_FILES
            and path.name not in referenced
        )

    def clean_orphan_icons(self) -> List[Path]:
        """Delete unreferenced icon files, returning the paths removed"""
        orphans = self.find_orphan_icons()
        for path in orphans:
            path.unlink()

        log_action(
            self.logger, "info", f"Removed {len(orphans)} orphan icon file(s)",
            action="clean_orphan_icons", resource=str(self.upload_dir),
            extra={"files": [path.name for path in orphans]}
        )
        return orphans

    def _get_or_create(self, name: str, icon_file_name: Optional[str] = None) -> Institution:
        now = utc_now()
        candidate = Institution(
            id=str(uuid.uuid4()), created_at=now, updated_at=now,
            name=name, icon_file_name=icon_file_name
        )
        stored = self.storage.get_or_insert(
            self.table_name, name, candidate.id, candidate.to_dict()
        )
        return Institution.from_dict(stored)

    def _save_icon_file(self, icon: IconUpload) -> str:
        """Validate an uploaded icon and write it under a generated name"""
        if not (icon.content_type or "").lower().startswith("image/"):
            raise ValidationError("Institution icon must be an image", field="icon")
        if not icon.content:
            raise ValidationError("Institution icon is empty", field="icon")
        if len(icon.content) > self.icon_max_bytes:
            raise ValidationError(
                f"Institution icon exceeds {self.icon_max_bytes} bytes", field="icon"
            )

        extension = os.path.splitext(os.path.basename(icon.filename or ""))[1].lower()
        if not _EXTENSION_PATTERN.match(extension):
            extension = ""

        file_name = f"{uuid.uuid4().hex}{extension}"
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        (self.upload_dir / file_name).write_bytes(icon.content)
        return file_name
