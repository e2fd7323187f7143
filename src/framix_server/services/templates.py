from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import re
from typing import Iterable, Protocol

from framix_server.errors import TemplateValidationError

SUPPORTED_EXTENSIONS = {".ts", ".tsx"}
MAX_TEMPLATE_ID_LENGTH = 64

_TEMPLATE_ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*[a-z0-9]$")
_ID_DECLARATION = re.compile(r"""id:\s*["']([^"']+)["']""")
_NAME_DECLARATION = re.compile(r"""name:\s*["']([^"']+)["']""")


@dataclass(frozen=True)
class TemplateInfo:
    id: str
    name: str
    file: str


@dataclass(frozen=True)
class TemplateSource:
    file: str
    content: str


class TemplateCatalog(Protocol):
    def exists(self, template_id: str) -> bool: ...

    def list_templates(self) -> list[TemplateInfo]: ...

    def find_source(self, template_id: str) -> TemplateSource | None: ...


def is_valid_template_id(template_id: object) -> bool:
    return (
        isinstance(template_id, str)
        and len(template_id) <= MAX_TEMPLATE_ID_LENGTH
        and _TEMPLATE_ID_PATTERN.match(template_id) is not None
    )


class DirectoryTemplateCatalog:
    """Finds templates by scanning source files for ``id: "..."`` declarations."""

    def __init__(self, templates_dir: Path) -> None:
        self._templates_dir = templates_dir

    def _template_files(self) -> list[Path]:
        if not self._templates_dir.is_dir():
            return []
        return sorted(
            path
            for path in self._templates_dir.iterdir()
            if path.is_file() and path.suffix.lower() in SUPPORTED_EXTENSIONS
        )

    def list_templates(self) -> list[TemplateInfo]:
        templates: list[TemplateInfo] = []
        for path in self._template_files():
            content = path.read_text(encoding="utf-8", errors="replace")
            id_match = _ID_DECLARATION.search(content)
            if id_match is None:
                continue
            name_match = _NAME_DECLARATION.search(content)
            templates.append(
                TemplateInfo(
                    id=id_match.group(1),
                    name=name_match.group(1) if name_match else "Unknown",
                    file=path.name,
                )
            )
        return templates

    def exists(self, template_id: str) -> bool:
        return any(template.id == template_id for template in self.list_templates())

    def find_source(self, template_id: str) -> TemplateSource | None:
        for path in self._template_files():
            content = path.read_text(encoding="utf-8", errors="replace")
            id_match = _ID_DECLARATION.search(content)
            if id_match is not None and id_match.group(1) == template_id:
                return TemplateSource(file=path.name, content=content)
        return None


class PermissiveTemplateCatalog:
    """Accepts every well-formed id; used when no templates directory is configured."""

    def exists(self, template_id: str) -> bool:
        return True

    def list_templates(self) -> list[TemplateInfo]:
        return []

    def find_source(self, template_id: str) -> TemplateSource | None:
        return None


def validate_template_ids(template_ids: Iterable[object], catalog: TemplateCatalog) -> list[str]:
    """Return the ids unchanged, or raise listing every malformed or unknown id."""
    candidates = list(template_ids)
    invalid: list[str] = []
    for template_id in candidates:
        if not is_valid_template_id(template_id):
            invalid.append(str(template_id))
        elif not catalog.exists(str(template_id)):
            invalid.append(str(template_id))

    if invalid:
        raise TemplateValidationError(invalid)
    return [str(template_id) for template_id in candidates]
