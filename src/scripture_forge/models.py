from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional

PENDING = "pending"
EXTRACTED = "extracted"
QUARANTINED = "quarantined"

# Per-module pipeline states.
DISCOVERED = "discovered"
DESCRIPTOR_RESOLVED = "descriptor_resolved"
FILTERED_OUT = "filtered_out"
EXPORTED = "exported"
PACKAGED = "packaged"
FAILED = "failed"

COVERAGE_STRUCTURED = "structured"
COVERAGE_TEXT_FALLBACK = "text_fallback"


@dataclass
class ModuleArchive:
    path: Path
    module_id: str
    size: int
    state: str = PENDING


@dataclass(frozen=True)
class ModuleDescriptor:
    module_id: str
    raw_language: Optional[str]
    language: str
    license_restricted: bool
    path: Optional[Path] = None
    description: str = ""
    version: str = ""
    distribution_license: str = ""
    synthesized: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "module_id": self.module_id,
            "raw_language": self.raw_language,
            "language": self.language,
            "license_restricted": self.license_restricted,
            "path": str(self.path) if self.path else None,
            "description": self.description,
            "version": self.version,
            "distribution_license": self.distribution_license,
            "synthesized": self.synthesized,
        }


@dataclass(frozen=True)
class VerseRecord:
    book: str
    chapter: int
    verse: int
    text: str
    added: bool = False
    raw: str = field(default="", compare=False)

    @property
    def key(self) -> str:
        return f"{self.book}.{self.chapter}.{self.verse}"

    def line(self) -> str:
        marker = "+" if self.added else ""
        return f"{self.book} {self.chapter}:{marker}{self.verse} {self.text}".rstrip()


@dataclass
class ExportedText:
    module_id: str
    raw_text: str
    source: str
    records: List[VerseRecord] = field(default_factory=list)


@dataclass
class StructuredDoc:
    path: Path
    valid: bool = False
    repaired: bool = False
    error: Optional[str] = None
    source: Optional[str] = None


@dataclass(frozen=True)
class CoverageSet:
    keys: FrozenSet[str]
    source: str

    def __len__(self) -> int:
        return len(self.keys)

    def __contains__(self, key: object) -> bool:
        return key in self.keys

    @property
    def approximate(self) -> bool:
        return self.source == COVERAGE_TEXT_FALLBACK

    def sorted_keys(self) -> List[str]:
        return sorted(self.keys)


@dataclass
class ModuleResult:
    module_id: str
    state: str
    descriptor: Optional[ModuleDescriptor] = None
    export_source: Optional[str] = None
    structured_valid: bool = False
    coverage_source: Optional[str] = None
    coverage_count: int = 0
    verse_count: int = 0
    book_count: int = 0
    artifacts: Dict[str, str] = field(default_factory=dict)
    skip_reason: Optional[str] = None
    error: Optional[str] = None

    @property
    def language(self) -> str:
        return self.descriptor.language if self.descriptor else "und"

    def to_catalog_row(self) -> Dict[str, Any]:
        descriptor = self.descriptor
        return {
            "module_id": self.module_id,
            "state": self.state,
            "language": self.language,
            "raw_language": descriptor.raw_language if descriptor else None,
            "description": descriptor.description if descriptor else "",
            "license_restricted": descriptor.license_restricted if descriptor else False,
            "export_source": self.export_source,
            "structured_valid": self.structured_valid,
            "coverage_source": self.coverage_source,
            "coverage_approximate": self.coverage_source == COVERAGE_TEXT_FALLBACK,
            "coverage_count": self.coverage_count,
            "verse_count": self.verse_count,
            "book_count": self.book_count,
            "skip_reason": self.skip_reason,
        }
