"""Competency taxonomy catalog loader."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple


class TaxonomyConfigError(ValueError):
    """Raised when ``taxonomy.json`` contains invalid data."""


@dataclass(frozen=True)
class ConceptReference:
    """Immutable knowledge object of a subject's taxonomy."""

    code: str
    description: str

    @property
    def label(self) -> str:
        return f"{self.code} - {self.description}"


@dataclass(frozen=True)
class Subject:
    code: str
    name: str
    concepts: Tuple[ConceptReference, ...]


class TaxonomyCatalog:
    """Read-only mapping from subject code to its ordered concept list."""

    def __init__(self, path: str | Path | None = None) -> None:
        base_path = Path(__file__).resolve().parent
        self.path = Path(path) if path is not None else base_path / "taxonomy.json"
        self._subjects: Mapping[str, Subject] = MappingProxyType({})
        self._load()

    @classmethod
    def from_mapping(
        cls,
        concepts: Mapping[str, Iterable[Tuple[str, str]]],
        names: Optional[Mapping[str, str]] = None,
    ) -> "TaxonomyCatalog":
        """Build a catalog from in-memory ``{subject: [(code, description), ...]}`` data."""

        catalog = cls.__new__(cls)
        catalog.path = None
        subjects = {}
        for subject_code, entries in concepts.items():
            key = str(subject_code).strip().upper()
            refs = tuple(ConceptReference(str(code).strip(), str(desc).strip()) for code, desc in entries)
            name = (names or {}).get(subject_code) or key
            subjects[key] = Subject(key, name, refs)
        catalog._subjects = MappingProxyType(subjects)
        return catalog

    # ------------------------------------------------------------------
    def _load(self) -> None:
        if not self.path.exists():
            raise FileNotFoundError(f"Taxonomy file not found: {self.path}")

        with self.path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)

        entries = raw.get("subjects") if isinstance(raw, dict) else None
        if not isinstance(entries, list):
            raise TaxonomyConfigError("Taxonomy file must contain a 'subjects' list")

        subjects: dict[str, Subject] = {}
        for idx, entry in enumerate(entries, start=1):
            if not isinstance(entry, dict):
                raise TaxonomyConfigError(f"Subject #{idx} must be a JSON object")
            code = str(entry.get("code") or "").strip().upper()
            if not code:
                raise TaxonomyConfigError(f"Subject #{idx} is missing a non-empty 'code'")
            if code in subjects:
                raise TaxonomyConfigError(f"Duplicate subject code detected: {code}")

            concepts: List[ConceptReference] = []
            seen: set[str] = set()
            for concept in entry.get("concepts") or []:
                concept_code = str(concept.get("code") or "").strip()
                description = str(concept.get("description") or "").strip()
                if not concept_code or not description:
                    raise TaxonomyConfigError(f"Subject {code} has a concept without code or description")
                if concept_code.upper() in seen:
                    raise TaxonomyConfigError(f"Duplicate concept code {concept_code} in subject {code}")
                seen.add(concept_code.upper())
                concepts.append(ConceptReference(concept_code, description))

            name = str(entry.get("name") or code).strip()
            subjects[code] = Subject(code, name, tuple(concepts))

        self._subjects = MappingProxyType(subjects)

    # ------------------------------------------------------------------
    def subjects(self) -> Sequence[str]:
        return tuple(self._subjects)

    def list_concepts(self, subject: Optional[str]) -> Tuple[ConceptReference, ...]:
        """Return the ordered concepts of ``subject`` (empty for unknown subjects)."""

        if not subject:
            return ()
        entry = self._subjects.get(str(subject).strip().upper())
        return entry.concepts if entry else ()

    def subject_name(self, subject: Optional[str]) -> str:
        if not subject:
            return "Matéria"
        entry = self._subjects.get(str(subject).strip().upper())
        return entry.name if entry else str(subject).upper()

    def code_map(self, subject: Optional[str]) -> dict[str, ConceptReference]:
        """Return upper-cased concept code → concept for ``subject``."""

        return {concept.code.upper(): concept for concept in self.list_concepts(subject)}

    def formatted_overview(self, subject: Optional[str]) -> str:
        """Return a bullet list of the subject's concepts for prompts."""

        return "\n".join(f"- {c.code}: {c.description}" for c in self.list_concepts(subject))


TAXONOMY = TaxonomyCatalog()
"""Process-wide catalog; immutable after import."""
