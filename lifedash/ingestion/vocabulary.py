"""Load, validate, and hot-reload the provider activity vocabulary.

The table lives in ``activity_types.yaml`` alongside this module.  It is
loaded once and cached; call ``reload_activity_vocabulary()`` after editing
the file to pick up new provider strings without a restart.

Usage::

    from lifedash.ingestion.vocabulary import get_activity_vocabulary

    vocabulary = get_activity_vocabulary()
    vocabulary.resolve("Trail Running")      # ActivityType.RUNNING
    vocabulary.resolve("underwater_hockey")  # ActivityType.OTHER
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from lifedash.ingestion.base import ActivityType

logger = logging.getLogger("lifedash.ingestion.vocabulary")

_VOCABULARY_PATH = Path(__file__).parent / "activity_types.yaml"

_SEPARATORS = re.compile(r"[\s\-_]+")


def normalize_term(value: str) -> str:
    """Lower-case and collapse separator runs to a single underscore."""
    return _SEPARATORS.sub("_", value.strip().lower()).strip("_")


@dataclass
class ActivityVocabulary:
    """Provider string -> canonical ``ActivityType`` lookup table.

    Attributes:
        version:  Schema version string from the YAML file.
        aliases:  Normalized provider string -> canonical type.
        keywords: Ordered (substring, canonical type) rules.
        fallback: Type used when nothing matches.
    """

    version: str
    aliases: dict[str, ActivityType]
    keywords: list[tuple[str, ActivityType]] = field(default_factory=list)
    fallback: ActivityType = ActivityType.OTHER

    def resolve(self, raw: Any) -> ActivityType:
        """Map a provider activity string to the canonical vocabulary.

        Never raises: ``None``, non-strings and unknown values all map to
        the fallback.
        """
        if raw is None or isinstance(raw, bool):
            return self.fallback
        term = normalize_term(str(raw))
        if not term:
            return self.fallback

        if term in self.aliases:
            return self.aliases[term]

        for keyword, activity_type in self.keywords:
            if keyword in term:
                return activity_type

        logger.debug("Unmapped provider activity type %r, using %s", raw, self.fallback.value)
        return self.fallback


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class VocabularyValidationError(ValueError):
    """Raised when activity_types.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        raise FileNotFoundError(f"Activity vocabulary not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise VocabularyValidationError(f"YAML parse error in {path}: {exc}") from exc


def _canonical(value: Any, where: str, errors: list[str]) -> ActivityType | None:
    try:
        return ActivityType(str(value))
    except ValueError:
        errors.append(f"{where}: {value!r} is not a canonical activity type")
        return None


def _validate_and_build(raw: dict) -> ActivityVocabulary:
    """Validate the parsed YAML and build an ActivityVocabulary.

    Raises:
        VocabularyValidationError: Listing every problem found.
    """
    errors: list[str] = []

    version = str(raw.get("version", "1.0"))

    fallback = _canonical(raw.get("fallback", ActivityType.OTHER.value), "fallback", errors)

    aliases: dict[str, ActivityType] = {}
    aliases_raw = raw.get("aliases") or {}
    if not isinstance(aliases_raw, dict) or not aliases_raw:
        errors.append("'aliases' section is missing or empty")
        aliases_raw = {}

    for canonical_raw, terms in aliases_raw.items():
        canonical = _canonical(canonical_raw, f"aliases.{canonical_raw}", errors)
        if canonical is None:
            continue
        # Canonical values always resolve to themselves
        aliases[normalize_term(canonical.value)] = canonical
        if not isinstance(terms, list):
            errors.append(f"aliases.{canonical_raw} must be a list of provider strings")
            continue
        for term in terms:
            key = normalize_term(str(term))
            previous = aliases.get(key)
            if previous is not None and previous is not canonical:
                errors.append(
                    f"alias {term!r} maps to both {previous.value!r} and {canonical.value!r}"
                )
                continue
            aliases[key] = canonical

    keywords: list[tuple[str, ActivityType]] = []
    for i, rule in enumerate(raw.get("keywords") or []):
        if not isinstance(rule, list) or len(rule) != 2:
            errors.append(f"keywords[{i}] must be a [keyword, canonical] pair")
            continue
        canonical = _canonical(rule[1], f"keywords[{i}]", errors)
        keyword = normalize_term(str(rule[0]))
        if not keyword:
            errors.append(f"keywords[{i}] has an empty keyword")
            continue
        if canonical is not None:
            keywords.append((keyword, canonical))

    if errors:
        raise VocabularyValidationError(
            f"activity_types.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  - {e}" for e in errors)
        )

    return ActivityVocabulary(
        version=version,
        aliases=aliases,
        keywords=keywords,
        fallback=fallback or ActivityType.OTHER,
    )


def load_activity_vocabulary(path: Path | None = None) -> ActivityVocabulary:
    """Load and validate the vocabulary from disk."""
    target = path or _VOCABULARY_PATH
    vocabulary = _validate_and_build(_load_yaml(target))
    logger.info(
        "Loaded activity vocabulary v%s (%d aliases) from %s",
        vocabulary.version,
        len(vocabulary.aliases),
        target,
    )
    return vocabulary


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_vocabulary: ActivityVocabulary | None = None
_vocabulary_lock = threading.Lock()


def get_activity_vocabulary() -> ActivityVocabulary:
    """Return the global vocabulary, loading it on first call."""
    global _vocabulary
    if _vocabulary is None:
        with _vocabulary_lock:
            if _vocabulary is None:
                _vocabulary = load_activity_vocabulary()
    return _vocabulary


def reload_activity_vocabulary(path: Path | None = None) -> ActivityVocabulary:
    """Re-read the vocabulary and swap the global instance.

    The new file is validated before the swap; on failure the old table
    stays active and the error is re-raised.
    """
    global _vocabulary
    new_vocabulary = load_activity_vocabulary(path)
    with _vocabulary_lock:
        old_version = _vocabulary.version if _vocabulary else "none"
        _vocabulary = new_vocabulary
    logger.info("Reloaded activity vocabulary: %s -> %s", old_version, new_vocabulary.version)
    return new_vocabulary
