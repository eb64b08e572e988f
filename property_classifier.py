#!/usr/bin/env python3
"""
Property identification from drawing filenames.

A filename is first matched against the known property names by normalized
substring. If nothing matches, the whole property registry is handed to the
LLM together with the filename and it picks one (or answers UNKNOWN). Names
the LLM resolves are remembered for later files.
"""

import re
import threading
from typing import Iterable, Optional

from ai_providers import AIProvider
from concurrency import NamedSemaphore
from models import PropertyRecord
from settings import get_logger

logger = get_logger("classifier")

UNIDENTIFIED = "Unidentified"
UNKNOWN_TOKEN = "UNKNOWN"


def normalize_filename(filename: str) -> str:
    """Lowercase, replace anything outside [a-z0-9 whitespace] with a space, collapse whitespace."""
    text = re.sub(r"[^a-z0-9\s]", " ", filename.lower())
    return re.sub(r"\s+", " ", text).strip()


def to_title_case(text: str) -> str:
    """Capitalize every letter that follows a word boundary: "o'neil st" -> "O'Neil St"."""
    return re.sub(r"\b[a-z]", lambda m: m.group().upper(), text.lower())


def canonical_name(name: str) -> str:
    return to_title_case(re.sub(r"\s+", " ", name).strip())


class PropertyMap:
    """
    Lowercase property name -> canonical display name.

    Iteration follows insertion order, so names loaded from the registry are
    tried before names learned later. Entries are only ever added.
    """

    def __init__(self):
        self._entries: dict[str, str] = {}
        self._lock = threading.Lock()

    def populate(self, records: Iterable[PropertyRecord]):
        for record in records:
            if record.name and record.name.strip():
                self.learn(record.name)
        logger.info(f"Populated property map with {len(self)} properties")
        for key, value in self.items():
            logger.debug(f'  "{key}" -> "{value}"')

    def learn(self, name: str) -> str:
        """Add a name (title-cased) and return its canonical form."""
        canonical = canonical_name(name)
        with self._lock:
            self._entries.setdefault(canonical.lower(), canonical)
            return self._entries[canonical.lower()]

    def match(self, normalized_filename: str) -> Optional[str]:
        """Canonical value of the first key that is a substring of the normalized filename."""
        for key, canonical in self.items():
            if key and key in normalized_filename:
                return canonical
        return None

    def items(self) -> list[tuple[str, str]]:
        with self._lock:
            return list(self._entries.items())

    def __contains__(self, key: str) -> bool:
        return key.lower() in self._entries

    def __len__(self):
        return len(self._entries)


def build_lookup_prompt(filename: str, registry: Iterable[PropertyRecord]) -> str:
    """Prompt listing every registry entry, asking for one exact name or UNKNOWN."""
    lines = ["You are an assistant that identifies property names from filenames."]
    for record in registry:
        lines.append(f"- Name: {record.name}, Address: {record.address}")
    lines.append("")
    lines.append(f"Filename: {filename}")
    lines.append(f"Return ONLY the property name from the list or {UNKNOWN_TOKEN}.")
    return "\n".join(lines)


class PropertyClassifier:
    """Resolves a filename to a property name."""

    def __init__(
        self,
        property_map: PropertyMap,
        registry: list[PropertyRecord],
        provider: AIProvider,
        api_semaphore: NamedSemaphore,
    ):
        self.property_map = property_map
        self.registry = registry
        self.provider = provider
        self.api_semaphore = api_semaphore

    def identify(self, filename: str) -> Optional[str]:
        """Substring match against the property map. None when nothing matches."""
        clean = normalize_filename(filename)
        match = self.property_map.match(clean)
        if match:
            logger.debug(f'Match found for "{filename}": "{match}"')
        else:
            logger.debug(f'No property match found for "{filename}"')
        return match

    def identify_via_fallback(self, filename: str) -> Optional[str]:
        """
        Ask the LLM to pick a property from the registry.

        Returns None for an empty registry, an empty answer, or UNKNOWN.
        Raises AIProviderError when the call fails.
        """
        if not self.registry:
            return None

        prompt = build_lookup_prompt(filename, self.registry)
        with self.api_semaphore.slot():
            logger.debug(f"[Property ID] {self.api_semaphore.name} usage: {self.api_semaphore.current_usage()}")
            text = self.provider.generate(prompt)

        text = text.strip()
        if not text or text.upper() == UNKNOWN_TOKEN:
            return None
        return self.property_map.learn(text)

    def resolve(self, filename: str) -> str:
        """Substring match, then LLM lookup, then the Unidentified bucket."""
        match = self.identify(filename)
        if match:
            logger.info(f"Property identified by filename: {match}")
            return match

        match = self.identify_via_fallback(filename)
        if match:
            logger.info(f"Property identified by lookup: {match}")
            return match

        logger.info(f"No property found for {filename}, using {UNIDENTIFIED}")
        return UNIDENTIFIED
