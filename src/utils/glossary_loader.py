"""Glossary loading, parsing and formatting utilities."""

from __future__ import annotations

import io
import logging
from typing import Dict, Optional

import pandas as pd

LOGGER = logging.getLogger(__name__)


def parse_custom_dictionary(text: Optional[str]) -> Dict[str, str]:
    """Parse ``source=target`` lines into a glossary mapping.

    Blank lines and ``#`` comments are ignored. Lines without ``=`` or with an
    empty source are skipped. Later entries override earlier ones.

    Args:
        text: Raw custom dictionary text stored on the session.

    Returns:
        Mapping from source term to preferred translation, in file order.
    """

    glossary: Dict[str, str] = {}
    if not text:
        return glossary

    for line_number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            LOGGER.debug("Skipping dictionary line %d without '=': %r", line_number, line)
            continue
        source, target = line.split("=", 1)
        source = source.strip()
        if not source:
            LOGGER.debug("Skipping dictionary line %d with empty source", line_number)
            continue
        glossary[source] = target.strip()
    return glossary


def to_dictionary_text(glossary: Dict[str, str]) -> str:
    """Serialise a mapping back into ``source=target`` lines."""
    return "\n".join(f"{source}={target}" for source, target in glossary.items())


class GlossaryLoader:
    """Load glossary definitions from Excel files for translation prompts."""

    REQUIRED_COLUMNS = 2

    def load_glossary(self, file_data: io.BytesIO) -> Dict[str, str]:
        """Load glossary entries from an uploaded Excel file.

        The first column holds source terms and the second their preferred
        translations. Rows with an empty cell are ignored.

        Args:
            file_data: Bytes originating from the uploaded Excel file.

        Returns:
            Mapping from source term to preferred translation.

        Raises:
            ValueError: If the uploaded file is invalid or empty.
        """

        try:
            file_data.seek(0)
            dataframe = pd.read_excel(file_data, dtype=str, header=None)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error("Failed to read glossary Excel file: %s", exc)
            raise ValueError("Could not read the glossary file. Please check its format.") from exc

        if dataframe.empty or dataframe.shape[1] < self.REQUIRED_COLUMNS:
            raise ValueError("The glossary file needs at least two columns.")

        glossary: Dict[str, str] = {}
        for _, row in dataframe.iterrows():
            source_cell, target_cell = row.iloc[0], row.iloc[1]
            if pd.isna(source_cell) or pd.isna(target_cell):
                continue
            source = str(source_cell).strip()
            target = str(target_cell).strip()
            if not source or not target:
                continue
            glossary[source] = target

        if not glossary:
            raise ValueError("No valid glossary entries were found.")

        LOGGER.info("Loaded %d glossary entries.", len(glossary))
        return glossary

    @staticmethod
    def format_glossary_terms(glossary: Dict[str, str] | None) -> str:
        """Format glossary entries into a prompt-friendly string.

        Args:
            glossary: Mapping of source terms to their preferred translations.

        Returns:
            Human-readable string representation used inside LLM prompts.
        """

        if not glossary:
            return "None"
        lines = [f"- {src} => {dest}" for src, dest in glossary.items()]
        return "\n".join(lines)
