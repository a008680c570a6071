"""
Subject list parsing.

The subject list is a two-column CSV file: subject ID, session ID. BIDS
prefixes (``sub-``, ``ses-``) are optional. Blank lines, ``#`` comments and
a ``subject,session`` header row are ignored.
"""

import csv
import logging
from dataclasses import dataclass
from pathlib import Path

from act_connectome.utils import SubjectListError, strip_prefix

logger = logging.getLogger(__name__)

HEADER_NAMES = {"subject", "subject_id", "participant_id", "sub"}


@dataclass(frozen=True)
class SessionEntry:
    """One (subject, session) row of the subject list, without prefixes."""

    subject: str
    session: str

    @property
    def prefix(self) -> str:
        """BIDS file-name prefix, e.g. ``sub-01_ses-pre``."""
        return f"sub-{self.subject}_ses-{self.session}"

    def __str__(self) -> str:
        return self.prefix


def _is_header(fields: list[str]) -> bool:
    return fields[0].strip().lower() in HEADER_NAMES


def read_subject_list(path: str | Path) -> list[SessionEntry]:
    """
    Read the subject list CSV into an ordered list of sessions.

    Parameters
    ----------
    path : str or Path
        Path to the CSV file.

    Returns
    -------
    list of SessionEntry
        Sessions in file order, duplicates removed.

    Raises
    ------
    SubjectListError
        If the file is missing, a row does not have exactly two non-empty
        fields, or the list holds no sessions.
    """
    path = Path(path)
    if not path.is_file():
        raise SubjectListError(f"Subject list not found: {path}")

    entries: list[SessionEntry] = []
    seen = set()
    first_row = True
    with open(path, newline="") as f:
        for lineno, fields in enumerate(csv.reader(f), start=1):
            fields = [x.strip() for x in fields]
            if not any(fields) or fields[0].startswith("#"):
                continue
            if first_row:
                first_row = False
                if _is_header(fields):
                    continue
            # Tolerate a trailing comma
            if len(fields) == 3 and not fields[2]:
                fields = fields[:2]
            if len(fields) != 2 or not all(fields):
                raise SubjectListError(
                    f"{path}:{lineno}: expected 'subject,session', "
                    f"got {','.join(fields)!r}"
                )
            subject = strip_prefix(fields[0], "sub-")
            session = strip_prefix(fields[1], "ses-")
            if not subject or not session:
                raise SubjectListError(
                    f"{path}:{lineno}: empty subject or session ID in "
                    f"{','.join(fields)!r}"
                )
            entry = SessionEntry(subject=subject, session=session)
            if entry in seen:
                logger.warning("%s:%d: duplicate entry %s ignored", path, lineno, entry)
                continue
            seen.add(entry)
            entries.append(entry)

    if not entries:
        raise SubjectListError(f"Subject list is empty: {path}")

    logger.info("Read %d session(s) from %s", len(entries), path)
    return entries
