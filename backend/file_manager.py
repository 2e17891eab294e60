import logging
import posixpath
from dataclasses import dataclass
from typing import List

logger = logging.getLogger(__name__)

# ls -la --time-style=+%Y-%m-%dT%H:%M:%S <path>
LIST_COMMAND = ["ls", "-la", "--time-style=+%Y-%m-%dT%H:%M:%S"]

_ENTRY_TYPES = ("d", "-", "l")

# mode, links, owner, group, size, timestamp, name
MIN_FIELDS = 7


@dataclass
class FileEntry:
    name: str
    path: str
    is_dir: bool
    size: int
    mod_time: str

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": self.path,
            "isDir": self.is_dir,
            "size": self.size,
            "modTime": self.mod_time,
        }


def list_command(path: str) -> List[str]:
    return LIST_COMMAND + [path]


def _printable(text: str) -> str:
    # exec output can carry terminal control bytes
    return "".join(ch for ch in text if ch >= " " or ch in "\n\t")


def parse_listing(output: str, base_path: str, diagnostics: list | None = None) -> List[FileEntry]:
    """Parse ``ls -la`` output produced with an ISO-like ``--time-style``.

    Lines that don't look like entries are skipped. A bad size or missing
    timestamp only degrades that entry (size 0, empty mod time) and is
    reported through ``diagnostics`` when given.
    """
    entries: List[FileEntry] = []
    for raw in _printable(output).split("\n"):
        line = raw.strip()
        if not line or line.startswith("total"):
            continue
        if len(line) < 10 or line[0] not in _ENTRY_TYPES:
            continue

        fields = line.split()
        if len(fields) < MIN_FIELDS:
            continue

        name = fields[-1]
        if name in (".", ".."):
            continue

        try:
            size = int(fields[4])
        except ValueError:
            size = 0
            logger.warning(f"Unparseable size {fields[4]!r} for {name} in {base_path}")
            if diagnostics is not None:
                diagnostics.append({"entry": name, "field": "size", "value": fields[4]})

        mod_time = next((f for f in fields if "T" in f and len(f) > 10), "")
        if not mod_time:
            logger.warning(f"No timestamp found for {name} in {base_path}")
            if diagnostics is not None:
                diagnostics.append({"entry": name, "field": "modTime", "value": None})

        entries.append(FileEntry(
            name=name,
            path=posixpath.join(base_path, name),
            is_dir=line[0] == "d",
            size=size,
            mod_time=mod_time,
        ))
    return entries
