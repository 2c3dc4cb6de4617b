"""Extract and parse the unified diff a job prints at the end of its output."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any


DIFF_DELIMITER = "=" * 80

_DIFF_GIT_RE = re.compile(r"^diff --git a/(.+) b/(.+)$")


@dataclass
class FileDiff:
    filename: str
    status: str = "modified"  # added|modified|deleted|renamed
    additions: int = 0
    deletions: int = 0
    patch: str = ""
    old_filename: str | None = None


@dataclass
class JobDiff:
    job_id: str
    files: list[FileDiff] = field(default_factory=list)

    @property
    def summary(self) -> dict[str, int]:
        return {
            "total_additions": sum(f.additions for f in self.files),
            "total_deletions": sum(f.deletions for f in self.files),
            "total_files": len(self.files),
        }

    def changes(self) -> dict[str, int]:
        s = self.summary
        return {"additions": s["total_additions"], "deletions": s["total_deletions"], "files": s["total_files"]}

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "files": [asdict(f) for f in self.files],
            "summary": self.summary,
        }


def extract_diff_section(output: str) -> str:
    """Return the text between the last two delimiter lines.

    With a single delimiter the diff is whatever follows it. Returns "" when no
    diff section is present.
    """
    end = output.rfind(DIFF_DELIMITER)
    if end == -1:
        return ""
    start = output.rfind(DIFF_DELIMITER, 0, end)
    if start != -1:
        return output[start + len(DIFF_DELIMITER) : end].strip()
    return output[end + len(DIFF_DELIMITER) :].strip()


def parse_diff(diff_text: str, job_id: str) -> JobDiff:
    files: list[FileDiff] = []
    current: FileDiff | None = None
    patch: list[str] = []
    in_header = False

    def _flush() -> None:
        if current is not None:
            current.patch = "\n".join(patch)
            files.append(current)

    for line in diff_text.split("\n"):
        if line.startswith("diff --git "):
            _flush()
            m = _DIFF_GIT_RE.match(line)
            if m is None:
                current = None
                patch = []
                continue
            current = FileDiff(filename=m.group(2))
            if m.group(1) != m.group(2):
                current.old_filename = m.group(1)
            patch = [line]
            in_header = True
            continue

        if current is None:
            continue

        if line.startswith("new file mode"):
            current.status = "added"
            patch.append(line)
        elif line.startswith("deleted file mode"):
            current.status = "deleted"
            patch.append(line)
        elif line.startswith("rename from ") or line.startswith("rename to "):
            current.status = "renamed"
            patch.append(line)
        elif line.startswith("index ") or line.startswith("similarity index"):
            patch.append(line)
        elif in_header and (line.startswith("--- ") or line.startswith("+++ ")):
            patch.append(line)
        elif line.startswith("@@"):
            patch.append(line)
            in_header = False
        elif line.startswith("+") and not in_header:
            current.additions += 1
            patch.append(line)
        elif line.startswith("-") and not in_header:
            current.deletions += 1
            patch.append(line)
        elif line.startswith("\\ No newline at end of file"):
            patch.append(line)
        elif (line.startswith(" ") or line == "") and not in_header:
            patch.append(line)

    _flush()
    return JobDiff(job_id=job_id, files=files)


def diff_from_output(output: str, job_id: str) -> JobDiff:
    section = extract_diff_section(output)
    if not section:
        return JobDiff(job_id=job_id)
    return parse_diff(section, job_id)
