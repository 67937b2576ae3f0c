"""Unified-diff parsing and the projections used to feed review and refinement.

``parse_diff`` is total: it never raises, and lines it cannot place are
skipped. Every other function here is a pure projection over an
``AnalyzedDiff``.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
import re

from reviewloop.models import (
    AnalyzedDiff,
    CodeContext,
    DiffChangeType,
    DiffFile,
    DiffHunk,
    DiffLine,
    DiffLineType,
    DiffSummary,
)


_FILE_HEADER = re.compile(r"^diff --git a/(.+) b/(.+)$")
_OLD_FILE = re.compile(r"^--- (?:a/)?(.+?)(?:\t.*)?$")
_NEW_FILE = re.compile(r"^\+\+\+ (?:b/)?(.+?)(?:\t.*)?$")
_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@(.*)$")
_NEW_FILE_MODE = re.compile(r"^new file mode \d+$")
_DELETED_FILE_MODE = re.compile(r"^deleted file mode \d+$")
_RENAME_FROM = re.compile(r"^rename from (.+)$")
_RENAME_TO = re.compile(r"^rename to (.+)$")
_COPY_FROM = re.compile(r"^copy from (.+)$")
_COPY_TO = re.compile(r"^copy to (.+)$")
_BINARY_FILE = re.compile(r"^Binary files? .* (?:added|changed|deleted|differ)$")
_GIT_BINARY_PATCH = "GIT binary patch"
_DEV_NULL = "/dev/null"


@dataclass
class _HunkBuilder:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    header: str | None
    old_remaining: int
    new_remaining: int
    lines: list[DiffLine] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return self.old_remaining <= 0 and self.new_remaining <= 0

    def build(self) -> DiffHunk:
        return DiffHunk(
            old_start=self.old_start,
            old_count=self.old_count,
            new_start=self.new_start,
            new_count=self.new_count,
            header=self.header,
            lines=tuple(self.lines),
        )


@dataclass
class _FileBuilder:
    path: str
    old_path: str | None
    change_type: DiffChangeType = "modified"
    is_binary: bool = False
    saw_old_header: bool = False
    hunks: list[DiffHunk] = field(default_factory=list)

    def build(self) -> DiffFile:
        return DiffFile(
            path=self.path,
            old_path=self.old_path,
            change_type=self.change_type,
            hunks=tuple(self.hunks),
            is_binary=self.is_binary,
        )


class _DiffParser:
    def __init__(self) -> None:
        self.files: list[DiffFile] = []
        self.current_file: _FileBuilder | None = None
        self.current_hunk: _HunkBuilder | None = None
        self.old_line = 0
        self.new_line = 0
        self.pending_rename_from: str | None = None

    def feed(self, line: str) -> None:
        if self.current_hunk is not None and not self.current_hunk.exhausted:
            if self._feed_hunk_line(line):
                return

        header_match = _FILE_HEADER.match(line)
        if header_match is not None:
            self._start_file(path=header_match.group(2), old_path=header_match.group(1))
            return

        hunk_match = _HUNK_HEADER.match(line)
        if hunk_match is not None and self.current_file is not None:
            self._start_hunk(hunk_match)
            return

        old_match = _OLD_FILE.match(line)
        if old_match is not None:
            self._on_old_file_header(old_match.group(1))
            return

        if self.current_file is None:
            return

        new_match = _NEW_FILE.match(line)
        if new_match is not None:
            self._flush_hunk()
            path = new_match.group(1)
            if path == _DEV_NULL:
                self.current_file.change_type = "deleted"
            elif self.current_file.change_type != "renamed":
                self.current_file.path = path
            return

        self._feed_extended_header(line)

    def finish(self) -> tuple[DiffFile, ...]:
        self._flush_file()
        return tuple(self.files)

    def _feed_hunk_line(self, line: str) -> bool:
        hunk = self.current_hunk
        assert hunk is not None
        line_type: DiffLineType
        if line.startswith("\\"):
            return True
        if line.startswith("+"):
            line_type = "added"
        elif line.startswith("-"):
            line_type = "removed"
        elif line.startswith(" ") or line == "":
            line_type = "context"
        else:
            return False

        content = line[1:] if line else ""
        if line_type == "added":
            hunk.lines.append(DiffLine("added", content, None, self.new_line))
            self.new_line += 1
            hunk.new_remaining -= 1
        elif line_type == "removed":
            hunk.lines.append(DiffLine("removed", content, self.old_line, None))
            self.old_line += 1
            hunk.old_remaining -= 1
        else:
            hunk.lines.append(DiffLine("context", content, self.old_line, self.new_line))
            self.old_line += 1
            self.new_line += 1
            hunk.old_remaining -= 1
            hunk.new_remaining -= 1
        return True

    def _feed_extended_header(self, line: str) -> None:
        current = self.current_file
        assert current is not None
        if _NEW_FILE_MODE.match(line):
            current.change_type = "added"
        elif _DELETED_FILE_MODE.match(line):
            current.change_type = "deleted"
        elif (rename_from := _RENAME_FROM.match(line)) is not None:
            self.pending_rename_from = rename_from.group(1)
        elif (rename_to := _RENAME_TO.match(line)) is not None:
            current.change_type = "renamed"
            current.old_path = self.pending_rename_from or current.old_path
            current.path = rename_to.group(1)
        elif (copy_from := _COPY_FROM.match(line)) is not None:
            current.old_path = copy_from.group(1)
        elif (copy_to := _COPY_TO.match(line)) is not None:
            current.change_type = "added"
            current.path = copy_to.group(1)
        elif _BINARY_FILE.match(line) or line.strip() == _GIT_BINARY_PATCH:
            current.is_binary = True
            current.change_type = "binary"

    def _start_file(self, *, path: str, old_path: str | None) -> None:
        self._flush_file()
        self.current_file = _FileBuilder(path=path, old_path=old_path)
        self.pending_rename_from = None

    def _on_old_file_header(self, path: str) -> None:
        current = self.current_file
        # A bare "--- " header after completed hunks begins a new plain-diff file.
        hunk_closed = self.current_hunk is None or self.current_hunk.exhausted
        if current is None or (current.saw_old_header and hunk_closed):
            self._start_file(path=path, old_path=path)
            current = self.current_file
            assert current is not None
        self._flush_hunk()
        current.saw_old_header = True
        if path == _DEV_NULL:
            current.change_type = "added"
            current.old_path = None

    def _start_hunk(self, match: re.Match[str]) -> None:
        self._flush_hunk()
        old_start = int(match.group(1))
        old_count = int(match.group(2)) if match.group(2) is not None else 1
        new_start = int(match.group(3))
        new_count = int(match.group(4)) if match.group(4) is not None else 1
        header = match.group(5).strip() or None
        self.old_line = old_start
        self.new_line = new_start
        self.current_hunk = _HunkBuilder(
            old_start=old_start,
            old_count=old_count,
            new_start=new_start,
            new_count=new_count,
            header=header,
            old_remaining=old_count,
            new_remaining=new_count,
        )

    def _flush_hunk(self) -> None:
        if self.current_hunk is not None and self.current_file is not None:
            if self.current_hunk.lines:
                self.current_file.hunks.append(self.current_hunk.build())
        self.current_hunk = None

    def _flush_file(self) -> None:
        self._flush_hunk()
        if self.current_file is not None:
            self.files.append(self.current_file.build())
        self.current_file = None


def parse_diff(text: str) -> AnalyzedDiff:
    parser = _DiffParser()
    for line in text.split("\n"):
        parser.feed(line.removesuffix("\r"))
    files = parser.finish()
    return AnalyzedDiff(files=files, summary=calculate_summary(files), raw_diff=text)


def calculate_summary(files: Iterable[DiffFile]) -> DiffSummary:
    file_list = list(files)
    lines_added = 0
    lines_removed = 0
    for diff_file in file_list:
        for hunk in diff_file.hunks:
            for line in hunk.lines:
                if line.type == "added":
                    lines_added += 1
                elif line.type == "removed":
                    lines_removed += 1

    def _count(change_type: DiffChangeType) -> int:
        return sum(1 for item in file_list if item.change_type == change_type)

    return DiffSummary(
        files_changed=len(file_list),
        files_added=_count("added"),
        files_modified=_count("modified"),
        files_deleted=_count("deleted"),
        files_renamed=_count("renamed"),
        lines_added=lines_added,
        lines_removed=lines_removed,
    )


def extract_code_context(
    diff: AnalyzedDiff,
    *,
    lines_before: int = 3,
    lines_after: int = 3,
) -> tuple[CodeContext, ...]:
    """Return one annotated context window per hunk, skipping binary files.

    The window is expressed in new-file line numbers and clamped at line 1.
    """
    contexts: list[CodeContext] = []
    for diff_file in diff.files:
        if diff_file.is_binary:
            continue
        for hunk in diff_file.hunks:
            content_lines: list[str] = []
            added: list[int] = []
            removed: list[int] = []
            for line in hunk.lines:
                if line.type == "added" and line.new_line_number is not None:
                    added.append(line.new_line_number)
                    content_lines.append(f"+ {line.content}")
                elif line.type == "removed" and line.old_line_number is not None:
                    removed.append(line.old_line_number)
                    content_lines.append(f"- {line.content}")
                else:
                    content_lines.append(f"  {line.content}")
            contexts.append(
                CodeContext(
                    path=diff_file.path,
                    start_line=max(1, hunk.new_start - lines_before),
                    end_line=hunk.new_start + hunk.new_count + lines_after,
                    content="\n".join(content_lines),
                    added_lines=tuple(added),
                    removed_lines=tuple(removed),
                )
            )
    return tuple(contexts)


def get_files_by_change_type(diff: AnalyzedDiff, change_type: DiffChangeType) -> tuple[str, ...]:
    return tuple(item.path for item in diff.files if item.change_type == change_type)


def _find_file(diff: AnalyzedDiff, path: str) -> DiffFile | None:
    for diff_file in diff.files:
        if diff_file.path == path:
            return diff_file
    return None


def get_changed_lines(diff: AnalyzedDiff, path: str) -> tuple[tuple[int, ...], tuple[int, ...]]:
    """Return ``(added, removed)`` line numbers for ``path``.

    Added lines use new-file numbering and removed lines old-file numbering.
    """
    diff_file = _find_file(diff, path)
    if diff_file is None:
        return (), ()
    added: list[int] = []
    removed: list[int] = []
    for hunk in diff_file.hunks:
        for line in hunk.lines:
            if line.type == "added" and line.new_line_number is not None:
                added.append(line.new_line_number)
            elif line.type == "removed" and line.old_line_number is not None:
                removed.append(line.old_line_number)
    return tuple(added), tuple(removed)


def get_line_change_type(diff: AnalyzedDiff, path: str, line_number: int) -> DiffLineType | None:
    diff_file = _find_file(diff, path)
    if diff_file is None:
        return None
    for hunk in diff_file.hunks:
        for line in hunk.lines:
            if line.type == "added" and line.new_line_number == line_number:
                return "added"
            if line.type == "removed" and line.old_line_number == line_number:
                return "removed"
    return None


def format_diff_summary(summary: DiffSummary) -> str:
    parts: list[str] = []
    if summary.files_added:
        parts.append(f"{summary.files_added} file(s) added")
    if summary.files_modified:
        parts.append(f"{summary.files_modified} file(s) modified")
    if summary.files_deleted:
        parts.append(f"{summary.files_deleted} file(s) deleted")
    if summary.files_renamed:
        parts.append(f"{summary.files_renamed} file(s) renamed")
    if not parts:
        return "No changes"
    return f"{', '.join(parts)} (+{summary.lines_added}/-{summary.lines_removed} lines)"


def filter_diff_by_patterns(diff: AnalyzedDiff, patterns: Iterable[str]) -> AnalyzedDiff:
    """Keep files whose new or old path matches any shell-style glob."""
    pattern_list = tuple(patterns)

    def _matches(diff_file: DiffFile) -> bool:
        candidates = [diff_file.path]
        if diff_file.old_path:
            candidates.append(diff_file.old_path)
        return any(
            fnmatchcase(candidate, pattern) for pattern in pattern_list for candidate in candidates
        )

    kept = tuple(item for item in diff.files if _matches(item))
    return AnalyzedDiff(files=kept, summary=calculate_summary(kept), raw_diff=diff.raw_diff)


def format_diff_for_review(diff: AnalyzedDiff, *, max_lines: int | None = None) -> str:
    sections: list[str] = ["## Diff Summary", format_diff_summary(diff.summary), ""]
    for diff_file in diff.files:
        sections.append(f"### {diff_file.path}")
        if diff_file.change_type == "renamed" and diff_file.old_path:
            sections.append(f"Renamed from: {diff_file.old_path}")
        sections.append(f"Change type: {diff_file.change_type}")
        if diff_file.is_binary:
            sections.append("(Binary file)")
        else:
            for hunk in diff_file.hunks:
                suffix = f" {hunk.header}" if hunk.header else ""
                sections.append("```diff")
                sections.append(
                    f"@@ -{hunk.old_start},{hunk.old_count} "
                    f"+{hunk.new_start},{hunk.new_count} @@{suffix}"
                )
                for line in hunk.lines:
                    sections.append(f"{_LINE_PREFIX[line.type]}{line.content}")
                sections.append("```")
        sections.append("")

    rendered = "\n".join(sections).rstrip("\n")
    if max_lines is None:
        return rendered
    out_lines = rendered.split("\n")
    if len(out_lines) <= max_lines:
        return rendered
    omitted = len(out_lines) - max_lines
    return "\n".join([*out_lines[:max_lines], f"... ({omitted} more line(s) truncated)"])


_LINE_PREFIX: dict[DiffLineType, str] = {"added": "+", "removed": "-", "context": " "}
