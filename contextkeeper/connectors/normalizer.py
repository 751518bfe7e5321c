"""Event normalizer — pure mapping from PlatformEvent to NormalizedEvent."""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Any

from contextkeeper.connectors.models import NormalizedEvent, PlatformEvent

CODE_EXTENSIONS = frozenset(
    {
        "go", "js", "ts", "py", "java", "cpp", "c", "h", "hpp", "cs", "rb", "php",
        "swift", "kt", "rs", "sql", "json", "yaml", "yml", "xml", "html", "css",
        "scss", "less", "md", "txt", "log", "config", "conf",
    }
)  # fmt: skip

# path-like token: optional directories, a name, and an extension
_PATH_TOKEN_RE = re.compile(r"(?<![\w/.-])((?:[\w.-]+/)*[\w-][\w.-]*\.([A-Za-z0-9]+))(?![\w/])")
_FEATURE_BRANCH_RE = re.compile(r"\bfeature/([A-Za-z0-9._-]+)")
_CONVENTIONAL_SCOPE_RE = re.compile(r"^\s*feat\(([A-Za-z0-9._/-]+)\)!?:", re.MULTILINE)


def is_code_file_extension(ext: str) -> bool:
    return ext.lower().lstrip(".") in CODE_EXTENSIONS


def extract_file_references(text: str) -> list[str]:
    """Return path-like tokens in *text* whose extension is a known code extension.

    Surrounding backticks and punctuation are ignored, so ``"see `api/auth.go`."``
    yields ``["api/auth.go"]``. URLs are skipped.
    """
    refs: list[str] = []
    for match in _PATH_TOKEN_RE.finditer(text or ""):
        path, ext = match.group(1), match.group(2)
        if "://" in text[max(match.start() - 8, 0) : match.start() + 3]:
            continue
        if not is_code_file_extension(ext):
            continue
        refs.append(path.rstrip("."))
    return _dedupe(refs)


def extract_feature_references(text: str) -> list[str]:
    """Feature names from ``feature/<name>`` branches and ``feat(<scope>):`` subjects."""
    found = _FEATURE_BRANCH_RE.findall(text or "") + _CONVENTIONAL_SCOPE_RE.findall(text or "")
    return _dedupe(found)


class EventNormalizer:
    """Stateless normalizer for one platform tag."""

    def __init__(self, platform: str) -> None:
        self.platform = platform

    def normalize(self, event: PlatformEvent) -> NormalizedEvent:
        metadata = dict(event.metadata)
        text = f"{event.title}\n{event.content}"

        file_refs = _dedupe(
            [
                *event.references,
                *_str_list(metadata.get("files_changed")),
                *_str_list(metadata.get("attachments")),
                *extract_file_references(text),
            ]
        )
        feature_refs = _dedupe(
            [
                *_str_list(metadata.get("features")),
                *extract_feature_references(str(metadata.get("head_ref") or "")),
                *extract_feature_references(text),
            ]
        )

        return NormalizedEvent(
            platform_id=event.id,
            event_type=event.type,
            timestamp=event.timestamp,
            author=event.author,
            content=event.content,
            title=event.title,
            platform=event.platform or self.platform,
            thread_id=_opt_str(metadata.get("thread_id")),
            parent_id=_opt_str(metadata.get("parent_id")),
            file_refs=file_refs,
            feature_refs=feature_refs,
            labels=_str_list(metadata.get("labels")),
            state=str(metadata.get("state") or ""),
            metadata=metadata,
        )

    def normalize_all(self, events: Iterable[PlatformEvent]) -> list[NormalizedEvent]:
        return [self.normalize(ev) for ev in events]


def _opt_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _str_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value if v]


def _dedupe(items: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            out.append(item)
    return out
