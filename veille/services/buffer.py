from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import os
from pathlib import Path

import yaml

from veille.core.ids import new_id

YAML_SPECIAL_CHARS = frozenset(":#'\"{}[],&*?|-<>=!%@`\n")


@dataclass(slots=True)
class Metadata:
    id: str
    source_id: str
    dossier_id: str
    source_url: str
    source_type: str
    title: str
    content_hash: str
    extracted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class BufferWriter:
    """Drops each extraction as ``<id>.md`` with YAML frontmatter for downstream consumers.

    Files are written to ``<id>.md.tmp`` and renamed into place, so readers
    never observe a partial file.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    async def write(self, metadata: Metadata, text: str) -> Path:
        if not metadata.id:
            metadata.id = new_id()
        return await asyncio.to_thread(self._write_sync, metadata, text)

    def _write_sync(self, metadata: Metadata, text: str) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        target = self.directory / f"{metadata.id}.md"
        tmp = target.with_name(target.name + ".tmp")
        try:
            tmp.write_text(format_frontmatter(metadata) + text, encoding="utf-8")
            os.replace(tmp, target)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise
        return target


def format_frontmatter(metadata: Metadata) -> str:
    extracted_at = metadata.extracted_at
    if extracted_at.tzinfo is None:
        extracted_at = extracted_at.replace(tzinfo=timezone.utc)
    extracted_at_text = extracted_at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    return (
        "---\n"
        f"id: {metadata.id}\n"
        f"source_id: {metadata.source_id}\n"
        f"dossier_id: {metadata.dossier_id}\n"
        f"source_url: {metadata.source_url}\n"
        f"source_type: {metadata.source_type}\n"
        f"title: {yaml_escape(metadata.title)}\n"
        f"extracted_at: {extracted_at_text}\n"
        f"content_hash: {metadata.content_hash}\n"
        "---\n\n"
    )


def yaml_escape(value: str) -> str:
    if any(char in YAML_SPECIAL_CHARS for char in value):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return value


def read_buffer_file(path: str | Path) -> tuple[dict[str, str], str]:
    """Split a buffer file into its frontmatter fields (all strings) and body text."""
    content = Path(path).read_text(encoding="utf-8")
    if not content.startswith("---\n"):
        return {}, content
    header, separator, body = content[4:].partition("\n---\n")
    if not separator:
        return {}, content
    parsed = yaml.load(header, Loader=yaml.BaseLoader) or {}
    metadata = {str(key): "" if value is None else str(value) for key, value in parsed.items()}
    return metadata, body.removeprefix("\n")
