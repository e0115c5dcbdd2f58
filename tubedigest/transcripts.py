"""Caption fragment coalescing and duration helpers."""

from __future__ import annotations

import math
from typing import Any, Iterable, Mapping, Sequence

from .models import TranscriptSegment

MERGE_THRESHOLD = 0.1


def merge_fragments(fragments: Iterable[TranscriptSegment]) -> list[TranscriptSegment]:
    """Coalesce near-duplicate caption fragments into stable segments.

    Single pass, greedy and order preserving. A fragment whose start lies within
    ``MERGE_THRESHOLD`` of the start of the currently open segment is folded into
    it (text joined with one space, durations summed); any other fragment closes
    the open segment and opens a new one.
    """
    merged: list[TranscriptSegment] = []
    open_text: str | None = None
    open_start = 0.0
    open_duration = 0.0

    for fragment in fragments:
        if open_text is not None and abs(fragment.start - open_start) < MERGE_THRESHOLD:
            open_text = f"{open_text} {fragment.text}"
            open_duration += fragment.duration
            continue
        if open_text is not None:
            merged.append(TranscriptSegment(open_text, open_start, open_duration))
        open_text = fragment.text
        open_start = fragment.start
        open_duration = fragment.duration

    if open_text is not None:
        merged.append(TranscriptSegment(open_text, open_start, open_duration))
    return merged


def fragments_from_raw(raw: Sequence[Mapping[str, Any]] | None) -> list[TranscriptSegment]:
    """Convert loosely typed caption dictionaries into fragments."""
    if not raw:
        return []
    fragments: list[TranscriptSegment] = []
    for entry in raw:
        if not isinstance(entry, Mapping):
            continue
        fragments.append(
            TranscriptSegment(
                text=str(entry.get("text") or ""),
                start=_as_float(entry.get("start")),
                duration=_as_float(entry.get("duration")),
            )
        )
    return fragments


def build_transcript(
    fragments: Sequence[TranscriptSegment],
    full_text: str | None = None,
) -> list[TranscriptSegment]:
    """Merge fragments, falling back to a single segment holding ``full_text``."""
    if fragments:
        return merge_fragments(fragments)
    if full_text:
        return [TranscriptSegment(full_text, 0.0, 0.0)]
    return []


def infer_duration(segments: Sequence[TranscriptSegment]) -> int | None:
    """Whole-item duration implied by the last merged segment."""
    if not segments:
        return None
    last = segments[-1]
    return int(math.ceil(last.start + last.duration))


def parse_duration(value: Any) -> int | None:
    """Accept seconds or ``H:MM:SS``/``MM:SS`` strings; return whole seconds."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else None
    text = str(value).strip()
    if ":" in text:
        seconds = 0
        for index, part in enumerate(reversed(text.split(":"))):
            try:
                seconds += int(part) * 60**index
            except ValueError:
                return None
        return seconds or None
    try:
        parsed = int(float(text))
    except ValueError:
        return None
    return parsed or None


def resolve_duration(hint: int | None, segments: Sequence[TranscriptSegment]) -> int | None:
    return hint if hint else infer_duration(segments)


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0
