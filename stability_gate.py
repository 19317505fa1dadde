"""
Stability Gate
==============
Debounces the per-sample note stream into rare "committed note" events.

A note letter has to be heard continuously for longer than
STABILITY_THRESHOLD before it is committed, and it only fires when it differs
from the last committed letter. Silence clears the candidate but keeps the
last committed letter, so holding the same note again after a short gap does
not fire a second time until another letter (or a full reset) intervenes.
"""
from __future__ import annotations

import logging
import time

from notes import NoteData, format_note

logger = logging.getLogger(__name__)

STABILITY_THRESHOLD = 0.100  # seconds a note must be held to be committed


class StabilityGate:
    """Single-pole debounce over classified notes (octave ignored)."""

    def __init__(self, threshold: float = STABILITY_THRESHOLD):
        self.threshold = threshold
        self._candidate: str | None = None
        self._candidate_start = 0.0
        self._last_committed: str | None = None

    @property
    def candidate(self) -> str | None:
        return self._candidate

    @property
    def last_committed(self) -> str | None:
        return self._last_committed

    def update(self, note: NoteData | None, now: float | None = None) -> NoteData | None:
        """Feed one sample. Returns the NoteData when it is committed, else None."""
        if now is None:
            now = time.monotonic()

        if note is None:
            self._candidate = None
            return None

        label = format_note(note)
        if label != self._candidate:
            self._candidate = label
            self._candidate_start = now
            return None

        if now - self._candidate_start > self.threshold and label != self._last_committed:
            self._last_committed = label
            logger.debug(f"Committed note {note.name} ({note.frequency:.1f} Hz)")
            return note
        return None

    def reset(self):
        self._candidate = None
        self._candidate_start = 0.0
        self._last_committed = None
