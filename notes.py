"""
Note Helpers
============
Frequency → natural note classification, random target notes and the story
characters attached to each note letter.

Only natural notes (C D E F G A B) ever reach the game: a pitch that lands on
a black key is snapped to the nearer white-key neighbour.
"""
from __future__ import annotations

import math
import random
from dataclasses import dataclass

# ─── Note Names ──────────────────────────────────────────────────────────────
NOTE_NAMES = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]
NATURAL_NOTES = ["C", "D", "E", "F", "G", "A", "B"]

# Pitch classes of the black keys: C#(1) D#(3) F#(6) G#(8) A#(10)
SHARP_PITCH_CLASSES = frozenset({1, 3, 6, 8, 10})

# ─── Playable Range ──────────────────────────────────────────────────────────
A4_FREQ = 440.0
A4_MIDI = 69
MIN_FREQ = 27.5     # Hz – A0, lowest piano key
MAX_FREQ = 4186.0   # Hz – C8, highest piano key


@dataclass(frozen=True)
class NoteData:
    """A classified pitch. ``cents`` is not measured and stays 0."""
    note: str
    octave: int
    frequency: float
    cents: float = 0.0

    @property
    def name(self) -> str:
        return f"{self.note}{self.octave}"


@dataclass(frozen=True)
class TargetNote:
    """The note the player has to play."""
    note: str
    octave: int

    @property
    def name(self) -> str:
        return f"{self.note}{self.octave}"


@dataclass(frozen=True)
class Character:
    filename: str
    name: str
    emoji: str


# One friend per note letter; used by the story prompt and fallback lines.
CHARACTERS: dict[str, Character] = {
    "C": Character("worm.png", "Creepy", "🪱"),
    "D": Character("trex.png", "Dino", "🦖"),
    "E": Character("deer.png", "Edith", "🦌"),
    "F": Character("firefighter.png", "Fred", "👨‍🚒"),
    "G": Character("goblin.png", "Grumpy", "👺"),
    "A": Character("anteater.png", "Amey", "🦡"),
    "B": Character("chick.png", "Becky", "🐥"),
}


def get_character(note: str) -> Character | None:
    return CHARACTERS.get(note)


def format_note(note: NoteData | TargetNote) -> str:
    """Display label for a note. Octaves are hidden from the player."""
    return note.note


def classify_frequency(frequency: float | None) -> NoteData | None:
    """
    Convert a frequency to the nearest natural note.

    Returns None for silence or anything outside the piano range
    (A0 27.5 Hz – C8 4186 Hz).

        midi = 69 + 12 * log2(f / 440)

    If the rounded semitone is a black key, the note snaps to whichever white
    neighbour the unrounded pitch is closer to (ties go up).
    """
    if not frequency or frequency < MIN_FREQ or frequency > MAX_FREQ:
        return None

    raw_midi = A4_MIDI + 12.0 * math.log2(frequency / A4_FREQ)
    midi = math.floor(raw_midi + 0.5)  # half-way rounds up

    if midi % 12 in SHARP_PITCH_CLASSES:
        dist_below = abs(raw_midi - (midi - 1))
        dist_above = abs(raw_midi - (midi + 1))
        midi = midi - 1 if dist_below < dist_above else midi + 1

    octave = (midi // 12) - 1
    return NoteData(note=NOTE_NAMES[midi % 12], octave=octave, frequency=frequency)


def note_frequency(note: str, octave: int) -> float:
    """Equal-tempered frequency of a note, e.g. ('A', 4) → 440.0."""
    midi = (octave + 1) * 12 + NOTE_NAMES.index(note)
    return A4_FREQ * (2.0 ** ((midi - A4_MIDI) / 12.0))


def generate_random_note(min_octave: int = 3, max_octave: int = 5,
                         exclude: str | None = None,
                         rng: random.Random | None = None) -> TargetNote:
    """Pick a random natural note, never equal to *exclude* (no back-to-back repeats)."""
    rng = rng or random
    choices = [n for n in NATURAL_NOTES if n != exclude] or NATURAL_NOTES
    note = rng.choice(choices)
    octave = rng.randint(min_octave, max_octave)
    return TargetNote(note=note, octave=octave)
