"""
Game Session
============
Turns committed notes into rounds: holds the target note, the score and the
match flags, and moves through either a flashcard drill or a story.

A correct note marks the round matched, bumps the score and schedules the
next target after ADVANCE_DELAY so the player sees the confirmation. Only one
match can be pending at a time. A wrong note before the match spoils the
"perfect" flag for the round; a perfect round fires the reward signal.

Flashcards keep a growable history with a cursor so the player can page back
and forth; stories page through the queue built by StoryQueueManager and start
a fresh story after the last beat.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol

from capture_session import CaptureStatus
from notes import NoteData, TargetNote, format_note, generate_random_note
from story_queue import StoryItem, StoryQueueManager

logger = logging.getLogger(__name__)

ADVANCE_DELAY = 1.5     # seconds between a match and the next target
REWARD_DURATION = 2.0   # seconds the perfect-round reward stays up


class GameMode(str, Enum):
    FLASHCARD = "flashcard"
    STORY = "story"


class AudioPlayer(Protocol):
    def play(self, audio_base64: str) -> None: ...

    def stop(self) -> None: ...


@dataclass(frozen=True)
class GameSnapshot:
    """What the presentation layer needs to draw a frame."""
    mode: GameMode
    target_note: Optional[TargetNote]
    score: int
    is_matched: bool
    perfect_attempt: bool
    show_reward: bool
    story_text: str
    is_generating_story: bool
    position: int
    total: int


class GameSession:
    """Round controller for flashcard and story modes."""

    def __init__(
        self,
        story: StoryQueueManager,
        player: Optional[AudioPlayer] = None,
        mode: GameMode = GameMode.FLASHCARD,
        advance_delay: float = ADVANCE_DELAY,
        reward_duration: float = REWARD_DURATION,
        on_change: Optional[Callable[[], None]] = None,
        on_reward: Optional[Callable[[], None]] = None,
    ):
        self.story = story
        self.player = player
        self.mode = mode
        self.advance_delay = advance_delay
        self.reward_duration = reward_duration
        self.on_change = on_change
        self.on_reward = on_reward

        self.listening = False
        self.audio_enabled = True
        self.target_note: Optional[TargetNote] = None
        self.score = 0
        self.is_matched = False
        self.perfect_attempt = True
        self.show_reward = False
        self.story_text = ""
        self.is_generating_story = False

        self.flashcard_history: list[TargetNote] = []
        self.flashcard_index = -1
        self.queue_index = 0

        self._processing = False
        self._advance_handle: Optional[asyncio.TimerHandle] = None
        self._reward_handle: Optional[asyncio.TimerHandle] = None
        self._story_tasks: set[asyncio.Task] = set()

    # ─── Presentation ────────────────────────────────────────────────────────

    @property
    def advance_pending(self) -> bool:
        return self._advance_handle is not None

    def snapshot(self) -> GameSnapshot:
        if self.mode is GameMode.STORY:
            position, total = self.queue_index, len(self.story.queue)
        else:
            position, total = max(self.flashcard_index, 0), len(self.flashcard_history)
        return GameSnapshot(
            mode=self.mode,
            target_note=self.target_note,
            score=self.score,
            is_matched=self.is_matched,
            perfect_attempt=self.perfect_attempt,
            show_reward=self.show_reward,
            story_text=self.story_text,
            is_generating_story=self.is_generating_story,
            position=position,
            total=total,
        )

    def _changed(self):
        if self.on_change:
            self.on_change()

    # ─── Listening lifecycle ─────────────────────────────────────────────────

    def handle_capture_status(self, status: CaptureStatus):
        if status is CaptureStatus.LISTENING:
            self.on_listening_started()
        elif self.listening:
            self.on_listening_stopped()

    def on_listening_started(self):
        self.listening = True
        self._deal_first_target()
        self._changed()

    def on_listening_stopped(self):
        self.listening = False
        self.reset()

    def _deal_first_target(self):
        if self.target_note is not None or self.is_generating_story:
            return
        if self.mode is GameMode.STORY:
            self._spawn_story_session()
        else:
            first = generate_random_note()
            self.flashcard_history = [first]
            self.flashcard_index = 0
            self.target_note = first
            self.perfect_attempt = True

    def reset(self):
        """Clear the round, score and queues and cancel any story work."""
        self._cancel_timers()
        self._processing = False
        self.story.cancel()
        self.target_note = None
        self.score = 0
        self.is_matched = False
        self.perfect_attempt = True
        self.show_reward = False
        self.story_text = ""
        self.is_generating_story = False
        self.queue_index = 0
        self.flashcard_history = []
        self.flashcard_index = -1
        self._stop_audio()
        self._changed()

    # ─── Matching ────────────────────────────────────────────────────────────

    def handle_note(self, note: NoteData):
        """Compare a committed note with the target (letters only)."""
        if not self.listening or self.target_note is None or self._processing:
            return

        if format_note(note) == format_note(self.target_note):
            self._processing = True
            self.is_matched = True
            self.score += 1
            logger.info(f"Matched note {format_note(note)}! Score: {self.score}",
                        extra={"success": True})
            if self.perfect_attempt:
                self._show_reward()
            loop = asyncio.get_running_loop()
            self._advance_handle = loop.call_later(self.advance_delay, self._advance_after_match)
        elif not self.is_matched and self.perfect_attempt:
            self.perfect_attempt = False
        self._changed()

    def _advance_after_match(self):
        self._advance_handle = None
        self.next()

    def _show_reward(self):
        if self._reward_handle is not None:
            self._reward_handle.cancel()
        self.show_reward = True
        if self.on_reward:
            self.on_reward()
        loop = asyncio.get_running_loop()
        self._reward_handle = loop.call_later(self.reward_duration, self._hide_reward)

    def _hide_reward(self):
        self._reward_handle = None
        self.show_reward = False
        self._changed()

    def _cancel_advance(self):
        if self._advance_handle is not None:
            self._advance_handle.cancel()
            self._advance_handle = None
        self._processing = False

    def _cancel_timers(self):
        self._cancel_advance()
        if self._reward_handle is not None:
            self._reward_handle.cancel()
            self._reward_handle = None

    # ─── Navigation ──────────────────────────────────────────────────────────

    def next(self):
        if self.mode is GameMode.STORY and self.is_generating_story:
            return
        self._cancel_advance()
        self._stop_audio()

        if self.mode is GameMode.STORY:
            next_index = self.queue_index + 1
            if next_index < len(self.story.queue):
                self._show_story_item(next_index)
            else:
                self._spawn_story_session()
        else:
            next_index = self.flashcard_index + 1
            if next_index < len(self.flashcard_history):
                self.flashcard_index = next_index
                self.target_note = self.flashcard_history[next_index]
            else:
                current = self.target_note.note if self.target_note else None
                new_note = generate_random_note(3, 5, exclude=current)
                self.flashcard_history.append(new_note)
                self.flashcard_index = len(self.flashcard_history) - 1
                self.target_note = new_note

        self.is_matched = False
        self.perfect_attempt = True
        self._changed()
        self._narrate()

    def previous(self):
        if self.mode is GameMode.STORY and self.is_generating_story:
            return
        self._cancel_advance()
        self._stop_audio()

        if self.mode is GameMode.STORY:
            if self.queue_index == 0:
                return
            self._show_story_item(self.queue_index - 1)
        else:
            if self.flashcard_index <= 0:
                return
            self.flashcard_index -= 1
            self.target_note = self.flashcard_history[self.flashcard_index]

        self.is_matched = False
        self.perfect_attempt = True
        self._changed()
        self._narrate()

    def set_mode(self, mode: GameMode):
        if mode is self.mode:
            return
        logger.info(f"Switching to {mode.value} mode")

        self._cancel_timers()
        self._stop_audio()
        self.story.cancel()
        self.mode = mode
        self.score = 0
        self.is_matched = False
        self.perfect_attempt = True
        self.show_reward = False
        self.target_note = None
        self.story_text = ""
        self.is_generating_story = False
        self.queue_index = 0
        self.flashcard_history = []
        self.flashcard_index = -1

        if self.listening:
            self._deal_first_target()
        self._changed()

    # ─── Story mode ──────────────────────────────────────────────────────────

    def _show_story_item(self, index: int):
        item: StoryItem = self.story.queue[index]
        self.queue_index = index
        self.target_note = item.note
        self.story_text = item.text

    def _spawn_story_session(self):
        self.is_generating_story = True
        self.target_note = None
        self.story_text = ""
        self._stop_audio()
        task = asyncio.create_task(self.start_story_session())
        self._story_tasks.add(task)
        task.add_done_callback(self._story_task_done)

    def _story_task_done(self, task: asyncio.Task):
        self._story_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Story session failed: {error!r}")
            self.is_generating_story = False
            self._changed()

    async def start_story_session(self):
        """Build a new story and show its first beat (no-op if superseded)."""
        self.is_generating_story = True
        self.target_note = None
        self.story_text = ""
        self._changed()

        queue = await self.story.build_session()
        if queue is None:
            return

        self.queue_index = 0
        if queue:
            self._show_story_item(0)
        self.is_matched = False
        self.perfect_attempt = True
        self.is_generating_story = False
        self._changed()
        self._narrate()

    def _narrate(self):
        if self.mode is not GameMode.STORY or self.is_generating_story or not self.listening:
            return
        if self.queue_index >= len(self.story.queue):
            return
        item = self.story.queue[self.queue_index]
        if not item.audio_base64:
            logger.warning(f"Audio not ready yet for index {self.queue_index}")
            return
        if self.audio_enabled and self.player:
            self.player.play(item.audio_base64)

    # ─── Audio ───────────────────────────────────────────────────────────────

    def set_audio_enabled(self, enabled: bool):
        self.audio_enabled = enabled
        if enabled:
            self._narrate()
        else:
            self._stop_audio()
        self._changed()

    def _stop_audio(self):
        if self.player:
            self.player.stop()

    async def aclose(self):
        self.listening = False
        self.reset()
        tasks = list(self._story_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.story.aclose()
