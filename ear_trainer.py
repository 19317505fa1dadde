#!/usr/bin/env python3
"""
Piano Pals Ear Trainer
======================
Play the note on the card! The microphone listens, the note you hold is
compared with the target, and a correct note moves you on to the next card.

  flashcard mode  random natural notes, page back and forth through them
  story mode      a generated story, one note per sentence, read aloud

Dependencies: numpy, sounddevice, httpx, pydantic-settings
Usage:        ear-trainer [--mode story] [--no-audio] [--debug]

Commands (type and press Enter): n next · p previous · m switch mode ·
a audio on/off · s start/stop listening · q quit
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Optional

from audio_io import MicrophoneInput, SoundDevicePlayer
from capture_session import CaptureSession, CaptureStatus
from config import get_settings
from debug_log import LogFeed, configure_logging
from game_session import GameMode, GameSession
from genai import GeminiClient, SpeechSynthesizer, StoryTextGenerator
from notes import format_note, get_character
from pitch_estimator import YinPitchEstimator
from story_queue import StoryQueueManager

logger = logging.getLogger(__name__)

# ─── Terminal Colors ─────────────────────────────────────────────────────────
RST = "\033[0m"
BOLD = "\033[1m"
DIM = "\033[2m"
RED = "\033[91m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
CYAN = "\033[96m"
WHITE = "\033[97m"
CLR_LINE = "\033[2K"

DEBUG_LINES = 4


class EarTrainerApp:
    """Wires capture → game session and draws the terminal screen."""

    def __init__(self, capture_factory, game: GameSession, feed: Optional[LogFeed] = None):
        self.game = game
        self.feed = feed
        self.capture: CaptureSession = capture_factory(self._on_note, self._on_status)
        self.perfect_rounds = 0
        self.game.on_change = self.render
        self.game.on_reward = self._on_reward
        self._commands: asyncio.Queue[str] = asyncio.Queue()
        self._loop = asyncio.get_running_loop()
        self._redraw_pending = False
        self._unsubscribe = feed.subscribe(self._on_log) if feed is not None else None

    def _on_note(self, note):
        self.game.handle_note(note)
        self.render()

    def _on_status(self, status: CaptureStatus):
        self.game.handle_capture_status(status)
        self.render()

    def _on_reward(self):
        self.perfect_rounds += 1

    def _on_log(self, entry):
        # records can arrive from the audio callback thread; one redraw per burst
        if self._redraw_pending:
            return
        self._redraw_pending = True
        self._loop.call_soon_threadsafe(self._redraw)

    def _redraw(self):
        self._redraw_pending = False
        self.render()

    # ─── Display ─────────────────────────────────────────────────────────

    def render(self):
        state = self.game.snapshot()
        capture = self.capture

        mode_label = "Story" if state.mode is GameMode.STORY else "Flashcards"
        audio = "on" if self.game.audio_enabled else "off"
        lines = [
            "",
            f"  {BOLD}🎹  Piano Pals Ear Trainer  –  {mode_label}{RST}",
            f"  {DIM}{'━' * 50}{RST}",
            f"  Score: {GREEN}{state.score}{RST}  │  Card: {state.position + 1 if state.total else 0}/{state.total}"
            f"  │  Audio: {CYAN}{audio}{RST}",
            f"  {DIM}{'━' * 50}{RST}",
            "",
        ]

        if capture.status is CaptureStatus.ERROR:
            lines.append(f"  {RED}❌ {capture.error}{RST}")
            lines.append(f"  {DIM}Type s to try again.{RST}")
        elif capture.status is CaptureStatus.LOADING:
            lines.append(f"  {DIM}Starting microphone …{RST}")
        elif not capture.is_listening:
            lines.append(f"  {DIM}Not listening. Type s to start.{RST}")
        elif state.is_generating_story:
            lines.append(f"  {CYAN}✨ Writing your story …{RST}")
        elif state.target_note:
            character = get_character(state.target_note.note)
            friend = f"  {character.emoji} {character.name}" if character else ""
            lines.append(f"  🎯  Play this note:   {BOLD}>>> {YELLOW}{format_note(state.target_note)}{RST}{BOLD} <<<{RST}{friend}")
        else:
            lines.append(f"  {DIM}Waiting …{RST}")
        lines.append("")

        if state.story_text:
            lines.append(f"  📖  {state.story_text}")
            lines.append("")

        if state.is_matched:
            lines.append(f"  {GREEN}✓  Correct!{RST}")
        elif capture.current_note and capture.is_listening:
            lines.append(f"  {CYAN}🎤 Hearing: {WHITE}{format_note(capture.current_note)}{RST}")
        else:
            lines.append(f"  {DIM}🎤 Play the note on your piano …{RST}")
        if state.show_reward:
            lines.append(f"  {YELLOW}🌟 Perfect! 🌟{RST}")
        else:
            lines.append("")

        recent = " ".join(n.name for n in capture.history)
        lines.append(f"  {DIM}Recent: {recent or '-'}{RST}")
        lines.append("")

        if self.feed is not None:
            for entry in list(self.feed.entries)[-DEBUG_LINES:]:
                color = {"error": RED, "warn": YELLOW, "success": GREEN}.get(entry.type, DIM)
                lines.append(f"  {color}[{entry.type}] {entry.message[:70]}{RST}")
            lines.append("")

        lines.append(f"  {DIM}n next · p previous · m mode · a audio · s start/stop · q quit{RST}")
        lines.append("")

        # Jump to top-left and write
        sys.stdout.write("\033[H\033[J")
        for line in lines:
            sys.stdout.write(f"{CLR_LINE}{line}\n")
        sys.stdout.flush()

    # ─── Input ───────────────────────────────────────────────────────────

    def _read_stdin(self):
        line = sys.stdin.readline()
        if not line:
            self._commands.put_nowait("q")
            return
        self._commands.put_nowait(line.strip().lower())

    async def run(self):
        loop = asyncio.get_running_loop()
        loop.add_reader(sys.stdin, self._read_stdin)
        try:
            sys.stdout.write("\033[2J\033[H")  # clear for main UI
            await self.capture.start()
            self.render()
            while True:
                command = await self._commands.get()
                if command == "q":
                    break
                await self.dispatch(command)
                self.render()
        finally:
            loop.remove_reader(sys.stdin)

    async def dispatch(self, command: str):
        if command == "n":
            self.game.next()
        elif command == "p":
            self.game.previous()
        elif command == "m":
            other = GameMode.FLASHCARD if self.game.mode is GameMode.STORY else GameMode.STORY
            self.game.set_mode(other)
        elif command == "a":
            self.game.set_audio_enabled(not self.game.audio_enabled)
        elif command == "s":
            if self.capture.is_listening:
                self.capture.stop()
            else:
                await self.capture.start()

    async def aclose(self) -> tuple[int, int]:
        """Shut down; returns (score, perfect rounds) as they were before the reset."""
        result = (self.game.score, self.perfect_rounds)
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self.capture.aclose()
        await self.game.aclose()
        return result


# ─── Scoreboard ──────────────────────────────────────────────────────────────

def _print_scoreboard(score: int, perfect: int):
    """Print the final score summary."""
    print("\n\n")
    print(f"  {BOLD}📊  Final Score{RST}")
    print(f"  {DIM}{'━' * 30}{RST}")
    if score > 0:
        pct = perfect / score * 100
        print(f"  Notes played: {GREEN}{score}{RST}  (perfect: {perfect}, {pct:.0f}%)")
        if pct >= 90:
            print(f"  {GREEN}🌟 Excellent!{RST}")
        elif pct >= 70:
            print(f"  {YELLOW}👍 Good job!{RST}")
        elif pct >= 50:
            print(f"  {YELLOW}💪 Keep practicing!{RST}")
        else:
            print(f"  {RED}🎯 More practice needed – keep at it!{RST}")
    else:
        print("  No notes played.")
    print()
    print("  👋  Happy practicing! 🎹")
    print()


# ─── Main ────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ear-training game: play the note you see.")
    parser.add_argument("--mode", choices=[m.value for m in GameMode], default=GameMode.FLASHCARD.value)
    parser.add_argument("--no-audio", action="store_true", help="do not read the story aloud")
    parser.add_argument("--debug", action="store_true", help="show the debug log under the game")
    parser.add_argument("--log-file", default=None, help="write the full log to this file")
    parser.add_argument("--input-device", type=int, default=None, help="sounddevice input device index")
    return parser


async def run_app(args: argparse.Namespace, scoreboard: dict[str, int]):
    settings = get_settings()
    feed = LogFeed() if args.debug or settings.debug else None
    configure_logging("DEBUG" if args.debug else settings.log_level, feed, args.log_file)
    logger.info(f"Starting ear trainer in {args.mode} mode")

    client = GeminiClient.from_settings(settings)
    story = StoryQueueManager(StoryTextGenerator(client), SpeechSynthesizer(client))
    player = SoundDevicePlayer(settings.output_device)
    game = GameSession(story, player, mode=GameMode(args.mode))
    game.audio_enabled = not args.no_audio

    device = args.input_device if args.input_device is not None else settings.input_device
    estimator = YinPitchEstimator()

    def capture_factory(on_note, on_status):
        return CaptureSession(MicrophoneInput(device), estimator, on_note=on_note, on_status=on_status)

    app = EarTrainerApp(capture_factory, game, feed)
    try:
        await app.run()
    finally:
        scoreboard["score"], scoreboard["perfect"] = await app.aclose()
        if client:
            await client.close()


def main(argv: Optional[list[str]] = None):
    args = build_parser().parse_args(argv)
    scoreboard = {"score": 0, "perfect": 0}
    try:
        asyncio.run(run_app(args, scoreboard))
    except KeyboardInterrupt:
        pass
    _print_scoreboard(scoreboard["score"], scoreboard["perfect"])


if __name__ == "__main__":
    main()
