import os
import glob
import random

import pyttsx3

from .events import Event
from .logui import debug, error, info, ui_command

TAG = "Voice"


class Voice:
    """pyttsx3 speaker for speak events.

    Cue keys name a short sound (Assets/voice/<cue>.wav or <cue>_*.wav). The
    sound path is handed to the UI; the text is always spoken.
    """

    def __init__(self, base_dir: str, enabled: bool = True, rate: int = 180, volume: float = 0.9):
        self.base_dir = base_dir
        self.enabled = enabled
        self.rate = rate
        self.volume = volume

        candidates = [
            os.path.join(base_dir, "Assets", "voice"),
            os.path.join(base_dir, "assets", "voice"),
            os.path.join(os.path.dirname(base_dir), "Assets", "voice"),
        ]
        self.voice_dir = next((p for p in candidates if os.path.isdir(p)), candidates[0])
        self._engine = None
        self.spoken: list[str] = []

    @property
    def engine(self):
        if self._engine is None and self.enabled:
            try:
                engine = pyttsx3.init()
                engine.setProperty("rate", self.rate)
                engine.setProperty("volume", self.volume)
                for v in engine.getProperty("voices") or []:
                    name = (getattr(v, "name", "") or "").lower()
                    if "zira" in name or "female" in name:
                        engine.setProperty("voice", v.id)
                        break
                self._engine = engine
            except (OSError, RuntimeError) as e:
                error(f"TTS unavailable, falling back to text: {e}", tag=TAG)
                self.enabled = False
        return self._engine

    def pick_cue(self, cue: str | None) -> str | None:
        if not cue:
            return None
        exts = [".wav", ".mp3"]
        for ext in exts:
            exact = os.path.join(self.voice_dir, f"{cue}{ext}")
            if os.path.exists(exact):
                return exact

        candidates = []
        for ext in exts:
            pattern = os.path.join(self.voice_dir, f"{cue}_*{ext}")
            candidates.extend([p for p in glob.glob(pattern) if os.path.isfile(p)])

        if not candidates:
            return None
        return random.choice(candidates)

    def say(self, text: str, cue: str | None = None):
        audio = self.pick_cue(cue)
        debug(f"cue={cue} audio={audio}", tag=TAG)
        if audio:
            ui_command(f"CUE:{audio}")

        self.spoken.append(text)
        info(f"> {text}", tag=TAG)
        engine = self.engine
        if engine is None:
            return
        try:
            engine.say(text)
            engine.runAndWait()
        except RuntimeError as e:
            error(f"TTS error: {e}", tag=TAG)

    def on_speak(self, event: Event):
        self.say(event.payload.get("text") or "", event.payload.get("cue"))
