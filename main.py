import os
import sys
import queue
import threading

from phraseloop.assistant import Assistant
from phraseloop.config import ConfigError, load_settings
from phraseloop.logui import ui_state, error, UI_MODE
from phraseloop.voice import Voice


def read_lines(lines: queue.Queue):
    for line in sys.stdin:
        lines.put(line.rstrip("\n"))
    lines.put(None)


def main():
    base_dir = os.path.dirname(os.path.abspath(__file__))
    args = [a for a in sys.argv[1:] if not a.startswith("--")]
    config_path = args[0] if args else os.environ.get("PHRASELOOP_CONFIG")

    try:
        ui_state("STARTING")
        settings = load_settings(config_path)
        assistant = Assistant(settings, base_dir=base_dir)
        voice = Voice(base_dir, enabled="--no-tts" not in sys.argv)
        assistant.speak_handler(voice.on_speak)
        assistant.start()
    except ConfigError as e:
        ui_state("ERROR")
        error(f"Bad configuration: {e}")
        sys.exit(2)
    except Exception as e:
        ui_state("ERROR")
        error(f"Failed to start: {e}")
        if not UI_MODE:
            input("Press Enter to exit...")
        sys.exit(1)

    lines: queue.Queue = queue.Queue()
    threading.Thread(target=read_lines, args=(lines,), daemon=True).start()
    assistant.run(lines)


if __name__ == "__main__":
    main()
