"""
main.py — CareCompanion application entry point.

Parses CLI args, loads configuration, builds the companion pipeline and runs
either the console simulator (typed lines stand in for speech) or the web
server (the browser page provides speech recognition and synthesis).
"""

from __future__ import annotations

import argparse
import logging
import sys
import traceback

# ──────────────────────────────────────────────────────────────
# ASCII banner
# ──────────────────────────────────────────────────────────────

_BANNER = r"""
   ____                 ____                                       _
  / ___|__ _ _ __ ___  / ___|___  _ __ ___  _ __   __ _ _ __ (_) ___  _ __
 | |   / _` | '__/ _ \| |   / _ \| '_ ` _ \| '_ \ / _` | '_ \| |/ _ \| '_ \
 | |__| (_| | | |  __/| |__| (_) | | | | | | |_) | (_| | | | | | (_) | | | |
  \____\__,_|_|  \___| \____\___/|_| |_| |_| .__/ \__,_|_| |_|_|\___/|_| |_|
                                           |_|
            CareCompanion  v1.0
     Voice companion for seniors living alone
"""

_SIM_HELP = """\
Type what the senior says and press Enter. Say "hey google" to begin.
Commands: :start  :stop  :end  :lang en|ml  :meds  :alerts  :remind  :quit
"""


# ──────────────────────────────────────────────────────────────
# Argument parsing
# ──────────────────────────────────────────────────────────────

def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="carecompanion",
        description="CareCompanion — turn-taking voice companion for seniors",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument(
        "--mode",
        choices=["sim", "web"],
        default="sim",
        help="'sim' for the console simulator, 'web' for the browser UI",
    )
    p.add_argument(
        "--config",
        default=None,
        help="Path to carecompanion.yaml (default: $CARECOMPANION_CONFIG or config/)",
    )
    p.add_argument(
        "--speak",
        action="store_true",
        help="Simulator only: speak replies aloud with pyttsx3",
    )
    p.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARN"],
        default="INFO",
        help="Minimum log level for stderr output",
    )
    p.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port for the web UI server (default from config, 7860)",
    )
    return p


# ──────────────────────────────────────────────────────────────
# Console simulator
# ──────────────────────────────────────────────────────────────

def _run_sim(config, speak_aloud: bool) -> int:
    """Drive the simulated microphone from stdin. Returns exit code."""
    from carecompanion.pipeline.companion import (
        ON_ALERT,
        ON_DROPPED,
        ON_NOTICE,
        ON_SPEAKING,
        ON_STATE_CHANGE,
        CompanionPipeline,
    )
    from carecompanion.speech.simulated import SimulatedInputChannel

    mic = SimulatedInputChannel()
    output = None
    if speak_aloud:
        from carecompanion.speech.tts import Pyttsx3OutputChannel
        output = Pyttsx3OutputChannel(config.tts)

    pipeline = CompanionPipeline(
        config,
        mode="sim",
        input_channel=mic,
        output_channel=output,
        echo=lambda text: print(f"  🔊 {text}"),
    )
    if output is not None:
        pipeline.subscribe(ON_SPEAKING, lambda d: print(f"  🔊 {d['text']}"))
    pipeline.subscribe(ON_STATE_CHANGE, lambda d: print(f"  [{d['state']}] {d['reason']}"))
    pipeline.subscribe(ON_NOTICE, lambda d: print(f"  ! {d.get('message', d.get('text', ''))}"))
    pipeline.subscribe(ON_DROPPED, lambda d: print(f"  (not heard while {d['phase']})"))
    pipeline.subscribe(ON_ALERT, lambda d: print(
        f"  ⚠ alert {d['id']}: {d['message']} → {d['delivered']} contact(s)"
    ))

    print(_SIM_HELP)
    pipeline.start()
    try:
        for raw in sys.stdin:
            line = raw.strip()
            if not line:
                continue
            if line.startswith(":"):
                if not _sim_command(pipeline, line):
                    break
                continue
            if not mic.say(line):
                print("  (microphone is off — wait for the companion to finish)")
    except KeyboardInterrupt:
        pass
    finally:
        pipeline.shutdown()
    return 0


def _sim_command(pipeline, line: str) -> bool:
    """Handle one ``:command``; returns False to quit."""
    cmd, _, arg = line[1:].partition(" ")
    if cmd == "quit":
        return False
    if cmd == "start":
        pipeline.controller.start()
    elif cmd == "stop":
        pipeline.controller.stop()
    elif cmd == "end":
        pipeline.controller.end_conversation()
    elif cmd == "lang":
        try:
            print(f"  language: {pipeline.set_language(arg.strip() or 'en').value}")
        except ValueError as exc:
            print(f"  {exc}")
    elif cmd == "meds":
        for med in pipeline.repository.list_medications():
            mark = "✓" if med.taken else " "
            print(f"  [{mark}] {med.time} {med.name} {med.dosage} (reminded {med.reminder_count}x)")
    elif cmd == "alerts":
        for alert in pipeline.notifier.session_log:
            print(f"  {alert.id} {alert.message} delivered={alert.delivered} resolved={alert.resolved}")
    elif cmd == "remind":
        meds = pipeline.repository.list_medications()
        if meds:
            from datetime import datetime
            hh, mm = meds[0].time.split(":")
            pipeline.reminders.check(datetime.now().replace(hour=int(hh), minute=int(mm)))
    else:
        print(_SIM_HELP)
    return True


# ──────────────────────────────────────────────────────────────
# Web UI entry point
# ──────────────────────────────────────────────────────────────

def _run_web(config, port: int) -> int:
    """
    Build the pipeline around the browser speech bridge and run the FastAPI
    server in the main thread.

    Open http://localhost:<port>/ in a browser to talk to the companion.
    """
    from carecompanion.pipeline.companion import CompanionPipeline
    from carecompanion.ui.web_app import send_to_browser, start_web_server

    pipeline = CompanionPipeline(config, mode="web", browser_send=send_to_browser)
    pipeline.start()

    print(f"[INFO] Web UI → http://localhost:{port}/")
    print("       Press Ctrl-C to stop.")

    try:
        start_web_server(pipeline, host=config.web.host, port=port)
    except KeyboardInterrupt:
        pass
    finally:
        pipeline.shutdown()
    return 0


# ──────────────────────────────────────────────────────────────
# Main
# ──────────────────────────────────────────────────────────────

def main() -> int:
    """Application entry point. Returns process exit code."""
    print(_BANNER)

    args = _build_parser().parse_args()

    level_map = {"DEBUG": logging.DEBUG, "INFO": logging.INFO, "WARN": logging.WARNING}
    logging.basicConfig(level=level_map.get(args.log_level, logging.INFO))

    from carecompanion.core.config import load_config
    from carecompanion.core.logger import get_logger, set_log_dir

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 2
    set_log_dir(config.logging.log_dir)

    log = get_logger()
    log.info("main", "args_parsed", {
        "mode": args.mode,
        "config": args.config,
        "log_level": args.log_level,
    })

    exit_code = 0
    try:
        if args.mode == "web":
            exit_code = _run_web(config, port=args.port or config.web.port)
        else:
            exit_code = _run_sim(config, speak_aloud=args.speak)
    except Exception:                              # noqa: BLE001
        tb = traceback.format_exc()
        print(tb, file=sys.stderr)
        log.critical("main", "unhandled_exception", {"traceback": tb})
        exit_code = 1
    finally:
        log.close()

    print(f"[INFO] CareCompanion exited with code {exit_code}")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
