import argparse
import asyncio
import json
import sys
import threading
from typing import Optional

from loguru import logger

from carelink_voice.handlers.realtime.consultation.errors import ConsultationError
from carelink_voice.handlers.realtime.consultation.models import ConsultationConfig, ConsultationResult
from carelink_voice.handlers.realtime.consultation.record_store import RecordStore
from carelink_voice.handlers.realtime.consultation.session_controller import (
    CONNECTION_LOST_NOTICE, START_FAILED_NOTICE, ConsultationSession, SessionCallbacks,
)
from carelink_voice.service.service_utils.logger_utils import config_loggers
from carelink_voice.service.service_utils.service_config_loader import API_KEY_ENV, load_configs


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='CareLink AI Voice Consultation')
    parser.add_argument("--config", type=str, default="config/consultation.yaml", help="config file to use")
    parser.add_argument("--env", type=str, default="default", help="environment to use in config file")
    parser.add_argument("--muted", action="store_true", help="start with the microphone muted")
    return parser.parse_args(argv)


class ConsoleConsultation:
    """在终端里运行一次问诊：语音对话，也可以直接输入文字"""

    def __init__(self, config: ConsultationConfig, record_store: RecordStore, muted: bool = False):
        self.result: Optional[ConsultationResult] = None
        self.connected = False
        self.muted = muted
        self._done: Optional[asyncio.Event] = None
        self._assistant_line = ""
        self._pending = set()
        self.session = ConsultationSession(config, record_store, SessionCallbacks(
            on_connection_change=self._on_connection_change,
            on_text=self._on_text,
            on_input_text=self._on_input_text,
            on_complete=self._on_complete,
            on_error=self._on_error,
            on_interrupted=self._on_interrupted,
        ))

    async def run(self) -> Optional[ConsultationResult]:
        self._done = asyncio.Event()
        await self.session.start()
        if not self.connected:
            return None

        self.session.set_muted(self.muted)
        print("Speak naturally, or type a reply and press Enter. Commands: /mute /unmute /quit")
        self._start_keyboard_reader(asyncio.get_running_loop())
        await self._done.wait()
        await self.session.stop()
        return self.result

    def _start_keyboard_reader(self, loop: asyncio.AbstractEventLoop):
        def read_lines():
            for line in sys.stdin:
                loop.call_soon_threadsafe(self._on_line, line.rstrip("\n"))
            loop.call_soon_threadsafe(self._on_line, "/quit")

        threading.Thread(target=read_lines, daemon=True).start()

    def _on_line(self, line: str):
        command = line.strip()
        if not command:
            return
        if command == "/quit":
            self._finish()
        elif command == "/mute":
            self.session.set_muted(True)
        elif command == "/unmute":
            self.session.set_muted(False)
        else:
            print(f"You: {command}")
            task = asyncio.ensure_future(self.session.send_text_response(command))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    def _finish(self):
        if self._done is not None:
            self._done.set()

    def _on_connection_change(self, connected: bool):
        self.connected = connected
        if connected:
            print("Listening...")
        else:
            self._finish()

    def _on_text(self, text: str, is_final: bool):
        self._assistant_line += text
        if is_final and self._assistant_line:
            print(f"CareLink: {self._assistant_line}")
            self._assistant_line = ""

    def _on_input_text(self, text: str):
        logger.debug(f"[CONSOLE] 用户语音: {text}")

    def _on_interrupted(self):
        if self._assistant_line:
            print(f"CareLink: {self._assistant_line} ...")
            self._assistant_line = ""

    def _on_complete(self, result: ConsultationResult):
        self.result = result
        self.session.request_stop()

    def _on_error(self, error: Exception):
        if not (isinstance(error, ConsultationError) and error.fatal):
            return
        print(START_FAILED_NOTICE if not self.connected else CONNECTION_LOST_NOTICE)


def main(argv=None):
    args = parse_args(argv)
    logger_config, consultation_config, seed = load_configs(args)
    config_loggers(logger_config)

    if not consultation_config.api_key:
        logger.error(f"{API_KEY_ENV} is not set in environment variables")
        return 1

    console = ConsoleConsultation(consultation_config, seed.build_store(), muted=args.muted)
    try:
        result = asyncio.run(console.run())
    except KeyboardInterrupt:
        print("\nConsultation interrupted by user")
        return 1

    if result is None:
        return 1
    print(json.dumps(result.to_booking_payload(), indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
