#!/usr/bin/env -S uv run --script

# /// script
# requires-python = ">=3.9"
# dependencies = [
#   "RealtimeSTT",
#   "anthropic",
#   "python-dotenv",
#   "requests",
#   "rich",
# ]
# ///

"""
# Mira Voice Query Assistant

Listens for "hey mira", shows what you say as a live transcript and sends the
finished question to Claude exactly once.

## Features
- Real-time speech recognition using RealtimeSTT (or typed input with --typed)
- Wake phrase detection tolerant of common mis-hearings ("hey mirror", "hey myra", ...)
- Debounced end-of-query detection
- Authoritative transcript fetched from a transcript server (--server-url) or kept locally
- Timer tool: "hey mira, set a timer for 10 seconds"
- Location context (LocationIQ, set LOCATIONIQ_TOKEN) for place and time questions

## Requirements
- Anthropic API key (ANTHROPIC_API_KEY)
- Python 3.9+

## Usage
```bash
./voice_query_assistant.py
./voice_query_assistant.py --typed
./voice_query_assistant.py --typed --location 40.7128,-74.0060
./voice_query_assistant.py --server-url wss://cloud.example.com/tpa-ws --session-id abc123
```

Press Ctrl+C to exit.
"""

import argparse
import asyncio
import logging
import sys
import uuid
from typing import Optional, Tuple

from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel

from config import AssistantConfig, missing_env_vars
from display import ConsoleDisplay
from mira_agent import MiraAgent
from session_state import SegmenterState, TranscriptionFragment
from transcript_store import HttpTranscriptStore, LocalTranscriptStore, clean_server_url
from voice_query_server import VoiceQueryServer

STT_MODEL = "small.en"  # Options: tiny.en, base.en, small.en, medium.en, large-v2

# Initialize logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True)],
)
log = logging.getLogger("mira_voice")

# Suppress RealtimeSTT logs and all related loggers
logging.getLogger("RealtimeSTT").setLevel(logging.ERROR)
logging.getLogger("faster_whisper").setLevel(logging.ERROR)
logging.getLogger("urllib3").setLevel(logging.WARNING)
logging.getLogger("anthropic").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)

console = Console()

# Load environment variables
load_dotenv()


class VoiceQueryAssistant:
    def __init__(
        self,
        config: AssistantConfig,
        session_id: Optional[str] = None,
        typed: bool = False,
        location: Optional[Tuple[float, float]] = None,
    ):
        log.info("Initializing Mira Voice Query Assistant")
        self.config = config
        self.session_id = session_id or uuid.uuid4().hex[:5]
        self.typed = typed
        self.location = location
        self.recorder = None

        if config.server_url:
            self.transcript_store = HttpTranscriptStore(
                clean_server_url(config.server_url), timeout=config.transcript_timeout
            )
            log.info(f"Using transcript server {self.transcript_store.server_url}")
        else:
            self.transcript_store = LocalTranscriptStore()
            log.info("No transcript server configured, keeping the transcript locally")

        self.server = VoiceQueryServer(
            self.transcript_store,
            agent_factory=lambda session_id, user_id: MiraAgent(
                session_id, user_id, model=config.agent_model
            ),
            config=config,
        )
        self.display = ConsoleDisplay(console=console)

    def setup_recorder(self):
        """Set up the RealtimeSTT recorder"""
        from RealtimeSTT import AudioToTextRecorder

        log.info(f"Setting up STT recorder with model {STT_MODEL}")

        def on_realtime_update(text):
            # Called on the recorder's thread
            self.server.submit_fragment_threadsafe(
                self.session_id, TranscriptionFragment(text=text, is_final=False)
            )

        self.recorder = AudioToTextRecorder(
            model=STT_MODEL,
            language="en",
            compute_type="float32",
            post_speech_silence_duration=0.8,
            beam_size=5,
            spinner=False,
            enable_realtime_transcription=True,
            realtime_model_type="tiny.en",
            realtime_processing_pause=0.4,
            on_realtime_transcription_update=on_realtime_update,
        )

        log.info(f"STT recorder initialized with model {STT_MODEL}")

    async def listen_microphone(self):
        """Feed final sentences from the microphone into the session"""
        while True:
            text = await asyncio.to_thread(self.recorder.text)
            if text:
                log.info(f'Heard: "{text}"')
                self.server.on_fragment(
                    self.session_id, TranscriptionFragment(text=text, is_final=True)
                )

    async def listen_typed(self):
        """Each line typed on stdin is a final transcript"""
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            text = line.strip()
            if text:
                self.server.on_fragment(
                    self.session_id, TranscriptionFragment(text=text, is_final=True)
                )

    async def wait_until_idle(self, timeout: float = 60.0):
        """Let a pending query finish before shutting down"""
        session = self.server.session(self.session_id)
        if session is None:
            return
        state = session.segmenter.state
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if state.pending_timer is None and state.state != SegmenterState.PROCESSING:
                return
            await asyncio.sleep(0.1)
        log.warning("Timed out waiting for the last query")

    async def run(self):
        log.info("Starting conversation loop")
        self.server.on_start(self.session_id, self.display)
        if self.location:
            lat, lng = self.location
            await self.server.on_location(self.session_id, {"lat": lat, "lng": lng})

        source = "typed input" if self.typed else f"microphone (STT model: {STT_MODEL})"
        console.print(
            Panel.fit(
                "[bold magenta]🎤 Mira Voice Assistant Ready[/bold magenta]\n"
                f"Say 'hey mira' followed by your question.\n"
                f"Input: {source}\n"
                f"Session ID: {self.session_id}\n"
                f"Press Ctrl+C to exit."
            )
        )

        try:
            if self.typed:
                await self.listen_typed()
                await self.wait_until_idle()
            else:
                self.setup_recorder()
                await self.listen_microphone()
        finally:
            self.server.stop_all()
            try:
                if self.recorder:
                    self.recorder.shutdown()
            except Exception as shutdown_error:
                log.error(f"Error during shutdown: {str(shutdown_error)}")

            console.print("[bold red]Assistant stopped.[/bold red]")
            log.info("Conversation loop ended")


def parse_location(value: str) -> Tuple[float, float]:
    try:
        lat, lng = (float(part) for part in value.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected LAT,LNG, got {value!r}")
    return lat, lng


async def main():
    """Main entry point for the assistant"""
    parser = argparse.ArgumentParser(description="Mira voice query assistant")
    parser.add_argument(
        "--typed",
        "-t",
        action="store_true",
        help="Read transcripts from stdin instead of the microphone",
    )
    parser.add_argument(
        "--server-url",
        "-s",
        type=str,
        help="Transcript server URL (ws(s)://.../tpa-ws or https://...). Overrides MIRA_SERVER_URL.",
    )
    parser.add_argument(
        "--session-id",
        "-i",
        type=str,
        help="Session ID used for transcript lookups (defaults to a random short ID)",
    )
    parser.add_argument(
        "--location",
        "-l",
        type=parse_location,
        help="Your position as LAT,LNG, used as context for place and time questions",
    )
    parser.add_argument(
        "--model",
        "-m",
        type=str,
        help="Claude model used to answer queries. Overrides MIRA_AGENT_MODEL.",
    )
    args = parser.parse_args()

    missing_vars = missing_env_vars()
    if missing_vars:
        console.print(
            f"[bold red]Error: Missing required environment variables: {', '.join(missing_vars)}[/bold red]"
        )
        console.print("Please set these in your .env file or as environment variables.")
        sys.exit(1)

    config = AssistantConfig.from_env()
    if args.server_url:
        config.server_url = args.server_url
    if args.model:
        config.agent_model = args.model

    log.info("Starting Mira Voice Query Assistant")
    assistant = VoiceQueryAssistant(
        config, session_id=args.session_id, typed=args.typed, location=args.location
    )
    await assistant.run()


def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        log.info("Program terminated by user")
        console.print("\n[bold red]Program terminated by user.[/bold red]")


if __name__ == "__main__":
    cli()
