"""Settings for the capture and mixdown pipeline.

Uses pydantic-settings to load MIXDOWN_* variables from the environment
and the project's .env file, with type validation and the defaults the
browser app shipped with.
"""

from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Offline mixdown
    mix_sample_rate: int = 44100
    mix_filename: str = "my-song.wav"
    vocals_basename: str = "my-vocals"
    monitor_basename: str = "my-take"

    # Initial gains (UI sliders run 0..1)
    instrumental_gain: float = 0.9
    vocals_gain: float = 1.0

    # Live path: 20ms frames at 48kHz, what WebRTC/Opus expects
    live_sample_rate: int = 48000
    frame_samples: int = 960

    # System microphone (ffmpeg input device + demuxer)
    mic_device: str = "default"
    mic_format: str = "pulse"

    # Recording container/codec preference, best first
    recording_types: List[str] = [
        "audio/webm;codecs=opus",
        "audio/webm",
        "audio/ogg;codecs=opus",
        "audio/ogg",
    ]

    # Live capture variant: also record the monitor mix (mic + instrumental)
    capture_monitor_mix: bool = False
    monitor_while_recording: bool = False
    tap_seconds: float = 1.0

    # Instrumental fetch timeout (seconds); None waits indefinitely
    fetch_timeout: Optional[float] = None

    model_config = {
        "env_prefix": "MIXDOWN_",
        "env_file": str(Path(__file__).resolve().parent.parent / ".env"),
        "extra": "ignore",
    }


settings = Settings()
