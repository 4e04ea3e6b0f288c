"""Config loading, per-turn settings snapshot and logging helpers."""

from __future__ import annotations

import copy
import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

# =========================
# Paths
# =========================

HANDSFREE_HOME = Path(os.environ.get("HANDSFREE_HOME", "~/.handsfree")).expanduser()
CONFIG_PATH = HANDSFREE_HOME / "config" / "voice.yaml"
LOG_DIR = HANDSFREE_HOME / "logs"
DATA_DIR = HANDSFREE_HOME / "data"
MEMORY_DB = DATA_DIR / "conversations.db"
AUDIO_DIR = DATA_DIR / "audio"
MODELS_DIR = HANDSFREE_HOME / "models"

CANONICAL_SAMPLE_RATE = 16000

DEFAULT_CONFIG: Dict[str, Any] = {
    "version": "v1",
    "audio": {
        "input_device": None,
        "output_device": None,
        "input_samplerate": None,
        "block_size": 1024,
    },
    "vad": {
        "activation_threshold": 0.02,
        "silence_threshold": 0.012,
        "silence_duration_s": 1.5,
        "frame_size": 512,
    },
    "orchestrator": {
        "auto_listen": True,
        "listen_timeout_s": 60.0,
        "cooldown_s": 0.6,
        "error_restart_delay_s": 0.2,
        "cancel_join_timeout_s": 5.0,
        "max_consecutive_failures": 3,
        "keyboard_tap": True,
    },
    "stt": {
        "engine": "mistral",
        "endpoint": "https://api.mistral.ai/v1/audio/transcriptions",
        "model": "voxtral-mini-latest",
        "api_key_env": "MISTRAL_API_KEY",
        "timeout_s": 30.0,
        "whisper_model": "small",
        "device": "cpu",
        "compute_type": "int8",
        "beam_size": 1,
        "language": "en",
    },
    "llm": {
        "provider": "ollama",
        "model": "llama3.2:3b",
        "host": "http://127.0.0.1:11434",
        "api_key_env": None,
        "timeout_s": 60.0,
        "temperature": 0.7,
        "max_tokens": 1024,
        "max_context_messages": 40,
        "system_prompt": "You are a helpful voice assistant. Keep answers short and conversational.",
    },
    "tts": {
        "engine": "openai",
        "endpoint": "https://api.openai.com/v1/audio/speech",
        "model": "gpt-4o-mini-tts",
        "voice": "nova",
        "format": "wav",
        "instruction": "",
        "api_key_env": "OPENAI_API_KEY",
        "timeout_s": 30.0,
        "piper_voice": None,
        "piper_config": None,
        "min_chunk_length": 60,
        "min_chunk_scale": 1.0,
        "max_chunk_length": 1000,
        "chunk_growth": 2.25,
        "playback_speed": 1.0,
        "max_concurrent_fetches": 2,
    },
    "memory": {
        "enabled": True,
        "session_timeout_hours": 24,
    },
    "logging": {
        "debug": False,
    },
}


def _merge_defaults(cfg: Dict[str, Any], defaults: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in defaults.items():
        if isinstance(value, dict):
            section = cfg.setdefault(key, {})
            if section is None:
                section = cfg[key] = {}
            _merge_defaults(section, value)
        else:
            cfg.setdefault(key, value)
    return cfg


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load YAML config, writing the defaults on first run."""
    path = path or CONFIG_PATH
    if not path.exists():
        cfg = copy.deepcopy(DEFAULT_CONFIG)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(cfg, f, sort_keys=False)
        return cfg

    with open(path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}

    # Normalize sections
    return _merge_defaults(cfg, DEFAULT_CONFIG)


# =========================
# Settings snapshot
# =========================

@dataclass(frozen=True)
class SettingsSnapshot:
    """Values the loop reads once per turn."""

    min_chunk_scale: float = 1.0
    min_chunk_length: int = 60
    max_chunk_length: int = 1000
    chunk_growth: float = 2.25
    playback_speed: float = 1.0
    vad_silence_s: float = 1.5
    cooldown_s: float = 0.6
    listen_timeout_s: float = 60.0

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "SettingsSnapshot":
        tts = cfg.get("tts", {})
        vad = cfg.get("vad", {})
        orch = cfg.get("orchestrator", {})
        speed = float(tts.get("playback_speed", 1.0))
        if speed <= 0:
            speed = 1.0
        return cls(
            min_chunk_scale=float(tts.get("min_chunk_scale", 1.0)),
            min_chunk_length=int(tts.get("min_chunk_length", 60)),
            max_chunk_length=int(tts.get("max_chunk_length", 1000)),
            chunk_growth=float(tts.get("chunk_growth", 2.25)),
            playback_speed=speed,
            vad_silence_s=float(vad.get("silence_duration_s", 1.5)),
            cooldown_s=float(orch.get("cooldown_s", 0.6)),
            listen_timeout_s=float(orch.get("listen_timeout_s", 60.0)),
        )


# =========================
# Logging
# =========================

def ensure_logger(log_cfg: Dict[str, Any]) -> Tuple[logging.Logger, str]:
    """Set up file + stdout logger."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    ts = datetime.now().strftime("%Y%m%d")
    log_path = LOG_DIR / f"voice_loop-{ts}.log"

    logger = logging.getLogger("handsfree.voice")
    logger.setLevel(logging.DEBUG if log_cfg.get("debug") else logging.INFO)
    logger.handlers.clear()

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setLevel(logging.DEBUG)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)

    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    fh.setFormatter(fmt)
    ch.setFormatter(fmt)

    logger.addHandler(fh)
    logger.addHandler(ch)

    return logger, str(log_path)


def now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


def log_event(logger: logging.Logger, kind: str, payload: Dict[str, Any]):
    try:
        logger.info("%s %s", kind, json.dumps(payload))
    except (TypeError, ValueError):
        logger.info("%s %s", kind, str(payload))
