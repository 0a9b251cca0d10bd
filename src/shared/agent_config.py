"""
Vigilant project constants, path configuration and runtime settings.

This module contains all project-wide constants and path settings.
All path configurations should be done here.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent.parent

# Data directories
DATA_DIR = PROJECT_ROOT / "data"
LOGS_PATH = DATA_DIR / "logs"
AUDIT_DIR = DATA_DIR / "audit"

# Source directories
SRC_DIR = PROJECT_ROOT / "src"
PROMPTS_DIR = SRC_DIR / "prompts"

AGENT_NAME = "Vigilant"


# Environment variables with defaults
def get_env_var(key: str, default: str = "") -> str:
    """
    Get environment variable with optional default.

    Args:
        key: Environment variable name.
        default: Default value if not found.

    Returns:
        str: Environment variable value or default.
    """
    return os.getenv(key, default)


# API Keys
OPENAI_API_KEY = get_env_var("OPENAI_API_KEY")
OPENAI_BASE_URL = get_env_var("OPENAI_BASE_URL")

# Models
DEFAULT_EXECUTOR_MODEL = "gpt-4o"
DEFAULT_FAST_MODEL = "gpt-4o-mini"
DEFAULT_BRAIN_MODEL = "o3"

# MCP tool servers, "name=path/to/server.py,name2=..."
MCP_SERVERS = get_env_var("VIGILANT_MCP_SERVERS")

# Logging Configuration
LOG_LEVEL = get_env_var("LOG_LEVEL", "INFO")
LOG_FILE = LOGS_PATH / "vigilant.log"

PERMISSION_MODES = ("standard", "autonomous", "yolo")


def _to_bool(value: str, default: bool = False) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: str, default: int) -> int:
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed >= 0 else default


def _to_float(value: str, default: float) -> float:
    try:
        parsed = float(value.strip())
    except ValueError:
        return default
    return parsed if parsed > 0 else default


@dataclass(frozen=True)
class AgentSettings:
    """
    Runtime knobs for one agent process.

    Budgets of 0 (max_run_seconds / max_total_tokens) mean "unlimited".
    """
    permission_mode: str = "standard"

    arbiter_timeout_s: float = 10.0
    confirmation_timeout_s: float = 60.0

    max_iterations: int = 50
    max_recovery_attempts: int = 5
    max_total_recovery_attempts: int = 8
    max_run_seconds: int = 0
    max_total_tokens: int = 0

    stuck_threshold: int = 3
    hash_tolerance: int = 10
    stuck_min_iteration: int = 2
    memory_refresh_interval: int = 10

    executor_model: str = DEFAULT_EXECUTOR_MODEL
    fast_model: str = DEFAULT_FAST_MODEL
    brain_model: str = DEFAULT_BRAIN_MODEL
    max_tokens: int = 4096

    api_key: str = ""
    base_url: str = ""
    audit_enabled: bool = True

    @classmethod
    def from_env(cls) -> "AgentSettings":
        mode = get_env_var("VIGILANT_PERMISSION_MODE", "standard").strip().lower()
        if mode not in PERMISSION_MODES:
            mode = "standard"

        return cls(
            permission_mode=mode,
            arbiter_timeout_s=_to_float(get_env_var("VIGILANT_ARBITER_TIMEOUT", "10"), 10.0),
            confirmation_timeout_s=_to_float(get_env_var("VIGILANT_CONFIRM_TIMEOUT", "60"), 60.0),
            max_iterations=_to_int(get_env_var("VIGILANT_MAX_ITERATIONS", "50"), 50) or 50,
            max_run_seconds=_to_int(get_env_var("VIGILANT_MAX_RUN_SECONDS", "0"), 0),
            max_total_tokens=_to_int(get_env_var("VIGILANT_MAX_TOKENS", "0"), 0),
            executor_model=get_env_var("VIGILANT_MODEL") or DEFAULT_EXECUTOR_MODEL,
            fast_model=get_env_var("VIGILANT_FAST_MODEL") or DEFAULT_FAST_MODEL,
            brain_model=get_env_var("VIGILANT_BRAIN_MODEL") or DEFAULT_BRAIN_MODEL,
            api_key=OPENAI_API_KEY,
            base_url=OPENAI_BASE_URL,
            audit_enabled=_to_bool(get_env_var("VIGILANT_AUDIT_ENABLED", "true"), default=True),
        )


# Ensure directories exist
def ensure_directories():
    """Create necessary directories if they don't exist."""
    directories = [
        DATA_DIR,
        LOGS_PATH,
        AUDIT_DIR,
    ]

    for directory in directories:
        directory.mkdir(parents=True, exist_ok=True)

# Initialize directories on import
ensure_directories()
