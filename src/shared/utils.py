"""
Utility functions for Vigilant.

Logging setup, screenshot encoding and YAML prompt loading shared by the core and the clients.
"""

import io
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from PIL import Image

from src.shared.agent_config import LOG_FILE, LOG_LEVEL, PROMPTS_DIR


def setup_logger(name: str = "vigilant", log_file: Optional[Path] = None) -> logging.Logger:
    """
    Install console and file handlers on the `vigilant` logger tree.

    Child loggers ("vigilant.gate", "vigilant.nodes", ...) carry no handlers of their own
    and reach these through propagation. The console handler writes to stderr so log lines
    never interleave with the chat loop and approval prompts on stdout; the file handler
    records DEBUG and up regardless of LOG_LEVEL.

    Args:
        name: Root of the logger tree to configure.
        log_file: Optional path to the log file. If None, uses LOG_FILE from config.

    Returns:
        logging.Logger: The configured logger; calling again returns it unchanged.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    log_file = log_file or LOG_FILE
    log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file, encoding='utf-8')
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    return logger


def encode_screenshot(image: Image.Image, max_dimension: int, quality: float) -> bytes:
    """
    Downscale a captured frame so its longer side is at most `max_dimension` and encode it as JPEG.

    Args:
        image: Captured frame; any mode, alpha is dropped.
        max_dimension: Longest side in pixels after scaling (the aspect ratio is kept).
        quality: JPEG quality as a 0-1 fraction, as configured for capture.

    Returns:
        bytes: JPEG data ready to attach to a model request.
    """
    if image.mode != "RGB":
        image = image.convert("RGB")
    if max(image.size) > max_dimension:
        image = image.copy()
        image.thumbnail((max_dimension, max_dimension))
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=max(1, min(95, int(quality * 100))))
    return buffer.getvalue()


def truncate(text: str, limit: int, suffix: str = "") -> str:
    """Cut text to `limit` characters, appending `suffix` only when something was cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + suffix


def _read_prompt_yaml(prompt_file: Path) -> Dict[str, Any]:
    if not prompt_file.is_file():
        raise FileNotFoundError(f"Prompt file not found: {prompt_file}")
    with open(prompt_file, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f) or {}


def load_prompt_file(name: str, prompts_dir: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load a YAML prompt file from the prompts directory.

    Args:
        name: File name, e.g. "safety.yaml".
        prompts_dir: Optional override of the prompts directory.

    Returns:
        dict: Parsed YAML mapping (empty if the file is empty).

    Raises:
        FileNotFoundError: If the prompt file doesn't exist.
    """
    return _read_prompt_yaml((prompts_dir or PROMPTS_DIR) / name)


# (yaml key, heading, numbered)
_SYSTEM_SECTIONS = (
    ("capabilities", "Capabilities:", False),
    ("critical_rules", "CRITICAL RULES:", True),
)


def load_system_prompt(prompt_file: Optional[Path] = None) -> str:
    """
    Assemble the planner system prompt from system.yaml.

    The role text comes first, then the bulleted capabilities and the numbered
    critical rules, then the completion instructions that define <task_complete/>.
    """
    data = _read_prompt_yaml(Path(prompt_file) if prompt_file is not None else PROMPTS_DIR / "system.yaml")

    parts = [str(data.get("role", "")).strip()]
    for key, heading, numbered in _SYSTEM_SECTIONS:
        items = data.get(key) or []
        if not items:
            continue
        lines = [f"{i}. {item}" if numbered else f"- {item}" for i, item in enumerate(items, 1)]
        parts.append(heading + "\n" + "\n".join(lines))
    if data.get("completion"):
        parts.append("Completion:\n" + str(data["completion"]).strip())

    return "\n\n".join(p for p in parts if p)
