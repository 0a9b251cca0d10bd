"""
Desktop observation collaborators.

- DesktopCapture: screenshots via mss, accessibility text via an MCP tool
- McpContextProvider: ActionContext snapshot assembled from MCP tool output

Both degrade to empty observations when the backing tool is not available.
"""

import asyncio
import json
import logging
from typing import Optional

import mss
from mss.exception import ScreenShotError
from PIL import Image

from src.core.errors import CaptureError
from src.core.state import ActionContext
from src.shared.dataclasses import FocusedElementDetail
from src.shared.utils import encode_screenshot

from .mcp_executor import McpToolExecutor

logger = logging.getLogger("vigilant.desktop")

UI_TREE_TOOL = "inspect_ui_tree"
FOCUSED_ELEMENT_TOOL = "get_focused_element"
ACTIVE_WINDOW_TOOL = "get_active_window"


def _grab(target: Optional[int], max_dimension: int, quality: float) -> bytes:
    with mss.mss() as sct:
        # monitors[0] is the union of all screens; 1.. are the physical displays
        index = target if target is not None and 0 < target < len(sct.monitors) else 1
        shot = sct.grab(sct.monitors[index])
        image = Image.frombytes("RGB", shot.size, shot.bgra, "raw", "BGRX")
    return encode_screenshot(image, max_dimension, quality)


class DesktopCapture:
    def __init__(self, tools: Optional[McpToolExecutor] = None):
        self.tools = tools

    async def capture_screen(self, target: Optional[int], max_dimension: int, quality: float) -> bytes:
        try:
            return await asyncio.to_thread(_grab, target, max_dimension, quality)
        except (ScreenShotError, OSError) as e:
            raise CaptureError(f"Screenshot capture failed: {e}") from e

    async def get_ui_tree_summary(self, target: Optional[int]) -> str:
        if self.tools is None or not self.tools.has(UI_TREE_TOOL):
            return ""
        try:
            return await self.tools.call_text(UI_TREE_TOOL)
        except Exception as e:
            logger.warning("UI tree read failed: %s", e)
            return ""

    async def get_focused_element_detail(self, target: Optional[int]) -> Optional[FocusedElementDetail]:
        if self.tools is None or not self.tools.has(FOCUSED_ELEMENT_TOOL):
            return None
        try:
            data = json.loads(await self.tools.call_text(FOCUSED_ELEMENT_TOOL) or "{}")
        except Exception as e:
            logger.warning("Focused element read failed: %s", e)
            return None
        return FocusedElementDetail(
            role=str(data.get("role", "")),
            value=str(data.get("value", "")),
            selected_child_count=int(data.get("selected_child_count", 0) or 0),
        )


class McpContextProvider:
    """Reads a JSON object {app, bundle_id, title, focused_role, focused_label, url} from an MCP tool."""

    def __init__(self, tools: Optional[McpToolExecutor] = None):
        self.tools = tools

    async def current_context(self) -> ActionContext:
        if self.tools is None or not self.tools.has(ACTIVE_WINDOW_TOOL):
            return ActionContext()
        try:
            data = json.loads(await self.tools.call_text(ACTIVE_WINDOW_TOOL) or "{}")
        except Exception as e:
            logger.warning("Active window read failed: %s", e)
            return ActionContext()
        return ActionContext(
            active_app_name=data.get("app"),
            active_app_bundle_id=data.get("bundle_id"),
            window_title=data.get("title"),
            focused_element_role=data.get("focused_role"),
            focused_element_label=data.get("focused_label"),
            current_url=data.get("url"),
        )
