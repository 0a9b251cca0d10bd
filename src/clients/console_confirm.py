"""
Console confirmation UI.

Renders an approval prompt in the terminal and waits for y/n. input() runs in a
worker thread so the event loop (timeouts, cancellation) keeps running; if the
core settles the confirmation first, the answer typed afterwards is ignored.
"""

import asyncio

from colorama import Fore, Style, init

from src.core.state import RiskLevel

init(autoreset=True)

LEVEL_COLORS = {
    RiskLevel.SAFE: Fore.GREEN,
    RiskLevel.MODERATE: Fore.CYAN,
    RiskLevel.HIGH: Fore.YELLOW,
    RiskLevel.CRITICAL: Fore.RED,
}

APPROVE_ANSWERS = ("y", "yes")


def render_prompt(prompt: str, level: RiskLevel) -> str:
    color = LEVEL_COLORS.get(level, Fore.WHITE)
    return (
        f"\n{color}[{level.label.upper()}] Approval required{Style.RESET_ALL}\n"
        f"{prompt}\n"
        f"{Fore.BLUE}Allow? [y/N]: {Style.RESET_ALL}"
    )


class ConsoleConfirmationUI:
    async def request_confirmation(self, prompt: str, level: RiskLevel) -> bool:
        answer = await asyncio.to_thread(input, render_prompt(prompt, level))
        return answer.strip().lower() in APPROVE_ANSWERS
