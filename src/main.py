"""
Interactive entry point.

Reads commands from the terminal and runs each one through the gated iteration
loop. Tools come from the MCP servers listed in VIGILANT_MCP_SERVERS.
"""

import asyncio

from colorama import Fore, Style, init

from src.clients.console_confirm import ConsoleConfirmationUI
from src.clients.desktop import DesktopCapture, McpContextProvider
from src.clients.mcp_executor import McpToolExecutor, parse_server_config
from src.core.workflow import RunOrchestrator, build_runtime_deps
from src.shared.agent_config import AGENT_NAME, MCP_SERVERS, AgentSettings
from src.shared.utils import setup_logger

init(autoreset=True)

logger = setup_logger("vigilant")


async def chat_loop(orchestrator: RunOrchestrator) -> None:
    while True:
        try:
            command = await asyncio.to_thread(input, f"{Fore.BLUE}You: {Style.RESET_ALL}")
        except (EOFError, KeyboardInterrupt):
            break
        command = command.strip()
        if not command:
            continue
        if command.lower() in ("exit", "quit"):
            break

        result = await orchestrator.run(command)
        color = Fore.GREEN if result.success else Fore.YELLOW
        print(f"{color}{AGENT_NAME}: {Style.RESET_ALL}{result.summary}")
        print(f"  iterations={result.iterations} tokens={result.input_tokens}+{result.output_tokens} "
              f"audited={len(result.audit_entries)}")


async def main() -> None:
    settings = AgentSettings.from_env()
    async with McpToolExecutor(parse_server_config(MCP_SERVERS)) as tools:
        deps = build_runtime_deps(
            settings,
            capture=DesktopCapture(tools),
            executor=tools,
            context_provider=McpContextProvider(tools),
            confirmation_ui=ConsoleConfirmationUI(),
            tool_schemas=tools.available_tools,
        )
        orchestrator = RunOrchestrator(deps, settings)
        logger.info("%s ready (mode=%s, model=%s, %d tools)",
                    AGENT_NAME, settings.permission_mode, settings.executor_model, len(tools.available_tools))
        await chat_loop(orchestrator)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
