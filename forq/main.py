"""Main entry point for forq."""

import asyncio
import signal
import sys
from pathlib import Path

import typer
from pydantic import ValidationError

from forq.agent import Agent
from forq.cli import TerminalPermissionPrompt, TerminalUI
from forq.config import Config, set_config
from forq.exceptions import ConfigurationError, ConversationInvariantError
from forq.llm import ToolCall
from forq.logging import configure_logging, get_logger
from forq.orchestrator import TurnOutcome, TurnSummary
from forq.tools.registry import ToolResult

log = get_logger(__name__)

cli = typer.Typer(help="forq - a terminal coding assistant", no_args_is_help=False)


def load_config(
    config: str = "",
    model: str = "",
    provider: str = "",
    no_stream: bool = False,
    verbose: bool = False,
) -> Config:
    """Load configuration and apply command-line overrides."""
    try:
        cfg = Config.load(Path(config) if config else None)
    except (OSError, ValueError, ValidationError) as e:
        raise ConfigurationError(f"Failed to load config: {e}") from e

    if model:
        cfg.model.model = model
    if provider:
        cfg.model.provider = provider
    if no_stream:
        cfg.loop.stream = False
    if verbose:
        cfg.logging.level = "DEBUG"
    return cfg


def _report_outcome(ui: TerminalUI, summary: TurnSummary) -> None:
    if summary.denied:
        ui.print_warning("Permission denied; the remaining tool calls in that batch were skipped.")
    if summary.outcome == TurnOutcome.GATEWAY_ERROR:
        ui.print_error(summary.error or "Model request failed")
    elif summary.outcome == TurnOutcome.MAX_ROUNDS_EXCEEDED:
        ui.print_warning(f"Stopped after {summary.rounds} model rounds.")
    elif summary.outcome == TurnOutcome.TOOL_CYCLE_DISABLED:
        ui.print_message("system", "Tool results were not sent back to the model (/tool-cycle on to enable).")
    elif summary.outcome == TurnOutcome.CANCELLED:
        ui.print_warning("Interrupted.")
    if summary.compactions:
        ui.print_message("system", "Older messages were summarized to keep the context small.")


async def _run_turn(agent: Agent, ui: TerminalUI, user_input: str) -> None:
    summary = await agent.complete(user_input, on_text=ui.print_streaming)
    ui.end_assistant_stream()
    _report_outcome(ui, summary)


def _install_interrupt_handler(agent: Agent, ui: TerminalUI) -> bool:
    """Ctrl-C aborts the running turn instead of exiting."""

    def _on_interrupt() -> None:
        if agent.abort():
            return
        ui.console.print("\n(use /exit or Ctrl-D to quit)")

    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, _on_interrupt)
    except (NotImplementedError, RuntimeError):
        return False
    return True


def _apply_command(agent: Agent, ui: TerminalUI, token: str) -> bool:
    """Handle a special command token. Returns False when the session should end."""
    if token == "EXIT":
        return False
    if token == "CLEAR":
        agent.clear()
        ui.print_success("Conversation cleared")
    elif token == "RESET":
        agent.reset()
        ui.print_success("Conversation reset")
    elif token == "COMPACT":
        ui.print_compaction(agent.compact())
    elif token == "CONFIG":
        ui.print_config(agent.config)
    elif token == "TOOLS":
        ui.print_tools(agent.registry.schema())
    elif token == "PERMISSIONS":
        ui.print_permissions(agent.ledger)
    elif token in ("TOOL_CYCLE_ON", "TOOL_CYCLE_OFF"):
        agent.set_complete_tool_cycle(token == "TOOL_CYCLE_ON")
        ui.print_success(f"Tool cycle {'on' if agent.complete_tool_cycle else 'off'}")
    elif token == "TOOL_CYCLE_STATUS":
        ui.print_message("system", f"Tool cycle is {'on' if agent.complete_tool_cycle else 'off'}")
    return True


async def run_interactive(cfg: Config) -> None:
    """Run the interactive agent loop."""
    ui = TerminalUI(cfg.ui)
    agent = Agent(cfg, permission_prompt=TerminalPermissionPrompt(ui))
    agent.orchestrator.on_tool_start = lambda call: ui.print_tool_call(call.name, call.parameters)

    def _on_tool_result(call: ToolCall, result: ToolResult) -> None:
        ui.print_tool_result(call.name, result.content, success=result.success)

    agent.orchestrator.on_tool_result = _on_tool_result

    _install_interrupt_handler(agent, ui)
    ui.print_welcome(
        model=f"{cfg.model.provider}/{cfg.model.model}",
        working_directory=str(agent.working_directory),
    )
    try:
        while True:
            try:
                raw = await ui.prompt()
            except EOFError:
                log.info("EOF received")
                break
            user_input = ui.handle_special_command(raw)
            if user_input is None or not user_input.strip():
                continue
            if raw.strip().startswith("/"):
                if not _apply_command(agent, ui, user_input):
                    log.info("User requested exit")
                    break
                continue

            try:
                await _run_turn(agent, ui, user_input)
            except ConversationInvariantError:
                ui.end_assistant_stream()
                raise
            except Exception as e:
                ui.end_assistant_stream()
                ui.print_error(str(e))
                log.error("Error in interactive loop", error=str(e))
    finally:
        await agent.close()


def main(
    config: str = "",
    model: str = "",
    provider: str = "",
    no_stream: bool = False,
    verbose: bool = False,
) -> None:
    """Start an interactive forq session."""
    try:
        cfg = load_config(config, model, provider, no_stream, verbose)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    configure_logging(cfg.logging)
    set_config(cfg)

    try:
        asyncio.run(run_interactive(cfg))
    except KeyboardInterrupt:
        log.info("Shutting down...")
        sys.exit(0)
    except Exception as e:
        log.error("Fatal error", error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


@cli.command()
def run(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    no_stream: bool = typer.Option(False, "--no-stream", help="Disable streaming"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Start an interactive session."""
    main(config, model, provider, no_stream, verbose)


@cli.command()
def version() -> None:
    """Show version information."""
    from forq import __version__
    print(f"forq v{__version__}")


if __name__ == "__main__":
    cli()
