"""Session wiring: builds the loop and its collaborators from config."""

from pathlib import Path
from typing import AsyncIterator

from forq.config import Config
from forq.context import build_system_prompt
from forq.conversation import CompactionResult, Conversation
from forq.exceptions import PermissionStoreError
from forq.llm import LLMProvider, create_provider
from forq.logging import get_logger
from forq.orchestrator import Orchestrator, TextCallback, TurnSummary
from forq.permissions import PermissionLedger, PermissionPrompt
from forq.tools import create_default_registry
from forq.tools.registry import ToolRegistry

log = get_logger(__name__)


class Agent:
    """One interactive session: conversation, tools, permissions and model."""

    def __init__(
        self,
        config: Config,
        permission_prompt: PermissionPrompt | None = None,
        provider: LLMProvider | None = None,
        registry: ToolRegistry | None = None,
        working_directory: Path | str | None = None,
        system_prompt: str | None = None,
    ):
        self.config = config
        self._global_checkpoint: dict[str, int] = {}
        self.working_directory = Path(working_directory or Path.cwd()).expanduser().resolve()
        self.global_permissions_path, self.project_permissions_path = config.resolved_permission_paths(
            self.working_directory
        )

        if registry is not None:
            self.ledger = registry.ledger
            if permission_prompt is not None:
                self.ledger.prompt = permission_prompt
        else:
            self.ledger = PermissionLedger(
                prompt=permission_prompt,
                request_timeout=config.permissions.request_timeout,
            )
        if config.permissions.persist:
            self._load_permissions()

        self.registry = registry or create_default_registry(
            self.ledger,
            config.tools,
            working_directory=self.working_directory,
        )
        self.provider = provider or create_provider(
            provider=config.model.provider,
            model=config.model.model,
            api_key=config.model.api_key or None,
            base_url=config.model.base_url or None,
            temperature=config.model.temperature,
            max_tokens=config.model.max_tokens,
            timeout=config.model.timeout,
            max_retries=config.model.max_retries,
        )
        self.conversation = Conversation.from_config(
            system_prompt if system_prompt is not None else build_system_prompt(self.working_directory),
            config.context,
        )
        self.orchestrator = Orchestrator(
            self.provider,
            self.registry,
            self.conversation,
            ledger=self.ledger,
            config=config.loop.model_copy(),
        )

    def _load_permissions(self) -> None:
        """Load global then project grants; only project-level records are saved back."""
        for index, path in enumerate((self.global_permissions_path, self.project_permissions_path)):
            try:
                self.ledger.load_file(path)
            except PermissionStoreError as e:
                log.warning("Ignoring unreadable permission file", path=str(path), error=str(e))
            if index == 0:
                self._global_checkpoint = self.ledger.checkpoint()

    def save_permissions(self) -> None:
        if not self.config.permissions.persist:
            return
        try:
            self.ledger.save_file(self.project_permissions_path, since=self._global_checkpoint)
        except PermissionStoreError as e:
            log.error("Failed to save permissions", error=str(e))

    async def complete(self, user_input: str, on_text: TextCallback | None = None) -> TurnSummary:
        return await self.orchestrator.run_turn(user_input, on_text=on_text)

    def stream(self, user_input: str) -> AsyncIterator:
        return self.orchestrator.stream(user_input)

    def abort(self) -> bool:
        return self.orchestrator.abort()

    def compact(self) -> CompactionResult:
        """User-requested compaction."""
        return self.conversation.compact(force=True, trigger="manual")

    def clear(self) -> None:
        """Forget the dialogue, keeping the current system prompt."""
        self.conversation.reset()

    def reset(self) -> None:
        """Forget the dialogue and rebuild the system prompt from the project."""
        self.conversation.reset()
        self.conversation.set_system_prompt(build_system_prompt(self.working_directory))

    @property
    def complete_tool_cycle(self) -> bool:
        return self.orchestrator.config.complete_tool_cycle

    def set_complete_tool_cycle(self, enabled: bool) -> None:
        self.orchestrator.config.complete_tool_cycle = enabled
        log.info("Tool cycle completion changed", enabled=enabled)

    def tool_names(self) -> list[str]:
        return self.registry.list_tools()

    async def close(self) -> None:
        self.save_permissions()
        await self.registry.close()
        await self.provider.close()
