"""Run a natural-language command end to end against the home state."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from .compression import Compressor, RemoteCompressor, build_compressor
from .config import Config
from .interpreter import CommandInterpreter, InterpreterError
from .logging import get_logger
from .models import (
    ACTION_AI_COMMAND,
    API_KEYS_SETTING,
    TRIGGER_AI,
    CompressionResult,
    NewActivityLog,
    Setting,
)
from .state import HomeState, LogWriteResult


@dataclass(frozen=True)
class ApiKeys:
    """Credentials and switches stored under the ``api_keys`` setting."""

    gemini_api_key: str = ""
    scaledown_api_key: str = ""
    compression_enabled: bool = False

    @classmethod
    def from_setting(cls, setting: Optional[Setting]) -> "ApiKeys":
        value = setting.value if setting is not None else {}
        return cls(
            gemini_api_key=str(value.get("gemini_api_key") or "").strip(),
            scaledown_api_key=str(value.get("scaledown_api_key") or "").strip(),
            compression_enabled=bool(value.get("compression_enabled")),
        )


@dataclass(frozen=True)
class CommandOutcome:
    """What happened when a command ran."""

    command: str
    confirmation: str
    suggestions: Tuple[str, ...]
    executed: Tuple[str, ...]
    skipped: int
    compression: Optional[CompressionResult]
    log: Optional[LogWriteResult]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "confirmation": self.confirmation,
            "suggestions": list(self.suggestions),
            "executed": list(self.executed),
            "skipped": self.skipped,
            "compression": (
                {
                    "original_tokens": self.compression.original_tokens,
                    "compressed_tokens": self.compression.compressed_tokens,
                    "tokens_saved": self.compression.tokens_saved,
                    "compression_ratio": self.compression.compression_ratio,
                }
                if self.compression is not None
                else None
            ),
        }


class CommandExecutor:
    """Interpret a command, apply its actions in order, and record the run."""

    def __init__(
        self,
        state: HomeState,
        config: Config,
        *,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.state = state
        self.config = config
        self.logger = get_logger("smarthome.commands")
        self._client = client
        self._sleep = sleep
        self._remote: Optional[RemoteCompressor] = None

    def api_keys(self) -> ApiKeys:
        return ApiKeys.from_setting(self.state.get_setting(API_KEYS_SETTING))

    def compressor_for(self, keys: ApiKeys) -> Optional[Compressor]:
        """Return the compressor to use, or None when compression is off.

        The remote compressor is kept between commands so its cache survives;
        it is rebuilt only when the key changes.
        """

        if not keys.compression_enabled:
            return None
        if self._remote is not None and self._remote.api_key == keys.scaledown_api_key:
            return self._remote
        compressor = build_compressor(self.config, keys.scaledown_api_key, client=self._client)
        if isinstance(compressor, RemoteCompressor):
            self._remote = compressor
        return compressor

    def interpreter_for(self, keys: ApiKeys) -> CommandInterpreter:
        return CommandInterpreter(
            keys.gemini_api_key,
            base_url=self.config.gemini_base_url,
            model=self.config.gemini_model,
            timeout=self.config.ai_request_timeout,
            compressor=self.compressor_for(keys),
            client=self._client,
        )

    async def execute(self, command: str) -> CommandOutcome:
        text = command.strip()
        if not text:
            raise ValueError("Command must not be empty")

        keys = self.api_keys()
        interpreter = self.interpreter_for(keys)
        self.logger.info(
            "Processing command",
            extra={
                "command": text,
                "gemini_key": bool(keys.gemini_api_key),
                "scaledown_key": bool(keys.scaledown_api_key),
                "compression": (
                    interpreter.compressor.strategy if interpreter.compressor else None
                ),
            },
        )

        try:
            interpretation = await interpreter.interpret(
                text, self.state.rooms, self.state.devices
            )
        except InterpreterError as exc:
            self.state.set_error(str(exc))
            self.logger.error(
                "Command processing failed",
                extra={"command": text, "error": str(exc), "error_type": type(exc).__name__},
            )
            raise

        response = interpretation.response
        executed: List[str] = []
        skipped = 0
        for position, action in enumerate(response.actions):
            if not action.device_id or not action.status:
                skipped += 1
                self.logger.warning(
                    "Skipping incomplete action",
                    extra={"command": text, "position": position, "device_id": action.device_id},
                )
                continue
            if executed:
                await self._sleep(self.config.ai_action_delay)
            await self.state.update_device(action.device_id, action.status, TRIGGER_AI)
            executed.append(action.device_id)

        log: Optional[LogWriteResult] = None
        if response.actions:
            log = await self.state.add_activity_log(
                NewActivityLog(action_type=ACTION_AI_COMMAND, trigger=TRIGGER_AI, command=text)
            )

        compression: Optional[CompressionResult] = None
        if interpretation.compressed:
            compression = interpretation.compression
            self.state.record_compression(compression)

        self.logger.info(
            "Command completed",
            extra={"command": text, "executed": len(executed), "skipped": skipped},
        )
        return CommandOutcome(
            command=text,
            confirmation=response.confirmation,
            suggestions=response.suggestions,
            executed=tuple(executed),
            skipped=skipped,
            compression=compression,
            log=log,
        )

