"""Translate free-text commands into validated device actions via an LLM."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from .compression import Compressor, uncompressed
from .logging import get_logger
from .metrics import observe_ai_request, record_ai_command
from .models import Action, AIResponse, CompressionResult, Device, Room

GENERATION_CONFIG: Dict[str, Any] = {
    "temperature": 0.7,
    "topK": 40,
    "topP": 0.95,
    "maxOutputTokens": 1024,
}


class InterpreterError(Exception):
    """Base class for command interpretation failures."""


class ConfigurationError(InterpreterError):
    """Raised when the interpreter is not configured to make calls."""


class TransportError(InterpreterError):
    """Raised when the text-generation API cannot be reached or rejects a call."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class ResponseFormatError(InterpreterError):
    """Raised when the model reply does not match the action schema."""


INSTRUCTIONS = """CRITICAL INSTRUCTIONS:
1. Respond ONLY with valid JSON in this exact format:
{
  "actions": [
    {"device_id": "<id>", "status": {"state": "on", "brightness": 80}},
    {"device_id": "<id>", "status": {"state": "off"}}
  ],
  "confirmation": "I've turned on the living room lights at 80% brightness.",
  "suggestions": ["Would you like me to close the blinds as well?"]
}
   "status" only needs the fields that change; other fields are kept.

2. Interpret natural language flexibly:
   - "make it cooler" = lower AC temperature by 2-3 degrees C
   - "I'm cold" = increase AC temperature or turn on heater
   - "I'm hot" = lower AC temperature or increase fan speed
   - "turn on lights" = set brightness to 80-100
   - "dim lights" = set brightness to 20-30
   - "bright" = set brightness to 100

3. Always use the actual device_id from the provided device list.
   Never target a device marked "read_only".

4. Valid device status values:
   - Lights/Lamps: state "off"/"on", brightness 0-100
   - TV: state "off"/"on", volume 0-100
   - AC: state "off"/"on", temperature 16-30, mode "cool"/"heat"/"fan"
   - Curtains/Blinds: state "open"/"closed", percentage 0-100
   - Fan: state "off"/"on", speed 0-100
   - Other devices: typically just state "off"/"on"

5. For ambiguous commands, ask for clarification in the confirmation and
   return an empty actions array.

6. For impossible actions (device doesn't exist, invalid operation), explain
   why in the confirmation with an empty actions array.

7. Suggest related actions that might improve comfort or efficiency.

8. Common scenes:
   - "movie mode": dim living room lights to 20-30, turn on TV, close blinds
   - "sleep mode" / "goodnight": turn off most lights, close bedroom curtains
   - "good morning": open curtains, turn on lights, start coffee maker
   - "party mode": bright lights, turn on speakers/TV
   - "work mode": turn on office lights and PC"""


def build_grounding_prompt(rooms: Sequence[Room], devices: Sequence[Device]) -> str:
    """Describe every room and its devices with their current status."""

    room_device_map: List[Dict[str, Any]] = []
    for room in rooms:
        entries = []
        for device in devices:
            if device.room_id != room.id:
                continue
            entry: Dict[str, Any] = {
                "id": device.id,
                "name": device.name,
                "type": device.type,
                "current_status": device.status,
            }
            if device.read_only:
                entry["read_only"] = True
            entries.append(entry)
        room_device_map.append({"room": room.slug, "name": room.name, "devices": entries})
    return (
        "You are an intelligent home automation assistant controlling a smart home. "
        "You have access to these rooms and devices:\n\n"
        f"{json.dumps(room_device_map, indent=2, ensure_ascii=False)}"
    )


def build_prompt(command: str, rooms: Sequence[Room], devices: Sequence[Device]) -> str:
    grounding = build_grounding_prompt(rooms, devices)
    return (
        f"{grounding}\n\n{INSTRUCTIONS}\n\n"
        f"User Command: {json.dumps(command, ensure_ascii=False)}\n\n"
        "Respond with JSON only:"
    )


def extract_json_object(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` substring of `text`, if any.

    Braces inside JSON string literals do not count towards the balance.
    """

    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        start = text.find("{", start + 1)
    return None


def parse_ai_response(text: str) -> AIResponse:
    """Extract and structurally validate the action list from a model reply."""

    candidate = extract_json_object(text)
    if candidate is None:
        raise ResponseFormatError("Invalid response format from AI: no JSON object found")
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise ResponseFormatError(f"Invalid JSON in AI response: {exc.msg}") from exc
    return validate_ai_response(payload)


def validate_ai_response(payload: Any) -> AIResponse:
    if not isinstance(payload, Mapping):
        raise ResponseFormatError("Incomplete AI response: expected a JSON object")
    raw_actions = payload.get("actions")
    confirmation = payload.get("confirmation")
    if not isinstance(raw_actions, list):
        raise ResponseFormatError("Incomplete AI response: missing 'actions' array")
    if not isinstance(confirmation, str) or not confirmation.strip():
        raise ResponseFormatError("Incomplete AI response: missing 'confirmation'")

    # Malformed entries come through empty so the executor can skip them
    # while the rest of the reply still runs.
    actions = []
    for raw in raw_actions:
        if not isinstance(raw, Mapping):
            raw = {}
        device_id = raw.get("device_id")
        status = raw.get("status")
        actions.append(
            Action(
                device_id=device_id if isinstance(device_id, str) else "",
                status=dict(status) if isinstance(status, Mapping) else {},
            )
        )

    raw_suggestions = payload.get("suggestions") or []
    if not isinstance(raw_suggestions, list):
        raw_suggestions = []
    suggestions = tuple(str(item) for item in raw_suggestions if isinstance(item, (str, int, float)))
    return AIResponse(actions=tuple(actions), confirmation=confirmation, suggestions=suggestions)


@dataclass(frozen=True)
class Interpretation:
    """Validated response plus the prompt accounting for the call."""

    response: AIResponse
    compression: CompressionResult
    compressed: bool


class CommandInterpreter:
    """Stateless client turning one user command into one model request."""

    def __init__(
        self,
        api_key: Optional[str],
        *,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        model: str = "gemini-flash-latest",
        timeout: float = 30.0,
        compressor: Optional[Compressor] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.compressor = compressor
        self.logger = get_logger("smarthome.interpreter")
        self._client = client

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    async def interpret(
        self,
        command: str,
        rooms: Sequence[Room],
        devices: Sequence[Device],
    ) -> Interpretation:
        if not self.api_key or not self.api_key.strip():
            record_ai_command("configuration_error")
            raise ConfigurationError(
                "Gemini API key is not configured. Add it in Settings to use AI commands."
            )

        prompt = build_prompt(command, rooms, devices)
        if self.compressor is not None:
            compression = await self.compressor.compress_prompt(prompt)
        else:
            compression = uncompressed(prompt)
        self.logger.info(
            "Interpreting command",
            extra={
                "command": command,
                "devices": len(devices),
                "original_tokens": compression.original_tokens,
                "prompt_tokens": compression.compressed_tokens,
                "compression": self.compressor.strategy if self.compressor else None,
            },
        )

        try:
            text = await self._generate(compression.compressed_prompt)
            response = parse_ai_response(text)
        except ResponseFormatError as exc:
            record_ai_command("invalid_response")
            self.logger.warning("Rejected AI response", extra={"error": str(exc)})
            raise
        except TransportError:
            record_ai_command("transport_error")
            raise

        record_ai_command("ok")
        self.logger.info(
            "Interpreted command",
            extra={"actions": len(response.actions), "confirmation": response.confirmation},
        )
        return Interpretation(
            response=response,
            compression=compression,
            compressed=self.compressor is not None,
        )

    async def _generate(self, prompt: str) -> str:
        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": dict(GENERATION_CONFIG),
        }
        start = time.perf_counter()
        try:
            response = await self._post(body)
        except httpx.HTTPError as exc:
            observe_ai_request("error", time.perf_counter() - start)
            raise TransportError(f"Gemini API request failed: {exc}") from exc
        observe_ai_request(str(response.status_code), time.perf_counter() - start)

        if not response.is_success:
            message = _error_message(response)
            self.logger.error(
                "Gemini API error",
                extra={"status": response.status_code, "detail": message},
            )
            raise TransportError(
                f"Gemini API error: {response.status_code} - {message}",
                status=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ResponseFormatError("Gemini API returned a non-JSON body") from exc
        return _candidate_text(data)

    async def _post(self, body: Mapping[str, Any]) -> httpx.Response:
        params = {"key": self.api_key or ""}
        headers = {"Content-Type": "application/json"}
        if self._client is not None:
            return await self._client.post(
                self.endpoint, params=params, json=body, headers=headers, timeout=self.timeout
            )
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.endpoint, params=params, json=body, headers=headers)


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return "Unknown error"
    if isinstance(data, Mapping):
        error = data.get("error")
        if isinstance(error, Mapping) and error.get("message"):
            return str(error["message"])
    return "Unknown error"


def _candidate_text(data: Any) -> str:
    candidates = data.get("candidates") if isinstance(data, Mapping) else None
    if not candidates:
        raise ResponseFormatError("No response from Gemini API")
    try:
        parts = candidates[0]["content"]["parts"]
        text = "".join(part.get("text", "") for part in parts if isinstance(part, Mapping))
    except (KeyError, IndexError, TypeError) as exc:
        raise ResponseFormatError("Gemini API candidate has no text content") from exc
    if not text.strip():
        raise ResponseFormatError("Gemini API candidate has no text content")
    return text
