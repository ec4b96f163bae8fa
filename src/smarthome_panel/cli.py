"""Command-line client for the smart-home panel HTTP API."""

from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, MutableMapping, Optional

import httpx
import yaml

from .models import API_KEYS_SETTING, SECURITY_MODES, TRIGGERS

DEFAULT_SERVER_URL = "http://127.0.0.1:8000"
ENV_PREFIX = "SMARTHOME_"


class CliError(Exception):
    """Raised when the CLI encounters an expected error condition."""


@dataclass(frozen=True)
class ClientConfig:
    """Configuration for the API client."""

    server_url: str
    api_key: Optional[str]
    output: str
    timeout: float = 60.0


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="smarthome",
        description=(
            "CLI for the smart-home panel API. Uses SMARTHOME_* env vars for "
            "defaults and prints JSON (default) or YAML. Examples: "
            "`smarthome devices list`, `smarthome command turn on the kitchen lights`."
        ),
    )
    parser.add_argument(
        "--server-url",
        default=_env("SERVER_URL", DEFAULT_SERVER_URL),
        help=f"Base URL for the panel API (env: {ENV_PREFIX}SERVER_URL).",
    )
    parser.add_argument(
        "--api-key",
        default=_env("API_KEY"),
        help=f"API key sent as X-API-Key (env: {ENV_PREFIX}API_KEY).",
    )
    parser.add_argument(
        "--output",
        choices=["json", "yaml"],
        default=_env("OUTPUT", "json"),
        help=f"Output format for responses (env: {ENV_PREFIX}OUTPUT).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=float(_env("TIMEOUT", "60") or 60),
        help="Seconds to wait for each API call.",
    )

    subparsers = parser.add_subparsers(dest="command", required=False)
    _add_status_commands(subparsers)
    _add_device_commands(subparsers)
    _add_scene_commands(subparsers)
    _add_setting_commands(subparsers)

    command = subparsers.add_parser(
        "command",
        help="Send a natural-language command (POST /commands)",
        description="Interprets the text with the configured model and applies the resulting actions.",
    )
    command.add_argument("text", nargs="+", help="Command text, e.g. 'dim the bedroom lights'.")
    command.set_defaults(func=_cmd_command)

    activity = subparsers.add_parser("activity", help="Show recent activity (GET /activity)")
    activity.add_argument("--limit", type=int, default=20, help="Number of entries to show.")
    activity.set_defaults(func=_cmd_activity)
    return parser


def _add_status_commands(subparsers: argparse._SubParsersAction) -> None:
    health = subparsers.add_parser("health", help="Check API health (GET /health)")
    health.set_defaults(func=_cmd_health)

    state = subparsers.add_parser(
        "state",
        help="Show security mode, token statistics and last error (GET /state)",
    )
    state.set_defaults(func=_cmd_state)

    security = subparsers.add_parser("security-mode", help="Set the security mode")
    security.add_argument("mode", choices=list(SECURITY_MODES))
    security.set_defaults(func=_cmd_security_mode)

    rooms = subparsers.add_parser("rooms", help="List rooms (GET /rooms)")
    rooms.set_defaults(func=_cmd_rooms)


def _add_device_commands(subparsers: argparse._SubParsersAction) -> None:
    devices = subparsers.add_parser("devices", help="Inspect and control devices")
    device_sub = devices.add_subparsers(dest="devices_command", required=True)

    list_parser = device_sub.add_parser("list", help="List devices")
    list_parser.add_argument("--room-id", help="Only devices in this room.")
    list_parser.set_defaults(func=_cmd_devices_list)

    get_parser = device_sub.add_parser("get", help="Show one device")
    get_parser.add_argument("device_id")
    get_parser.set_defaults(func=_cmd_devices_get)

    set_parser = device_sub.add_parser(
        "set",
        help="Patch a device status with key=value pairs",
        description=(
            "Only the given keys change; other status fields are kept. Values are "
            "parsed as JSON when possible, e.g. brightness=80 state=on."
        ),
    )
    set_parser.add_argument("device_id")
    set_parser.add_argument("pairs", nargs="+", metavar="key=value")
    set_parser.add_argument("--trigger", choices=list(TRIGGERS), default="manual")
    set_parser.set_defaults(func=_cmd_devices_set)


def _add_scene_commands(subparsers: argparse._SubParsersAction) -> None:
    scenes = subparsers.add_parser("scenes", help="Manage scenes")
    scene_sub = scenes.add_subparsers(dest="scenes_command", required=True)

    list_parser = scene_sub.add_parser("list", help="List scenes")
    list_parser.set_defaults(func=_cmd_scenes_list)

    apply_parser = scene_sub.add_parser("apply", help="Apply a scene")
    apply_parser.add_argument("scene_id")
    apply_parser.set_defaults(func=_cmd_scenes_apply)

    capture_parser = scene_sub.add_parser(
        "capture", help="Save current device statuses as a new scene"
    )
    capture_parser.add_argument("name")
    capture_parser.add_argument("--description", default="Custom scene")
    capture_parser.add_argument("--icon", default="Sparkles")
    capture_parser.add_argument("--favorite", action="store_true")
    capture_parser.add_argument(
        "--device-id",
        dest="device_ids",
        action="append",
        help="Limit the snapshot to these devices (repeatable).",
    )
    capture_parser.set_defaults(func=_cmd_scenes_capture)

    favorite_parser = scene_sub.add_parser("favorite", help="Toggle a scene's favorite flag")
    favorite_parser.add_argument("scene_id")
    favorite_parser.set_defaults(func=_cmd_scenes_favorite)

    delete_parser = scene_sub.add_parser("delete", help="Delete a scene")
    delete_parser.add_argument("scene_id")
    delete_parser.set_defaults(func=_cmd_scenes_delete)


def _add_setting_commands(subparsers: argparse._SubParsersAction) -> None:
    settings = subparsers.add_parser("settings", help="Read and write settings")
    setting_sub = settings.add_subparsers(dest="settings_command", required=True)

    get_parser = setting_sub.add_parser("get", help="Show a setting")
    get_parser.add_argument("key")
    get_parser.set_defaults(func=_cmd_settings_get)

    set_parser = setting_sub.add_parser(
        "set",
        help="Replace a setting value",
        description="Pass key=value pairs, or --json with a full JSON object.",
    )
    set_parser.add_argument("key")
    set_parser.add_argument("pairs", nargs="*", metavar="key=value")
    set_parser.add_argument("--json", dest="json_value", help="Setting value as a JSON object.")
    set_parser.set_defaults(func=_cmd_settings_set)

    keys_parser = setting_sub.add_parser(
        "api-keys",
        help=f"Store model and compression credentials under '{API_KEYS_SETTING}'",
    )
    keys_parser.add_argument("--gemini-api-key", required=True)
    keys_parser.add_argument("--scaledown-api-key", default="")
    keys_parser.add_argument(
        "--compression",
        choices=["on", "off"],
        default="off",
        help="Enable prompt compression before interpretation.",
    )
    keys_parser.set_defaults(func=_cmd_settings_api_keys)


def _load_config(args: argparse.Namespace) -> ClientConfig:
    output = (args.output or "json").lower()
    if output not in {"json", "yaml"}:
        raise CliError("Output format must be 'json' or 'yaml'")
    return ClientConfig(
        server_url=args.server_url,
        api_key=args.api_key,
        output=output,
        timeout=args.timeout,
    )


def _build_client(config: ClientConfig) -> httpx.Client:
    headers: MutableMapping[str, str] = {}
    if config.api_key:
        headers["X-API-Key"] = config.api_key
    return httpx.Client(base_url=config.server_url, headers=headers, timeout=config.timeout)


def _print_output(data: Any, output: str) -> None:
    if output == "yaml":
        yaml.safe_dump(data, sys.stdout, sort_keys=False)
    else:
        json.dump(data, sys.stdout, indent=2)
        sys.stdout.write("\n")


def _handle_response(response: httpx.Response) -> Any:
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        try:
            data = response.json()
        except ValueError:
            data = None
        detail = data.get("detail") if isinstance(data, dict) else response.text
        raise CliError(f"Request failed ({response.status_code}): {detail}") from exc
    if response.content:
        return response.json()
    return None


def _parse_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _parse_pairs(pairs: Iterable[str]) -> Dict[str, Any]:
    parsed: Dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise CliError(f"Expected key=value, got {pair!r}")
        parsed[key.strip()] = _parse_value(value.strip())
    return parsed


def _cmd_health(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get("/health")), config.output)


def _cmd_state(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get("/state")), config.output)


def _cmd_security_mode(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.put("/security-mode", json={"mode": args.mode}))
    _print_output(data, config.output)


def _cmd_rooms(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get("/rooms")), config.output)


def _cmd_devices_list(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    params = {"room_id": args.room_id} if getattr(args, "room_id", None) else None
    _print_output(_handle_response(client.get("/devices", params=params)), config.output)


def _cmd_devices_get(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get(f"/devices/{args.device_id}")), config.output)


def _cmd_devices_set(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    status = _parse_pairs(args.pairs)
    payload = {"status": status, "trigger": args.trigger}
    data = _handle_response(client.patch(f"/devices/{args.device_id}/status", json=payload))
    _print_output(data, config.output)


def _cmd_command(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    text = " ".join(args.text).strip()
    if not text:
        raise CliError("Command text must not be empty")
    data = _handle_response(client.post("/commands", json={"command": text}))
    _print_output(data, config.output)


def _cmd_activity(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get("/activity", params={"limit": args.limit}))
    _print_output(data, config.output)


def _cmd_scenes_list(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get("/scenes")), config.output)


def _cmd_scenes_apply(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.post(f"/scenes/{args.scene_id}/apply"))
    _print_output(data, config.output)


def _cmd_scenes_capture(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    payload: Dict[str, Any] = {
        "name": args.name,
        "description": args.description,
        "icon": args.icon,
        "is_favorite": bool(args.favorite),
    }
    if args.device_ids:
        payload["device_ids"] = list(args.device_ids)
    data = _handle_response(client.post("/scenes/capture", json=payload))
    _print_output(data, config.output)


def _cmd_scenes_favorite(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.post(f"/scenes/{args.scene_id}/favorite"))
    _print_output(data, config.output)


def _cmd_scenes_delete(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _handle_response(client.delete(f"/scenes/{args.scene_id}"))
    _print_output({"deleted": args.scene_id}, config.output)


def _cmd_settings_get(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get(f"/settings/{args.key}")), config.output)


def _cmd_settings_set(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    if args.json_value:
        value = _parse_value(args.json_value)
        if not isinstance(value, dict):
            raise CliError("--json must be a JSON object")
    elif args.pairs:
        value = _parse_pairs(args.pairs)
    else:
        raise CliError("Provide key=value pairs or --json")
    data = _handle_response(client.put(f"/settings/{args.key}", json={"value": value}))
    _print_output(data, config.output)


def _cmd_settings_api_keys(
    config: ClientConfig, client: httpx.Client, args: argparse.Namespace
) -> None:
    value = {
        "gemini_api_key": args.gemini_api_key,
        "scaledown_api_key": args.scaledown_api_key,
        "compression_enabled": args.compression == "on",
    }
    data = _handle_response(client.put(f"/settings/{API_KEYS_SETTING}", json={"value": value}))
    _print_output(data, config.output)


def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(args=list(argv) if argv is not None else None)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        config = _load_config(args)
        with _build_client(config) as client:
            func: Callable[[ClientConfig, httpx.Client, argparse.Namespace], None] = args.func
            func(config, client, args)
    except CliError as exc:
        sys.stderr.write(f"Error: {exc}\n")
        sys.exit(1)
    except httpx.RequestError as exc:
        sys.stderr.write(f"HTTP request failed: {exc}\n")
        sys.exit(1)


if __name__ == "__main__":
    main()
