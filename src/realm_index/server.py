"""JSON-lines request server entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

from realm_index.config import CliOverrides, RealmConfig, load_effective_config
from realm_index.errors import CardFetchError, FilterError, RunnerNotRegisteredError
from realm_index.loader import Loader
from realm_index.logging import AuditEvent, JsonlAuditLogger, sanitize_arguments, utc_timestamp
from realm_index.realm.paths import PathBlockedError
from realm_index.search_index import SearchIndex
from realm_index.tools.builtin import register_builtin_tools
from realm_index.tools.registry import ToolDispatchError, ToolRegistry


@dataclass(slots=True, frozen=True)
class Request:
    """Normalized incoming request."""

    request_id: str
    method: str
    params: dict[str, object]


def build_arg_parser() -> argparse.ArgumentParser:
    """Build argument parser for server startup configuration."""
    parser = argparse.ArgumentParser(prog="realm-index")
    parser.add_argument("--realm-root", required=False, default=".")
    parser.add_argument("--realm-url", required=False, default=None)
    parser.add_argument("--data-dir", required=False, default=None)
    parser.add_argument("--runner-mode", choices=("in-process", "queue"), default=None)
    parser.add_argument("--store-mode", choices=("memory", "persistent"), default=None)
    parser.add_argument("--max-search-hits", type=int, required=False, default=None)
    return parser


class StdioServer:
    """Deterministic STDIO server routing requests to realm tools.

    The server owns one event loop; every request runs to completion on it
    before the next line is read, so index runs and queries never overlap
    across requests.
    """

    def __init__(self, config: RealmConfig, loader: Loader | None = None) -> None:
        self._config = config
        self._limits = config.limits
        self._data_dir = config.data_dir
        self._loop = asyncio.new_event_loop()
        self._audit_logger = JsonlAuditLogger(path=self._data_dir / "audit.jsonl")
        self._index = SearchIndex.from_config(config, loader=loader)
        self._registry = ToolRegistry()
        register_builtin_tools(
            self._registry,
            index=self._index,
            config=self._config,
            read_audit_entries=self._audit_logger.read,
        )
        self._fallback_request_counter = 0

    @property
    def index(self) -> SearchIndex:
        """Return the realm index served by this server."""
        return self._index

    def serve(self, in_stream: TextIO, out_stream: TextIO) -> None:
        """Process JSON-line requests from stdin and write JSON-line responses."""
        try:
            for raw_line in in_stream:
                line = raw_line.strip()
                if not line:
                    continue
                response = self.handle_json_line(line)
                out_stream.write(f"{json.dumps(response, sort_keys=True)}\n")
                out_stream.flush()
        finally:
            self.close()

    def close(self) -> None:
        """Release network clients and the event loop."""
        if self._loop.is_closed():
            return
        self._loop.run_until_complete(self._index.aclose())
        self._loop.close()

    def handle_json_line(self, raw_line: str) -> dict[str, object]:
        """Handle a single JSON-line request."""
        try:
            payload = json.loads(raw_line)
        except json.JSONDecodeError:
            request_id = self.next_request_id()
            response = self.error_response(
                request_id=request_id,
                code="INVALID_JSON",
                message="Request must be valid JSON.",
            )
            self.log_request(
                request_id=request_id,
                tool_name="invalid_json",
                arguments={"raw_line_length": len(raw_line)},
                response=response,
            )
            return response
        return self.handle_payload(payload)

    def handle_payload(self, payload: object) -> dict[str, object]:
        """Validate and dispatch a parsed payload."""
        parsed = self.parse_request(payload)
        if isinstance(parsed, dict):
            request_id_value = parsed.get("request_id")
            request_id = (
                request_id_value if isinstance(request_id_value, str) else self.next_request_id()
            )
            self.log_request(
                request_id=request_id,
                tool_name="invalid_request",
                arguments={},
                response=parsed,
            )
            return parsed

        request = parsed
        tool_name: str
        arguments: dict[str, object]
        if request.method == "tools/call":
            tool_name_value = request.params.get("name")
            arguments_value = request.params.get("arguments", {})
            if not isinstance(tool_name_value, str) or not tool_name_value:
                return self.error_response(
                    request_id=request.request_id,
                    code="INVALID_PARAMS",
                    message="tools/call params.name must be a non-empty string.",
                )
            if not isinstance(arguments_value, dict):
                return self.error_response(
                    request_id=request.request_id,
                    code="INVALID_PARAMS",
                    message="tools/call params.arguments must be an object.",
                )
            tool_name = tool_name_value
            arguments = arguments_value
        else:
            tool_name = request.method
            arguments = request.params

        response = self._dispatch(request.request_id, tool_name, arguments)
        self.log_request(
            request_id=request.request_id,
            tool_name=tool_name,
            arguments=arguments,
            response=response,
        )
        return response

    def _dispatch(
        self, request_id: str, tool_name: str, arguments: dict[str, object]
    ) -> dict[str, object]:
        try:
            result = self._loop.run_until_complete(
                self._registry.dispatch(name=tool_name, arguments=arguments)
            )
        except PathBlockedError as error:
            return self.blocked_response(
                request_id=request_id, reason=error.reason, hint=error.hint
            )
        except ToolDispatchError as error:
            return self.error_response(
                request_id=request_id, code=error.code, message=error.message
            )
        except FilterError as error:
            return self.error_response(
                request_id=request_id, code="INVALID_FILTER", message=error.detail
            )
        except CardFetchError as error:
            return self.error_response(
                request_id=request_id, code="FETCH_FAILED", message=error.detail
            )
        except RunnerNotRegisteredError as error:
            return self.error_response(
                request_id=request_id, code="RUNNER_NOT_REGISTERED", message=error.detail
            )
        except Exception:
            return self.error_response(
                request_id=request_id,
                code="INTERNAL_ERROR",
                message="Unhandled server error while executing tool.",
            )

        warnings = _extract_result_warnings(result)
        response = self.success_response(request_id=request_id, result=result, warnings=warnings)
        return self.enforce_response_size_limit(request_id=request_id, response=response)

    def parse_request(self, payload: object) -> Request | dict[str, object]:
        """Validate request payload and return normalized Request."""
        if not isinstance(payload, dict):
            return self.error_response(
                request_id=self.next_request_id(),
                code="INVALID_REQUEST",
                message="Request must be an object.",
            )

        request_id = self.extract_request_id(payload.get("id"))
        method = payload.get("method")
        params = payload.get("params", {})

        if not isinstance(method, str) or not method:
            return self.error_response(
                request_id=request_id,
                code="INVALID_REQUEST",
                message="Request method must be a non-empty string.",
            )
        if not isinstance(params, dict):
            return self.error_response(
                request_id=request_id,
                code="INVALID_PARAMS",
                message="Request params must be an object.",
            )

        return Request(request_id=request_id, method=method, params=params)

    def extract_request_id(self, request_id: object) -> str:
        """Extract request ID from payload or synthesize deterministic fallback."""
        if isinstance(request_id, str) and request_id:
            return request_id
        if isinstance(request_id, int):
            return str(request_id)
        return self.next_request_id()

    def next_request_id(self) -> str:
        """Generate deterministic fallback request IDs for invalid/missing IDs."""
        self._fallback_request_counter += 1
        return f"req-{self._fallback_request_counter:06d}"

    @staticmethod
    def success_response(
        request_id: str,
        result: dict[str, object],
        warnings: list[str] | None = None,
    ) -> dict[str, object]:
        """Build success envelope."""
        return {
            "request_id": request_id,
            "ok": True,
            "result": result,
            "warnings": warnings or [],
            "blocked": False,
        }

    @staticmethod
    def error_response(request_id: str, code: str, message: str) -> dict[str, object]:
        """Build explicit error envelope."""
        return {
            "request_id": request_id,
            "ok": False,
            "result": {},
            "warnings": [],
            "blocked": False,
            "error": {"code": code, "message": message},
        }

    @staticmethod
    def blocked_response(
        request_id: str, reason: str, hint: str, code: str = "PATH_BLOCKED"
    ) -> dict[str, object]:
        """Build explicit blocked response envelope."""
        return {
            "request_id": request_id,
            "ok": False,
            "result": {"reason": reason, "hint": hint},
            "warnings": [],
            "blocked": True,
            "error": {"code": code, "message": reason},
        }

    def enforce_response_size_limit(
        self,
        request_id: str,
        response: dict[str, object],
    ) -> dict[str, object]:
        """Block responses that exceed max_total_bytes_per_response."""
        response_bytes = len(json.dumps(response, sort_keys=True).encode("utf-8"))
        if response_bytes <= self._limits.max_total_bytes_per_response:
            return response
        return self.blocked_response(
            request_id=request_id,
            reason="Response exceeds max_total_bytes_per_response limit.",
            hint="Narrow the query filter or skip load_links.",
            code="RESPONSE_TOO_LARGE",
        )

    def log_request(
        self,
        request_id: str,
        tool_name: str,
        arguments: dict[str, object],
        response: dict[str, object],
    ) -> None:
        """Log one sanitized request event."""
        error_payload = response.get("error")
        error_code: str | None = None
        if isinstance(error_payload, dict):
            code_value = error_payload.get("code")
            if isinstance(code_value, str):
                error_code = code_value
        event = AuditEvent(
            timestamp=utc_timestamp(),
            request_id=request_id,
            tool=tool_name,
            ok=bool(response.get("ok", False)),
            blocked=bool(response.get("blocked", False)),
            error_code=error_code,
            metadata=sanitize_arguments(arguments),
        )
        self._audit_logger.append(event)


def create_server(
    realm_root: str,
    data_dir: str | None = None,
    cli_overrides: CliOverrides | None = None,
    loader: Loader | None = None,
) -> StdioServer:
    """Create a configured STDIO server instance."""
    overrides = cli_overrides or CliOverrides()
    if data_dir is not None:
        overrides = CliOverrides(
            realm_url=overrides.realm_url,
            data_dir=Path(data_dir).resolve(),
            runner_mode=overrides.runner_mode,
            store_mode=overrides.store_mode,
            max_search_hits=overrides.max_search_hits,
        )
    config = load_effective_config(realm_root=Path(realm_root).resolve(), overrides=overrides)
    return StdioServer(config=config, loader=loader)


def main(argv: list[str] | None = None) -> int:
    """Entrypoint for the realm index server process."""
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    overrides = CliOverrides(
        realm_url=args.realm_url,
        data_dir=Path(args.data_dir).resolve() if args.data_dir is not None else None,
        runner_mode=args.runner_mode,
        store_mode=args.store_mode,
        max_search_hits=args.max_search_hits,
    )
    server = create_server(realm_root=args.realm_root, cli_overrides=overrides)
    server.serve(in_stream=sys.stdin, out_stream=sys.stdout)
    return 0


def _extract_result_warnings(result: dict[str, object]) -> list[str]:
    raw = result.pop("__warnings__", None)
    if not isinstance(raw, list):
        return []
    warnings: list[str] = []
    for item in raw:
        if isinstance(item, str):
            warnings.append(item)
    return warnings


if __name__ == "__main__":
    raise SystemExit(main())
