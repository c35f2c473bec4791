#!/usr/bin/env python3
"""MCP stdio server exposing root-confined file tools and unshare(1) execution."""

import argparse
import asyncio
import json
import logging
import os
import sys
from contextlib import suppress
from io import TextIOWrapper
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

import anyio
from mcp import types
from pydantic import BaseModel, Field, StrictInt, StrictStr, ValidationError

# ── Logging (stderr only; stdout is the protocol channel) ────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
    stream=sys.stderr,
)
log = logging.getLogger("unshare-mcp")

# ── Config ───────────────────────────────────────────────────────────────

PROTOCOL_VERSION = "2025-06-18"
SERVER_NAME = "unshare-mcp"
SERVER_VERSION = "0.1.0"

DEFAULT_ROOT = os.environ.get("UNSHARE_MCP_ROOT", ".")
DEFAULT_LOG_LEVEL = os.environ.get("UNSHARE_MCP_LOG_LEVEL", "INFO")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Working directory for unshare_exec, created under the root on demand
SANDBOX_DIRNAME = "sandbox"

UNSHARE_BINARY = "unshare"
UNSHARE_FLAGS = ("--uts", "--ipc", "--net", "--pid", "--fork", "--user")

# JSON-RPC error codes
PARSE_ERROR = -32700
SERVER_ERROR = -32000

RootLike = Union[str, os.PathLike]


# ── Errors ───────────────────────────────────────────────────────────────


class ToolError(RuntimeError):
    pass


class PathEscapeError(ToolError):
    pass


class SandboxError(ToolError):
    pass


# ── Helpers ──────────────────────────────────────────────────────────────


def _dump(model: BaseModel) -> dict:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def _text_result(text: str) -> dict:
    return {"content": [_dump(types.TextContent(type="text", text=text))]}


def _required_str(args: dict, key: str, tool: str) -> str:
    value = args.get(key)
    if not isinstance(value, str):
        raise ValueError(f"{tool}.{key} is required")
    return value


def _bool_arg(args: dict, key: str, default: bool = False) -> bool:
    value = args.get(key)
    return value if isinstance(value, bool) else default


def _uint_arg(args: dict, key: str) -> Optional[int]:
    """Return a non-negative integer argument, or None when absent or invalid."""
    value = args.get(key)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return None
    return value


def _lossy(text: str) -> str:
    """Replace undecodable filename bytes (surrogate escapes) with U+FFFD."""
    return text.encode("utf-8", "surrogateescape").decode("utf-8", "replace")


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)


# ── Path containment ─────────────────────────────────────────────────────


def _canonical_root(root: RootLike) -> Path:
    try:
        return Path(root).resolve(strict=True)
    except OSError:
        # Root does not exist (yet): best-effort absolute form
        return Path(os.path.realpath(root))


def resolve_under_root(root: RootLike, rel: str) -> Path:
    """
    Map a client-supplied relative path to an absolute path inside root.

    Existing targets are canonicalized, so `..` segments and symlinks are
    checked against their real location. For targets that do not exist yet,
    the deepest existing ancestor is canonicalized and the missing suffix is
    appended, which catches symlinked parent directories as well.

    Raises PathEscapeError when the result falls outside the canonical root.
    """
    base = _canonical_root(root)
    joined = base / rel

    if joined.exists():
        canonical = joined.resolve(strict=True)
    else:
        canonical = Path(os.path.realpath(joined))

    if not canonical.is_relative_to(base):
        raise PathEscapeError(f"path escapes root: {canonical}")
    return canonical


# ── Filesystem tools ─────────────────────────────────────────────────────


async def tool_list_dir(args: dict, root: RootLike) -> dict:
    path = _required_str(args, "path", "list_dir")
    recursive = _bool_arg(args, "recursive")

    base = resolve_under_root(root, path)
    entries: list[dict] = []

    stack = [base]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as it:
                for entry in it:
                    st = entry.stat(follow_symlinks=False)
                    is_dir = entry.is_dir(follow_symlinks=False)
                    entries.append(
                        {
                            "path": _lossy(entry.path),
                            "is_dir": is_dir,
                            "len": st.st_size,
                        }
                    )
                    if recursive and is_dir:
                        stack.append(Path(entry.path))
        except OSError as e:
            raise ToolError(f"read_dir {current}: {e.strerror or e}") from e

    return {"content": [{"type": "json", "json": entries}]}


async def tool_read_file(args: dict, root: RootLike) -> dict:
    path = _required_str(args, "path", "read_file")
    offset = _uint_arg(args, "offset") or 0
    length = _uint_arg(args, "length")

    full = resolve_under_root(root, path)
    try:
        data = full.read_bytes()
    except OSError as e:
        raise ToolError(f"read {full}: {e.strerror or e}") from e

    start = min(offset, len(data))
    end = len(data) if length is None else min(offset + length, len(data))
    return _text_result(data[start:end].decode("utf-8", errors="replace"))


async def tool_write_file(args: dict, root: RootLike) -> dict:
    path = _required_str(args, "path", "write_file")
    content = _required_str(args, "content", "write_file")
    append = _bool_arg(args, "append")

    full = resolve_under_root(root, path)
    # Outcome ignored: if the parent is still missing, open() reports it.
    with suppress(OSError):
        full.parent.mkdir(parents=True, exist_ok=True)

    data = content.encode()
    with open(full, "ab" if append else "wb") as f:
        f.write(data)
    return _text_result(f"wrote {len(data)} bytes to {path}")


# ── Sandboxed exec ───────────────────────────────────────────────────────


def _unshare_failure(returncode: int, stderr: str) -> Optional[str]:
    """Return unshare's own error line when the wrapper (not the target) failed."""
    if returncode == 0:
        return None
    prefix = os.path.basename(UNSHARE_BINARY) + ": "
    lines = stderr.strip().splitlines()
    if lines and lines[0].startswith(prefix):
        return lines[0]
    return None


async def tool_unshare_exec(args: dict, root: RootLike) -> dict:
    """
    Run `binary` in fresh UTS/IPC/net/PID/user namespaces via unshare(1).

    `binary` is looked up on PATH and is not subject to root containment;
    only the working directory (<root>/sandbox) is tied to the root.
    A non-zero exit of the program is reported as data. Failing to set up
    the namespaces or to launch the program raises SandboxError.
    """
    binary = _required_str(args, "binary", "unshare_exec")
    raw_args = args.get("args")
    argv = (
        [a for a in raw_args if isinstance(a, str)]
        if isinstance(raw_args, list)
        else []
    )

    cwd = _canonical_root(root) / SANDBOX_DIRNAME
    cwd.mkdir(parents=True, exist_ok=True)

    # "--" keeps a dash-prefixed binary from being read as an unshare option
    cmd = [UNSHARE_BINARY, *UNSHARE_FLAGS, "--", binary, *argv]
    log.info(f"unshare_exec: {binary} {argv} (cwd {cwd})")
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
        )
    except OSError as e:
        raise SandboxError(f"failed to launch {UNSHARE_BINARY}: {e}") from e

    stdout, stderr = await proc.communicate()
    out = stdout.decode(errors="replace")
    err = stderr.decode(errors="replace")
    returncode = proc.returncode if proc.returncode is not None else -1

    failure = _unshare_failure(returncode, err)
    if failure:
        raise SandboxError(failure)

    return {
        "stdout": out,
        "stderr": err,
        # Killed by a signal
        "exit_code": returncode if returncode >= 0 else -1,
    }


# ── Static catalogue ─────────────────────────────────────────────────────

TOOLS = [
    types.Tool(
        name="list_dir",
        description="List files and directories under a given path (relative to server root)",
        inputSchema={
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "recursive": {"type": "boolean", "default": False},
            },
            "required": ["path"],
            "additionalProperties": False,
        },
    ),
    types.Tool(
        name="read_file",
        description="Read a file as UTF-8 text (relative to server root)",
        inputSchema={
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "offset": {"type": "integer", "minimum": 0},
                "length": {"type": "integer", "minimum": 0},
            },
            "required": ["path"],
            "additionalProperties": False,
        },
    ),
    types.Tool(
        name="write_file",
        description="Write UTF-8 text to a file (create or overwrite)",
        inputSchema={
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "content": {"type": "string"},
                "create": {"type": "boolean", "default": True},
                "append": {"type": "boolean", "default": False},
            },
            "required": ["path", "content"],
            "additionalProperties": False,
        },
    ),
    types.Tool(
        name="unshare_exec",
        description="Run a binary in isolated Linux namespaces using unshare",
        inputSchema={
            "type": "object",
            "properties": {
                "binary": {"type": "string"},
                "args": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["binary"],
            "additionalProperties": False,
        },
    ),
]

INITIALIZE_RESULT = types.InitializeResult(
    protocolVersion=PROTOCOL_VERSION,
    serverInfo=types.Implementation(name=SERVER_NAME, version=SERVER_VERSION),
    capabilities=types.ServerCapabilities(
        tools=types.ToolsCapability(),
        resources=types.ResourcesCapability(),
    ),
)


# ── JSON-RPC ─────────────────────────────────────────────────────────────


class RpcRequest(BaseModel):
    jsonrpc: str
    id: Optional[Union[StrictInt, StrictStr]] = None
    method: str
    params: Any = Field(default_factory=dict)


def _response(
    req_id: Optional[Union[int, str]],
    result: Any = None,
    error: Optional[tuple[int, str]] = None,
) -> dict:
    resp: dict = {"jsonrpc": "2.0"}
    if req_id is not None:
        resp["id"] = req_id
    if error:
        resp["error"] = {"code": error[0], "message": error[1]}
    else:
        resp["result"] = result
    return resp


ToolHandler = Callable[[dict, RootLike], Awaitable[dict]]


class StdioServer:
    """Sequential JSON-RPC loop: one request line in, one response line out."""

    def __init__(self, root: RootLike = "."):
        self.root = root
        self._tools: dict[str, ToolHandler] = {
            "list_dir": tool_list_dir,
            "read_file": tool_read_file,
            "write_file": tool_write_file,
            "unshare_exec": tool_unshare_exec,
        }

    async def serve(self, reader, writer) -> None:
        """
        Run until `reader` hits end of stream.

        `reader` and `writer` are async text files (see anyio.wrap_file).
        I/O errors on either channel propagate to the caller.
        """
        while True:
            line = await reader.readline()
            if not line:
                break
            response = await self.handle_line(line)
            if response is None:
                continue
            await writer.write(
                json.dumps(response, separators=(",", ":"), ensure_ascii=False)
                + "\n"
            )
            await writer.flush()
        log.info("Input closed, shutting down")

    async def handle_line(self, line: str) -> Optional[dict]:
        text = line.strip()
        if not text:
            return None
        log.debug(f"<- {text}")

        try:
            req = RpcRequest.model_validate_json(text)
        except ValidationError as e:
            message = f"Parse error: {_describe_validation_error(e)}"
            log.warning(message)
            # No id, even if the payload carried one
            return _response(None, error=(PARSE_ERROR, message))

        try:
            result = await self.dispatch(req)
        except Exception as e:
            log.warning(f"{req.method} failed: {e}")
            return _response(req.id, error=(SERVER_ERROR, str(e)))
        return _response(req.id, result=result)

    async def dispatch(self, req: RpcRequest) -> Any:
        method = req.method
        if method == "initialize":
            return _dump(INITIALIZE_RESULT)
        if method == "tools/list":
            return {"tools": [_dump(t) for t in TOOLS]}
        if method in ("resources/list", "prompts/list"):
            return {"resources": [], "next": None}
        if method == "tools/call":
            return await self.call_tool(req.params)
        raise ValueError(f"Method not implemented: {method}")

    def working_root(self, arguments: dict) -> RootLike:
        """The configured root, optionally narrowed by `arguments.root`."""
        override = arguments.get("root")
        if isinstance(override, str) and override:
            return resolve_under_root(self.root, override)
        return self.root

    async def call_tool(self, params: Any) -> dict:
        params = params if isinstance(params, dict) else {}
        name = params.get("name")
        if not isinstance(name, str):
            raise ValueError("missing params.name")
        arguments = params.get("arguments")
        if not isinstance(arguments, dict):
            arguments = {}

        handler = self._tools.get(name)
        if handler is None:
            raise ValueError(f"Unknown tool: {name}")

        root = self.working_root(arguments)
        log.info(f"tools/call {name}")
        return await handler(arguments, root)


# ── Entry point ──────────────────────────────────────────────────────────


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Serve root-confined file tools and unshare exec over stdio."
    )
    parser.add_argument(
        "--root",
        default=DEFAULT_ROOT,
        help="Restrict all file operations under this directory.",
    )
    parser.add_argument(
        "--log-level",
        default=DEFAULT_LOG_LEVEL.upper(),
        type=str.upper,
        choices=LOG_LEVELS,
        help="Logging level (logs go to stderr).",
    )
    return parser.parse_args(argv)


async def run_stdio(root: RootLike) -> None:
    stdin = anyio.wrap_file(
        TextIOWrapper(
            sys.stdin.buffer, encoding="utf-8", errors="replace", newline="\n"
        )
    )
    stdout = anyio.wrap_file(
        TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace")
    )
    await StdioServer(root).serve(stdin, stdout)


def main(argv: Optional[list[str]] = None):
    args = _parse_args(argv)
    logging.getLogger().setLevel(args.log_level)
    log.info(f"Serving on stdio, root {_canonical_root(args.root)}")
    asyncio.run(run_stdio(args.root))


if __name__ == "__main__":
    main()
