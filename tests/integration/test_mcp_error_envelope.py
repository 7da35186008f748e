"""Wire-level integration tests for MCP error envelope behavior."""

from __future__ import annotations

import json
import subprocess
import sys

import pytest


def _call_tool(env: dict[str, str], name: str, arguments: dict) -> dict:
    proc = subprocess.Popen(
        [sys.executable, "-m", "fetchgate.server"],
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        env=env,
    )

    assert proc.stdin is not None
    assert proc.stdout is not None
    assert proc.stderr is not None

    messages = [
        {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "initialize",
            "params": {
                "protocolVersion": "2025-11-25",
                "capabilities": {},
                "clientInfo": {"name": "pytest", "version": "0"},
            },
        },
        {"jsonrpc": "2.0", "method": "notifications/initialized"},
        {
            "jsonrpc": "2.0",
            "id": 2,
            "method": "tools/call",
            "params": {"name": name, "arguments": arguments},
        },
    ]
    for message in messages:
        proc.stdin.write(json.dumps(message) + "\n")
    proc.stdin.flush()

    tool_response: dict | None = None
    while tool_response is None:
        line = proc.stdout.readline()
        if not line:
            break
        if line.strip():
            response = json.loads(line)
            if response.get("id") == 2:
                tool_response = response

    proc.stdin.close()
    proc.stderr.read()  # drain for a clean shutdown on all platforms
    proc.wait(timeout=10)
    proc.stdout.close()
    proc.stderr.close()

    assert tool_response is not None, "server exited without answering the tool call"
    return tool_response


@pytest.mark.parametrize(
    ("tool", "arguments", "code"),
    [
        ("web_extract", {"url": ""}, "INVALID_INPUT"),
        ("web_extract", {"url": "http://127.0.0.1:8080/admin"}, "SSRF_BLOCKED"),
        ("web_extract", {"url": "ftp://example.com/file"}, "SCHEME_NOT_ALLOWED"),
        ("web_search", {"query": "python asyncio"}, "SEARCH_NOT_CONFIGURED"),
        ("cache_get", {"hash": "0" * 64}, "CACHE_MISS"),
        ("web_batch_open", {"urls": []}, "INVALID_INPUT"),
    ],
)
def test_fetchgate_error_serialises_to_structured_tool_error(
    subprocess_env: dict[str, str], tool: str, arguments: dict, code: str
) -> None:
    tool_response = _call_tool(subprocess_env, tool, arguments)

    assert tool_response["result"]["isError"] is True
    text_payload = tool_response["result"]["content"][0]["text"]
    assert "Error executing tool" not in text_payload

    parsed = json.loads(text_payload)
    assert parsed["error"]["code"] == code
    assert parsed["error"]["recoverable"] is False
    assert parsed["error"]["message"]
    assert parsed["error"]["suggestion"]
