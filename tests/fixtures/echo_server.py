"""
Minimal stdio tool server used by the transport and manager tests.

Modes (command-line flags):
  --silent        read requests but never answer (handshake never completes)
  --exit-on-call  exit with status 3 when a tool is called
  --noisy         write diagnostics to stderr before answering
"""

import json
import sys
import time

TOOLS = [
    {
        "name": "echo",
        "description": "Echo text back",
        "inputSchema": {
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
    },
    {
        "name": "slow_echo",
        "description": "Echo text back after a delay",
        "inputSchema": {
            "type": "object",
            "properties": {"text": {"type": "string"}, "delay": {"type": "number"}},
            "required": ["text"],
        },
    },
]


def send(message):
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


def handle(request, modes):
    method = request.get("method")
    if "id" not in request:
        return None
    if method == "initialize":
        return {
            "protocolVersion": request["params"]["protocolVersion"],
            "capabilities": {"tools": {}},
            "serverInfo": {"name": "echo-fixture", "version": "1.0"},
        }
    if method == "tools/list":
        return {"tools": TOOLS}
    if method == "ping":
        return {}
    if method == "tools/call":
        if "--exit-on-call" in modes:
            sys.stderr.write("crashing on purpose\n")
            sys.stderr.flush()
            sys.exit(3)
        arguments = request["params"].get("arguments", {})
        if request["params"]["name"] == "slow_echo":
            time.sleep(float(arguments.get("delay", 0.2)))
        return {"content": [{"type": "text", "text": arguments.get("text", "")}]}
    raise LookupError(method)


def main():
    modes = set(sys.argv[1:])
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        request = json.loads(line)
        if "--noisy" in modes:
            sys.stderr.write(f"got {request.get('method')}\n")
            sys.stderr.flush()
        if "--silent" in modes:
            continue
        try:
            result = handle(request, modes)
        except LookupError as e:
            send({"jsonrpc": "2.0", "id": request["id"],
                  "error": {"code": -32601, "message": f"Method not found: {e}"}})
            continue
        if result is not None:
            send({"jsonrpc": "2.0", "id": request["id"], "result": result})


if __name__ == "__main__":
    main()
