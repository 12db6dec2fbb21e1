"""Stand-in gateway for local testing.

Serves `/health` on the given port and prints a dashboard URL carrying a
token, the way the real gateway announces itself on stdout. Point
`service_command` at a wrapper that runs this script to exercise start,
token detection and the health loop without a real install.
"""

from __future__ import annotations

import argparse
import secrets
import sys
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

app = FastAPI(title="mock-gateway")


@app.get("/health")
async def health() -> JSONResponse:
    return JSONResponse({"ok": True, "timestamp": datetime.now(timezone.utc).isoformat()})


def main() -> None:
    parser = argparse.ArgumentParser(description="mock gateway")
    parser.add_argument("--port", type=int, default=18789)
    parser.add_argument("--token", default=None, help="Token to announce (random when omitted)")
    parser.add_argument("--require-token", action="store_true", help="Announce a missing-token rejection instead")
    args = parser.parse_args()

    if args.require_token:
        print("disconnected (1008): unauthorized: gateway token missing", file=sys.stderr, flush=True)
    else:
        token = args.token or secrets.token_urlsafe(24)
        print(f"Dashboard: http://127.0.0.1:{args.port}/?token={token}", flush=True)
    uvicorn.run(app, host="127.0.0.1", port=args.port)


if __name__ == "__main__":
    main()
