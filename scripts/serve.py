"""
Run the GlowChat API with uvicorn.
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

import uvicorn

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> int:
    parser = argparse.ArgumentParser(description="GlowChat API server")
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", 3000)))
    parser.add_argument(
        "--reload", action="store_true", help="Restart on code changes"
    )
    args = parser.parse_args()

    # A single worker: realtime room membership is held in-process.
    uvicorn.run("glowchat.app:app", host=args.host, port=args.port, reload=args.reload)
    return 0


if __name__ == "__main__":
    sys.exit(main())
