"""
Run the table POS service with uvicorn.

Environment (POS_HOST, POS_PORT, POS_RELOAD) sets the defaults; flags win:
  python -m apps.pos --port 8080 --reload
"""
import argparse
import os
from typing import Optional, Sequence

import uvicorn


def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="python -m apps.pos", description="Table POS API server")
    p.add_argument("--host", default=os.getenv("POS_HOST", "0.0.0.0"))
    p.add_argument("--port", type=int, default=int(os.getenv("POS_PORT", "8000")))
    p.add_argument(
        "--reload",
        action="store_true",
        default=os.getenv("POS_RELOAD", "false").lower() == "true",
        help="restart on source changes (development only)",
    )
    p.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "info").lower())
    return p


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = _parser().parse_args(argv)
    uvicorn.run(
        "apps.pos.app.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        reload_dirs=["apps", "libs"] if args.reload else None,
        log_level=args.log_level,
        # JSON logging is configured by the app itself
        log_config=None,
    )


if __name__ == "__main__":
    main()
