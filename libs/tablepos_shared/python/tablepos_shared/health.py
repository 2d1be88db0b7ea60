import os
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI


def add_standard_health(
    app: FastAPI,
    env_key: str = "ENV",
    path: str = "/health",
    probes: Optional[Dict[str, Callable[[], Any]]] = None,
):
    """
    Register a liveness endpoint.

    ``probes`` maps a name to a zero-argument callable whose result is
    reported under ``checks``; a probe that raises is reported as its error
    string and flips ``status`` to ``degraded``.
    """

    @app.get(path)
    def _health():
        out: Dict[str, Any] = {
            "status": "ok",
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": getattr(app, "version", None),
        }
        if probes:
            checks: Dict[str, Any] = {}
            for name, probe in probes.items():
                try:
                    checks[name] = probe()
                except Exception as e:
                    checks[name] = f"error: {e}"
                    out["status"] = "degraded"
            out["checks"] = checks
        return out
