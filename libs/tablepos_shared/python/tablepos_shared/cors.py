from __future__ import annotations

import re

from fastapi.middleware.cors import CORSMiddleware


def _glob_to_regex(pattern: str) -> str:
    # "*" matches within one origin component, never across "/"
    return re.escape(pattern).replace(r"\*", r"[^/]*")


def configure_cors(app, allowed: str | None):
    """
    ``allowed`` is a comma list of origins. ``*`` alone opens everything
    without credentials; entries containing ``*`` elsewhere are globs, e.g.
    ``http://192.168.1.*:5173`` for till screens on the shop LAN.
    """
    entries = [o.strip() for o in (allowed or "").split(",") if o.strip()]
    if not entries:
        # Local till UI (vite dev server) when ALLOWED_ORIGINS is missing.
        entries = ["http://localhost:5173", "http://127.0.0.1:5173"]

    origin_regex = None
    if "*" in entries:
        # Wildcard origins must not be combined with credentialed requests.
        origins = ["*"]
        allow_credentials = False
    else:
        origins = [o for o in entries if "*" not in o]
        globs = [o for o in entries if "*" in o]
        if globs:
            origin_regex = "|".join(f"(?:{_glob_to_regex(g)})" for g in globs)
        allow_credentials = True

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_origin_regex=origin_regex,
        allow_credentials=allow_credentials,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Content-Disposition"],
    )
